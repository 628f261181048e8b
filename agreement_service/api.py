"""FastAPI router exposing agreement reads and offer transitions."""
from __future__ import annotations
import os
from common.logging import configure_logging
configure_logging(os.getenv("LOG_FORMAT", "json"), service_name="agreement_service")

import logging
from typing import List

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlmodel import Session

from agreement_store.db import init_db, session_scope
from agreement_store.models import AgreementView
from agreement_store.versions import AgreementVersionStore
from common.auth import require_token
from common.errors import AgreementsError

from .offers import OfferService

_LOG = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dependency injection helpers
# ---------------------------------------------------------------------------


def get_store(session: Session = Depends(session_scope)) -> AgreementVersionStore:
    return AgreementVersionStore(session)


def get_offer_service(session: Session = Depends(session_scope)) -> OfferService:
    return OfferService(session)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api/agreement/v1", tags=["agreement"])


@router.get("/{agreement_number}", response_model=AgreementView)
def get_agreement(
    agreement_number: str,
    store: AgreementVersionStore = Depends(get_store),
    _: dict = Depends(require_token),
) -> AgreementView:
    return store.get_current({"agreement_number": agreement_number})


@router.get("/{agreement_number}/versions", response_model=List[AgreementView])
def list_agreement_versions(
    agreement_number: str,
    store: AgreementVersionStore = Depends(get_store),
    _: dict = Depends(require_token),
) -> List[AgreementView]:
    return store.list_versions(agreement_number)


@router.post("/{agreement_number}/accept", response_model=AgreementView)
async def accept_agreement(
    agreement_number: str,
    service: OfferService = Depends(get_offer_service),
    _: dict = Depends(require_token),
) -> AgreementView:
    return await service.accept_offer(agreement_number)


@router.post("/{agreement_number}/unaccept", response_model=AgreementView)
async def unaccept_agreement(
    agreement_number: str,
    service: OfferService = Depends(get_offer_service),
    _: dict = Depends(require_token),
) -> AgreementView:
    return await service.unaccept_offer(agreement_number)


async def _agreements_error_handler(request: Request, exc: AgreementsError) -> JSONResponse:
    if exc.status_code >= 500:
        _LOG.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    app = FastAPI(title="Agreement Service")
    app.include_router(router)
    app.add_exception_handler(AgreementsError, _agreements_error_handler)
    app.mount("/metrics", make_asgi_app())

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    @app.on_event("startup")
    def _startup() -> None:
        init_db()

    return app


app = create_app()
