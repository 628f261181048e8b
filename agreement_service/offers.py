"""Offer lifecycle: create, accept, withdraw and unaccept.

Each transition appends a version through :class:`AgreementVersionStore` and
publishes a status notification.
"""
from __future__ import annotations

import datetime as _dt
import logging
import secrets
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from sqlmodel import Session

from agreement_domain.normalizer import normalize_agreement_payload
from agreement_domain.status import AgreementStatus
from agreement_observability.metrics import agreements_created_total
from agreement_store.db import get_session
from agreement_store.models import AgreementView
from agreement_store.versions import AgreementVersionStore
from common.datetime import utcnow
from common.errors import ConflictError, InternalError, ValidationError
from integrations.land_grants.calculator_client import RateCalculatorClient

from .payment_hub import PaymentHubDispatcher
from .publisher import StatusPublisher

__all__ = ["OfferService", "generate_agreement_number"]

_LOG = logging.getLogger(__name__)

DEFAULT_SCHEME = "SFI"
DEFAULT_AGREEMENT_NAME = "Unnamed Agreement"
_NUMBER_ATTEMPTS = 5


def generate_agreement_number() -> str:
    """``SFI`` followed by nine random digits."""
    return f"SFI{secrets.randbelow(900_000_000) + 100_000_000}"


class OfferService:
    def __init__(
        self,
        session: Session | None = None,
        *,
        calculator: Optional[RateCalculatorClient] = None,
        publisher: Optional[StatusPublisher] = None,
        dispatcher: Optional[PaymentHubDispatcher] = None,
        clock: Callable[[], _dt.datetime] = utcnow,
    ):
        self.session = session or get_session()
        self.store = AgreementVersionStore(self.session)
        self.calculator = calculator or RateCalculatorClient()
        self.publisher = publisher or StatusPublisher()
        self.dispatcher = dispatcher or PaymentHubDispatcher(self.session)
        self._clock = clock

    # ------------------------------------------------------------------
    def _new_agreement_number(self) -> str:
        for _ in range(_NUMBER_ATTEMPTS):
            candidate = generate_agreement_number()
            if not self.store.exists_by_key({"agreement_number": candidate}):
                return candidate
        raise InternalError("Could not allocate a unique agreement number")

    async def create_offer(self, message_id: str, data: Mapping[str, Any]) -> AgreementView:
        """Create an agreement from a create event, once per *message_id*."""
        if not data:
            raise ValidationError("Offer data is required")
        if not message_id:
            raise ValidationError("A notification message id is required")
        if self.store.exists_by_key({"notification_message_id": message_id}):
            existing = self.store.get_current({"notification_message_id": message_id})
            if existing.version == 1 and existing.status == AgreementStatus.OFFERED.value:
                _LOG.info(
                    "Re-publishing offer %s for redelivered message %s",
                    existing.agreement_number,
                    message_id,
                    extra={"agreement_number": existing.agreement_number, "message_id": message_id},
                )
                await self.publisher.publish(existing)
            raise ConflictError("Agreement has already been created")

        identifiers: Dict[str, Any] = dict(data.get("identifiers") or {})
        frn, sbi = identifiers.get("frn"), identifiers.get("sbi")
        if not frn or not sbi:
            raise ValidationError("Offer identifiers must include frn and sbi")

        canonical = normalize_agreement_payload(data, now=self._clock)
        answers = data.get("answers") if isinstance(data.get("answers"), Mapping) else {}

        view = self.store.create(
            {
                "agreement_number": self._new_agreement_number(),
                "frn": str(frn),
                "sbi": str(sbi),
                "created_by": data.get("createdBy"),
                "notification_message_id": message_id,
            },
            {
                "status": AgreementStatus.OFFERED.value,
                "correlation_id": str(uuid.uuid4()),
                "client_ref": data.get("clientRef"),
                "code": data.get("code"),
                "identifiers": identifiers,
                "scheme": answers.get("scheme") or data.get("scheme") or DEFAULT_SCHEME,
                "agreement_name": answers.get("agreementName")
                or data.get("agreementName")
                or DEFAULT_AGREEMENT_NAME,
                "action_applications": canonical["actionApplications"],
                "payment": canonical["payment"],
                "applicant": canonical["applicant"],
            },
        )
        agreements_created_total.inc()
        await self.publisher.publish(view)
        return view

    async def accept_offer(self, agreement_number: str) -> AgreementView:
        """Price the offer with the rate calculator, accept it and dispatch payment.

        A calculator failure leaves the stored agreement untouched.
        """
        current = self.store.get_current({"agreement_number": agreement_number})
        if current.status == AgreementStatus.ACCEPTED.value:
            _LOG.info("Agreement %s already accepted", agreement_number)
            # the dispatcher skips invoices that were already sent
            await self.dispatcher.dispatch(agreement_number)
            return current
        if current.status != AgreementStatus.OFFERED.value:
            raise ConflictError(f"Agreement {agreement_number} is {current.status} and cannot be accepted")

        payment = await self.calculator.calculate(current.action_applications)

        signed_at = self._clock().astimezone(_dt.timezone.utc).replace(tzinfo=None)
        view = self.store.update_current(
            {"agreement_number": agreement_number, "status": AgreementStatus.OFFERED.value},
            {
                "status": AgreementStatus.ACCEPTED.value,
                "signature_date": signed_at,
                "payment": payment,
            },
        )
        await self.publisher.publish(view)
        await self.dispatcher.dispatch(agreement_number)
        return view

    async def withdraw_offer(self, client_ref: str, agreement_number: Optional[str] = None) -> AgreementView:
        if not client_ref:
            raise ValidationError("clientRef is required to withdraw an offer")
        criteria: Dict[str, Any] = {"client_ref": client_ref, "status": AgreementStatus.OFFERED.value}
        if agreement_number:
            criteria["agreement_number"] = agreement_number

        view = self.store.update_current(criteria, {"status": AgreementStatus.WITHDRAWN.value})
        await self.publisher.publish(view)
        return view

    async def unaccept_offer(self, agreement_number: str) -> AgreementView:
        """Move an accepted agreement back to offered and clear its signature."""
        view = self.store.update_current(
            {"agreement_number": agreement_number, "status": AgreementStatus.ACCEPTED.value},
            {"status": AgreementStatus.OFFERED.value, "signature_date": None},
        )
        await self.publisher.publish(view)
        return view
