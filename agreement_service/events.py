"""Inbound agreement event handling.

Delivery is at-least-once. Handlers either finish, treat a duplicate create
as a no-op, or raise so the transport redelivers the message.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from agreement_observability.metrics import agreement_events_total
from agreement_store.models import AgreementView
from common.errors import ConflictError, ValidationError

from .offers import OfferService

__all__ = [
    "handle_create_agreement_event",
    "handle_update_agreement_event",
    "process_message",
]

_LOG = logging.getLogger(__name__)

CREATE_EVENT_MARKER = "agreement.create"
WITHDRAWN_MARKER = "WITHDRAWN"

Handler = Callable[[OfferService, str, Mapping[str, Any]], Awaitable[Optional[AgreementView]]]


async def handle_create_agreement_event(
    service: OfferService, message_id: str, payload: Mapping[str, Any]
) -> Optional[AgreementView]:
    event_type = str(payload.get("type") or "")
    if CREATE_EVENT_MARKER not in event_type:
        _LOG.info("No action for event type %r", event_type, extra={"message_id": message_id})
        agreement_events_total.labels("create", "ignored").inc()
        return None

    try:
        view = await service.create_offer(message_id, payload.get("data") or {})
    except ConflictError:
        _LOG.info("Agreement for message %s already created", message_id, extra={"message_id": message_id})
        agreement_events_total.labels("create", "duplicate").inc()
        return None
    agreement_events_total.labels("create", "processed").inc()
    return view


async def handle_update_agreement_event(
    service: OfferService, message_id: str, payload: Mapping[str, Any]
) -> Optional[AgreementView]:
    data = payload.get("data") or {}
    status = str(data.get("status") or "")
    if WITHDRAWN_MARKER not in status.upper():
        _LOG.info("No action for status %r", status, extra={"message_id": message_id})
        agreement_events_total.labels("update", "ignored").inc()
        return None

    view = await service.withdraw_offer(data.get("clientRef"), data.get("agreementNumber"))
    agreement_events_total.labels("update", "processed").inc()
    return view


async def process_message(
    handler: Handler,
    service: OfferService,
    message_id: str,
    body: Union[str, bytes, Mapping[str, Any]],
) -> Optional[AgreementView]:
    """Decode *body* and run *handler* on it.

    Failures are logged and re-raised; recovery is left to redelivery.
    """
    if isinstance(body, Mapping):
        payload = body
    else:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as exc:
            _LOG.error("Invalid message %s: %s", message_id, exc, extra={"message_id": message_id})
            raise ValidationError("Invalid message format") from exc
        if not isinstance(payload, Mapping):
            raise ValidationError("Invalid message format")

    try:
        return await handler(service, message_id, payload)
    except Exception:
        _LOG.exception("Error processing message %s", message_id, extra={"message_id": message_id})
        agreement_events_total.labels(getattr(handler, "__name__", "handler"), "failed").inc()
        raise
