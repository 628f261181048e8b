"""Build and dispatch payment hub requests for an agreement's current version."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlmodel import Session

from agreement_domain.formatting import (format_payment_date,
                                         format_payment_decimal)
from agreement_store.db import get_session
from agreement_store.models import AgreementView, Invoice, utcnow_naive
from agreement_store.sequencer import ClaimSequencer
from agreement_store.versions import AgreementVersionStore
from common.datetime import parse_iso8601
from common.errors import ValidationError
from integrations.payment_hub import source_system
from integrations.payment_hub.client import PaymentHubClient

__all__ = ["PaymentHubDispatcher", "build_payment_hub_request"]

_LOG = logging.getLogger(__name__)

DEFAULT_CURRENCY = "GBP"
QUARTERLY_SCHEDULE = "T4"


def _item_for(payment: Mapping[str, Any], line: Mapping[str, Any]) -> Mapping[str, Any]:
    if line.get("parcelItemId") is not None:
        items, key = payment.get("parcelItems") or {}, line["parcelItemId"]
    elif line.get("agreementLevelItemId") is not None:
        items, key = payment.get("agreementLevelItems") or {}, line["agreementLevelItemId"]
    else:
        raise ValidationError("Payment line item references no parcel or agreement item")

    # keys are ints when built in-process and strings once stored as JSON
    for candidate in (key, str(key)):
        if candidate in items:
            return items[candidate]
    try:
        if int(key) in items:
            return items[int(key)]
    except (TypeError, ValueError):
        pass
    raise ValidationError(f"Payment line item references unknown item {key}")


def _invoice_lines(payment: Mapping[str, Any], installment: Mapping[str, Any]) -> List[Dict[str, Any]]:
    lines = []
    for line in installment.get("lineItems") or []:
        item = _item_for(payment, line)
        code = item.get("code")
        description = item.get("description")
        lines.append(
            {
                "value": format_payment_decimal(line.get("paymentPence", 0)),
                "description": f"{code} - {description}" if code and description else (description or code),
                "schemeCode": code,
            }
        )
    return lines


def build_payment_hub_request(view: AgreementView, invoice: Invoice) -> Dict[str, Any]:
    """Map the view's first scheduled installment and its invoice to the hub body."""
    payment = view.payment or {}
    installments = payment.get("payments") or []
    if not installments:
        raise ValidationError(f"Agreement {view.agreement_number} has no scheduled payments")
    first = installments[0]
    due = first.get("paymentDate")
    if not due:
        raise ValidationError(f"Agreement {view.agreement_number} has no scheduled payment date")

    request: Dict[str, Any] = {
        "sourceSystem": source_system(),
        "frn": view.frn,
        "sbi": view.sbi,
        "marketingYear": parse_iso8601(due).year,
        "paymentRequestNumber": view.version,
        "correlationId": invoice.correlation_id or view.correlation_id,
        "invoiceNumber": invoice.invoice_number,
        "agreementNumber": view.agreement_number,
        "dueDate": format_payment_date(due),
        "value": format_payment_decimal(first.get("totalPaymentPence", 0)),
        "currency": payment.get("currency") or DEFAULT_CURRENCY,
        "invoiceLines": _invoice_lines(payment, first),
    }
    if str(payment.get("frequency") or "").lower() == "quarterly":
        request["schedule"] = QUARTERLY_SCHEDULE
    return request


class PaymentHubDispatcher:
    """Resolve the current version, invoice it, store the request and send it."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        client: Optional[PaymentHubClient] = None,
    ):
        self.session = session or get_session()
        self.store = AgreementVersionStore(self.session)
        self.sequencer = ClaimSequencer(self.session)
        self.client = client or PaymentHubClient()

    async def dispatch(self, agreement_number: str) -> Dict[str, Any]:
        view = self.store.get_current({"agreement_number": agreement_number})
        invoice = self.sequencer.create_invoice(view)
        if invoice.dispatched_at is not None:
            _LOG.info(
                "Payment hub request %s already dispatched",
                invoice.invoice_number,
                extra={"agreement_number": agreement_number, "invoice_number": invoice.invoice_number},
            )
            return {
                "status": "success",
                "message": "Payload already sent to payment hub",
                "invoiceNumber": invoice.invoice_number,
            }
        request = build_payment_hub_request(view, invoice)
        self.sequencer.update_invoice(invoice.invoice_number, payment_hub_request=request)

        result = await self.client.send(request)
        self.sequencer.update_invoice(invoice.invoice_number, dispatched_at=utcnow_naive())
        _LOG.info(
            "Payment hub request for %s dispatched as %s",
            agreement_number,
            invoice.invoice_number,
            extra={"agreement_number": agreement_number, "invoice_number": invoice.invoice_number},
        )
        return {**result, "invoiceNumber": invoice.invoice_number}
