"""Claim identifiers and invoice numbers.

``R00000042`` style claim ids come from the ``claimIds`` counter. An
agreement keeps one claim id across its versions:

* version 1 always mints a new id;
* later versions reuse the claim id of the agreement's earliest invoice, then
  the id recorded on the agreement, and only mint when neither exists.

The id recorded on the agreement is written with a compare-and-set, so two
concurrent first invoices for a later version settle on a single claim id.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from agreement_domain.formatting import quarter_for
from agreement_observability.metrics import claim_ids_minted_total
from common.errors import (ConflictError, InternalError, NotFoundError,
                           ValidationError)

from .db import get_session
from .models import Agreement, AgreementView, Counter, Invoice

__all__ = [
    "CLAIM_ID_COUNTER",
    "ClaimSequencer",
    "format_claim_id",
    "generate_invoice_number",
]

_LOG = logging.getLogger(__name__)

CLAIM_ID_COUNTER = "claimIds"
_UPDATABLE_INVOICE_FIELDS = ("payment_hub_request", "correlation_id", "dispatched_at")


def format_claim_id(n: int) -> str:
    return f"R{int(n):08d}"


def generate_invoice_number(claim_id: str, version: int, quarter: str) -> str:
    return f"{claim_id}-V{int(version):03d}{quarter}"


class ClaimSequencer:
    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    # ------------------------------------------------------------------
    # counter
    # ------------------------------------------------------------------
    def next_value(self, name: str) -> int:
        """Atomically increment counter *name*, creating it on first use."""
        try:
            bumped = self.session.exec(
                update(Counter)
                .where(Counter.name == name)
                .values(seq=Counter.seq + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount == 0:
                self.session.add(Counter(name=name, seq=1))
                try:
                    self.session.commit()
                except IntegrityError:
                    # another writer created the row first
                    self.session.rollback()
                    return self.next_value(name)
                return 1
            seq = self.session.exec(select(Counter.seq).where(Counter.name == name)).one()
            self.session.commit()
            return seq
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError(f"Failed to increment counter {name}") from exc

    def next_claim_id(self) -> str:
        claim_id = format_claim_id(self.next_value(CLAIM_ID_COUNTER))
        claim_ids_minted_total.inc()
        return claim_id

    # ------------------------------------------------------------------
    # claim ids
    # ------------------------------------------------------------------
    def earliest_invoice(self, agreement_number: str) -> Optional[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.agreement_number == agreement_number)
            .order_by(Invoice.created_at, Invoice.id)
            .limit(1)
        )
        return self.session.exec(stmt).first()

    def _recorded_claim_id(self, agreement_number: str) -> Optional[str]:
        return self.session.exec(
            select(Agreement.claim_id).where(Agreement.agreement_number == agreement_number)
        ).first()

    def _record_claim_id(self, agreement_number: str, claim_id: str) -> Optional[str]:
        """Store *claim_id* on the agreement unless one is already there.

        Returns the claim id the agreement ends up with.
        """
        result = self.session.exec(
            update(Agreement)
            .where(Agreement.agreement_number == agreement_number, Agreement.claim_id.is_(None))
            .values(claim_id=claim_id)
            .execution_options(synchronize_session=False)
        )
        # the recorded claim outlives a failed invoice insert; later versions reuse it
        self.session.commit()
        if result.rowcount == 1:
            return claim_id
        return self._recorded_claim_id(agreement_number)

    def get_or_create_claim_id(self, agreement_number: str, version: int) -> str:
        try:
            if version > 1:
                earliest = self.earliest_invoice(agreement_number)
                if earliest is not None:
                    return earliest.claim_id
                recorded = self._recorded_claim_id(agreement_number)
                if recorded:
                    return recorded

            claim_id = self.next_claim_id()
            stored = self._record_claim_id(agreement_number, claim_id)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError("Failed to resolve claim id") from exc

        if version > 1 and stored and stored != claim_id:
            _LOG.info(
                "Claim id for %s already recorded as %s; discarding %s",
                agreement_number,
                stored,
                claim_id,
                extra={"agreement_number": agreement_number},
            )
            return stored
        return claim_id

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------
    def find_invoice(self, agreement_number: str, version: int) -> Optional[Invoice]:
        return self.session.exec(
            select(Invoice).where(
                Invoice.agreement_number == agreement_number, Invoice.version == version
            )
        ).first()

    def create_invoice(self, view: AgreementView) -> Invoice:
        """Return the invoice for the view's version, creating it on first use."""
        existing = self.find_invoice(view.agreement_number, view.version)
        if existing is not None:
            return existing

        installments = (view.payment or {}).get("payments") or []
        first_date = installments[0].get("paymentDate") if installments else None
        if not first_date:
            raise ValidationError(
                f"Agreement {view.agreement_number} has no scheduled payment date"
            )
        quarter = quarter_for(first_date)

        claim_id = self.get_or_create_claim_id(view.agreement_number, view.version)
        invoice = Invoice(
            invoice_number=generate_invoice_number(claim_id, view.version, quarter),
            claim_id=claim_id,
            agreement_number=view.agreement_number,
            version=view.version,
            correlation_id=view.correlation_id,
        )
        try:
            self.session.add(invoice)
            self.session.commit()
            self.session.refresh(invoice)
        except IntegrityError as exc:
            self.session.rollback()
            winner = self.find_invoice(view.agreement_number, view.version)
            if winner is not None:
                return winner
            raise ConflictError(f"Invoice {invoice.invoice_number} already exists") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError("Failed to create invoice") from exc

        if invoice.id is None:
            raise NotFoundError(f"Invoice {invoice.invoice_number} was not created")
        _LOG.info(
            "Created invoice %s",
            invoice.invoice_number,
            extra={"agreement_number": view.agreement_number, "invoice_number": invoice.invoice_number},
        )
        return invoice

    def update_invoice(self, invoice_number: str, **fields: Any) -> Invoice:
        unknown = sorted(set(fields) - set(_UPDATABLE_INVOICE_FIELDS))
        if unknown:
            raise ValidationError(f"Unsupported invoice fields: {', '.join(unknown)}")
        try:
            invoice = self.session.exec(
                select(Invoice).where(Invoice.invoice_number == invoice_number)
            ).first()
            if invoice is None:
                raise NotFoundError(f"Invoice not found: {invoice_number}")
            for key, value in fields.items():
                setattr(invoice, key, value)
            self.session.add(invoice)
            self.session.commit()
            self.session.refresh(invoice)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError(f"Failed to update invoice {invoice_number}") from exc
        return invoice
