"""Persistence for agreements, versions, invoices and counters."""

from .models import (Agreement, AgreementVersion, AgreementView, Counter,
                     Invoice)
from .sequencer import ClaimSequencer, format_claim_id, generate_invoice_number
from .versions import AgreementVersionStore

__all__ = [
    "Agreement",
    "AgreementVersion",
    "AgreementVersionStore",
    "AgreementView",
    "ClaimSequencer",
    "Counter",
    "Invoice",
    "format_claim_id",
    "generate_invoice_number",
]
