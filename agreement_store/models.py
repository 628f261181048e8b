"""SQLModel ORM definitions for agreements, their versions and invoices.

Versions are append-only snapshots. ``Agreement.current_version_id`` points at
the snapshot readers should see and is moved in the same transaction that
appends a version.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (Column, DateTime, ForeignKey, Index, Integer, String,
                        UniqueConstraint)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON as SA_JSON
from sqlmodel import Field, SQLModel

# portable JSON column across SQLite / Postgres
JSON_PORTABLE = SA_JSON().with_variant(JSONB(), "postgresql")


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Agreement(SQLModel, table=True):
    """Identity record; immutable once created apart from the two pointers."""

    __tablename__ = "agreement"

    id: Optional[int] = Field(default=None, primary_key=True)
    agreement_number: str = Field(sa_column=Column("agreement_number", String, nullable=False))
    frn: Optional[str] = Field(default=None, sa_column=Column("frn", String))
    sbi: Optional[str] = Field(default=None, sa_column=Column("sbi", String))
    created_by: Optional[str] = Field(default=None, sa_column=Column("created_by", String))
    # Message id of the create event that produced this agreement.
    notification_message_id: Optional[str] = Field(
        default=None, sa_column=Column("notification_message_id", String)
    )
    # Set once, by compare-and-set, the first time a claim id is minted.
    claim_id: Optional[str] = Field(default=None, sa_column=Column("claim_id", String))
    current_version_id: Optional[int] = Field(
        default=None, sa_column=Column("current_version_id", Integer)
    )
    created_at: datetime = Field(
        default_factory=utcnow_naive,
        sa_column=Column("created_at", DateTime, nullable=False),
    )

    __table_args__ = (
        UniqueConstraint("agreement_number", name="agreement_number_uniq"),
        UniqueConstraint("notification_message_id", name="agreement_message_uniq"),
        Index("ix_agreement_frn_sbi", "frn", "sbi"),
    )


class AgreementVersion(SQLModel, table=True):
    """Snapshot of an agreement's terms and status."""

    __tablename__ = "agreement_version"

    id: Optional[int] = Field(default=None, primary_key=True)
    agreement_id: int = Field(
        sa_column=Column("agreement_id", Integer, ForeignKey("agreement.id"), nullable=False)
    )
    version: int = Field(sa_column=Column("version", Integer, nullable=False))
    status: str = Field(sa_column=Column("status", String, nullable=False))
    correlation_id: Optional[str] = Field(default=None, sa_column=Column("correlation_id", String))
    client_ref: Optional[str] = Field(default=None, sa_column=Column("client_ref", String))
    code: Optional[str] = Field(default=None, sa_column=Column("code", String))
    scheme: Optional[str] = Field(default=None, sa_column=Column("scheme", String))
    agreement_name: Optional[str] = Field(default=None, sa_column=Column("agreement_name", String))
    identifiers: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column("identifiers", JSON_PORTABLE)
    )
    action_applications: Optional[List[Dict[str, Any]]] = Field(
        default=None, sa_column=Column("action_applications", JSON_PORTABLE)
    )
    payment: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column("payment", JSON_PORTABLE))
    applicant: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column("applicant", JSON_PORTABLE)
    )
    signature_date: Optional[datetime] = Field(
        default=None, sa_column=Column("signature_date", DateTime)
    )
    created_at: datetime = Field(
        default_factory=utcnow_naive,
        sa_column=Column("created_at", DateTime, nullable=False),
    )

    __table_args__ = (
        UniqueConstraint("agreement_id", "version", name="agreement_version_seq_uniq"),
        Index("ix_agreement_version_latest", "agreement_id", "created_at", "id"),
        Index("ix_agreement_version_client_ref", "client_ref"),
    )


class Invoice(SQLModel, table=True):
    __tablename__ = "invoice"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_number: str = Field(sa_column=Column("invoice_number", String, nullable=False))
    claim_id: str = Field(sa_column=Column("claim_id", String, nullable=False))
    agreement_number: str = Field(sa_column=Column("agreement_number", String, nullable=False))
    version: int = Field(sa_column=Column("version", Integer, nullable=False))
    correlation_id: Optional[str] = Field(default=None, sa_column=Column("correlation_id", String))
    payment_hub_request: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column("payment_hub_request", JSON_PORTABLE)
    )
    dispatched_at: Optional[datetime] = Field(default=None, sa_column=Column("dispatched_at", DateTime))
    created_at: datetime = Field(
        default_factory=utcnow_naive,
        sa_column=Column("created_at", DateTime, nullable=False),
    )

    __table_args__ = (
        UniqueConstraint("invoice_number", name="invoice_number_uniq"),
        UniqueConstraint("agreement_number", "version", name="invoice_agreement_version_uniq"),
        Index("ix_invoice_agreement_ts", "agreement_number", "created_at"),
    )


class Counter(SQLModel, table=True):
    """Named monotonic sequence."""

    __tablename__ = "counter"

    name: str = Field(sa_column=Column("name", String, primary_key=True))
    seq: int = Field(default=0, sa_column=Column("seq", Integer, nullable=False, default=0))


class AgreementView(SQLModel):
    """Agreement identity merged with the fields of one of its versions."""

    agreement_id: int
    agreement_number: str
    frn: Optional[str] = None
    sbi: Optional[str] = None
    created_by: Optional[str] = None
    notification_message_id: Optional[str] = None
    claim_id: Optional[str] = None
    version_id: int
    version: int
    status: str
    correlation_id: Optional[str] = None
    client_ref: Optional[str] = None
    code: Optional[str] = None
    scheme: Optional[str] = None
    agreement_name: Optional[str] = None
    identifiers: Optional[Dict[str, Any]] = None
    action_applications: List[Dict[str, Any]] = Field(default_factory=list)
    payment: Optional[Dict[str, Any]] = None
    applicant: Optional[Dict[str, Any]] = None
    signature_date: Optional[datetime] = None
    created_at: datetime
    agreement_created_at: datetime

    @classmethod
    def from_records(cls, agreement: Agreement, version: AgreementVersion) -> "AgreementView":
        return cls(
            agreement_id=agreement.id,
            agreement_number=agreement.agreement_number,
            frn=agreement.frn,
            sbi=agreement.sbi,
            created_by=agreement.created_by,
            notification_message_id=agreement.notification_message_id,
            claim_id=agreement.claim_id,
            version_id=version.id,
            version=version.version,
            status=version.status,
            correlation_id=version.correlation_id,
            client_ref=version.client_ref,
            code=version.code,
            scheme=version.scheme,
            agreement_name=version.agreement_name,
            identifiers=version.identifiers,
            action_applications=version.action_applications or [],
            payment=version.payment,
            applicant=version.applicant,
            signature_date=version.signature_date,
            created_at=version.created_at,
            agreement_created_at=agreement.created_at,
        )
