"""Agreement + version persistence with current-version resolution.

Criteria are plain mappings. Identity keys filter the agreement; snapshot
keys filter its *current* version::

    store.get_current({"agreement_number": "SFI123456789"})
    store.update_current({"client_ref": "ref-1", "status": "offered"}, {"status": "withdrawn"})

Every transition appends a version and moves ``current_version_id`` in one
transaction. The pointer move is a compare-and-set against the version the
writer started from, so two writers racing on the same agreement cannot both
win.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from agreement_observability.metrics import agreement_transitions_total
from common.errors import (ConflictError, InternalError, NoVersionsError,
                           NotFoundError, ValidationError)

from .db import get_session
from .models import Agreement, AgreementVersion, AgreementView

__all__ = ["AgreementVersionStore", "IDENTITY_FIELDS", "VERSION_FIELDS"]

_LOG = logging.getLogger(__name__)

IDENTITY_FIELDS = ("agreement_number", "frn", "sbi", "created_by", "notification_message_id")
VERSION_FIELDS = (
    "status",
    "correlation_id",
    "client_ref",
    "code",
    "scheme",
    "agreement_name",
    "identifiers",
    "action_applications",
    "payment",
    "applicant",
    "signature_date",
)
_VERSION_CRITERIA = ("status", "correlation_id", "client_ref", "code")


def _split_criteria(criteria: Mapping[str, Any]) -> Tuple[list, list]:
    if not criteria:
        raise ValidationError("Lookup criteria must not be empty")
    agreement_filters, version_filters = [], []
    for key, value in criteria.items():
        if key in IDENTITY_FIELDS:
            agreement_filters.append(getattr(Agreement, key) == value)
        elif key in _VERSION_CRITERIA:
            version_filters.append(getattr(AgreementVersion, key) == value)
        else:
            raise ValidationError(f"Unsupported agreement lookup field: {key}")
    return agreement_filters, version_filters


def _check_fields(data: Mapping[str, Any], allowed: Tuple[str, ...], what: str) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(f"Unsupported {what} fields: {', '.join(unknown)}")


class AgreementVersionStore:
    """Create and read agreements with latest-version semantics."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def _lookup(self, criteria: Mapping[str, Any]):
        agreement_filters, version_filters = _split_criteria(criteria)
        stmt = select(Agreement).where(*agreement_filters)
        if version_filters:
            stmt = stmt.join(
                AgreementVersion, AgreementVersion.id == Agreement.current_version_id
            ).where(*version_filters)
        return stmt.order_by(Agreement.created_at.desc(), Agreement.id.desc())

    def _resolve(self, criteria: Mapping[str, Any]) -> Agreement:
        agreement = self.session.exec(self._lookup(criteria).limit(1)).first()
        if agreement is None:
            raise NotFoundError(f"Agreement not found using filter: {dict(criteria)}")
        return agreement

    def _current_version(self, agreement: Agreement) -> AgreementVersion:
        if agreement.current_version_id is not None:
            version = self.session.get(AgreementVersion, agreement.current_version_id)
            if version is not None:
                return version
            _LOG.warning(
                "Agreement %s points at missing version %s",
                agreement.agreement_number,
                agreement.current_version_id,
            )
        # no pointer: latest by (created_at, id)
        stmt = (
            select(AgreementVersion)
            .where(AgreementVersion.agreement_id == agreement.id)
            .order_by(AgreementVersion.created_at.desc(), AgreementVersion.id.desc())
            .limit(1)
        )
        version = self.session.exec(stmt).first()
        if version is None:
            raise NoVersionsError(f"Agreement has no versions: {agreement.agreement_number}")
        return version

    def exists_by_key(self, criteria: Mapping[str, Any]) -> bool:
        try:
            return self.session.exec(self._lookup(criteria).limit(1)).first() is not None
        except SQLAlchemyError as exc:
            raise InternalError("Failed to look up agreement") from exc

    def get_current(self, criteria: Mapping[str, Any]) -> AgreementView:
        try:
            agreement = self._resolve(criteria)
            version = self._current_version(agreement)
        except SQLAlchemyError as exc:
            raise InternalError("Failed to load agreement") from exc
        return AgreementView.from_records(agreement, version)

    def list_versions(self, agreement_number: str) -> List[AgreementView]:
        """Return every version of the agreement, oldest first."""
        try:
            agreement = self._resolve({"agreement_number": agreement_number})
            stmt = (
                select(AgreementVersion)
                .where(AgreementVersion.agreement_id == agreement.id)
                .order_by(AgreementVersion.version, AgreementVersion.id)
            )
            versions = self.session.exec(stmt).all()
        except SQLAlchemyError as exc:
            raise InternalError("Failed to load agreement versions") from exc
        return [AgreementView.from_records(agreement, v) for v in versions]

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def create(self, identity: Mapping[str, Any], initial_version: Mapping[str, Any]) -> AgreementView:
        """Insert the agreement and its first version, then point at it."""
        _check_fields(identity, IDENTITY_FIELDS, "agreement")
        _check_fields(initial_version, VERSION_FIELDS, "version")
        if not identity.get("agreement_number"):
            raise ValidationError("agreement_number is required")
        if not initial_version.get("status"):
            raise ValidationError("status is required for the initial version")

        try:
            agreement = Agreement(**identity)
            self.session.add(agreement)
            self.session.flush()

            version = AgreementVersion(agreement_id=agreement.id, version=1, **initial_version)
            self.session.add(version)
            self.session.flush()

            agreement.current_version_id = version.id
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                f"Agreement {identity.get('agreement_number')} has already been created"
            ) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError("Failed to create agreement") from exc

        self.session.refresh(agreement)
        self.session.refresh(version)
        agreement_transitions_total.labels(version.status).inc()
        _LOG.info(
            "Created agreement %s",
            agreement.agreement_number,
            extra={"agreement_number": agreement.agreement_number, "correlation_id": version.correlation_id},
        )
        return AgreementView.from_records(agreement, version)

    def update_current(self, criteria: Mapping[str, Any], patch: Mapping[str, Any]) -> AgreementView:
        """Append a copy of the current version with *patch* applied."""
        _check_fields(patch, VERSION_FIELDS, "version")
        try:
            agreement = self._resolve(criteria)
            current = self._current_version(agreement)

            data: Dict[str, Any] = {
                field: copy.deepcopy(getattr(current, field)) for field in VERSION_FIELDS
            }
            data.update(copy.deepcopy(dict(patch)))
            appended = AgreementVersion(
                agreement_id=agreement.id, version=current.version + 1, **data
            )
            self.session.add(appended)
            self.session.flush()

            expected = (
                Agreement.current_version_id == agreement.current_version_id
                if agreement.current_version_id is not None
                else Agreement.current_version_id.is_(None)
            )
            moved = self.session.exec(
                update(Agreement)
                .where(Agreement.id == agreement.id, expected)
                .values(current_version_id=appended.id)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                self.session.rollback()
                raise ConflictError(
                    f"Agreement {agreement.agreement_number} was modified concurrently"
                )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Agreement was modified concurrently") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError("Failed to update agreement") from exc

        self.session.refresh(agreement)
        self.session.refresh(appended)
        agreement_transitions_total.labels(appended.status).inc()
        _LOG.info(
            "Agreement %s moved to version %s (%s)",
            agreement.agreement_number,
            appended.version,
            appended.status,
            extra={"agreement_number": agreement.agreement_number},
        )
        return AgreementView.from_records(agreement, appended)

