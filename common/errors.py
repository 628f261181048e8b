"""Error taxonomy shared by the agreement services.

Every domain error carries the HTTP status the API maps it to. Infrastructure
failures (database, transport) are wrapped once, at the boundary that caught
them, into :class:`InternalError` or :class:`ExternalServiceError`.
"""
from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "AgreementsError",
    "ValidationError",
    "NotFoundError",
    "NoVersionsError",
    "ConflictError",
    "ExternalServiceError",
    "InternalError",
    "ConfigurationError",
]


class AgreementsError(Exception):
    """Base class for every error raised by the agreement services."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message}


class ValidationError(AgreementsError):
    """Payload rejected; retrying the same input will not help."""

    status_code = 400


class NotFoundError(AgreementsError):
    status_code = 404


class NoVersionsError(NotFoundError):
    """An agreement exists but has no versions attached."""


class ConflictError(AgreementsError):
    """The record already exists (duplicate delivery or unique key clash)."""

    status_code = 409


class ExternalServiceError(AgreementsError):
    """A downstream collaborator answered with an error or could not be reached."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.upstream_status = status_code
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["service"] = self.service
        if self.upstream_status is not None:
            data["upstream_status"] = self.upstream_status
        return data


class InternalError(AgreementsError):
    status_code = 500


class ConfigurationError(InternalError):
    """Required configuration or secret is missing."""
