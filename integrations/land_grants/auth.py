"""Bearer token providers for the Land Grants API."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from common.secrets import require_secret

__all__ = ["TokenProvider", "StaticTokenProvider"]


@runtime_checkable
class TokenProvider(Protocol):
    """Return a bearer token string for the next request."""

    async def token(self) -> str:
        ...


class StaticTokenProvider:
    """Token configured as the ``LAND_GRANTS_TOKEN`` secret.

    Read on every call so rotated secrets are picked up without a restart.
    """

    def __init__(self, secret_key: str = "LAND_GRANTS_TOKEN") -> None:
        self._secret_key = secret_key

    async def token(self) -> str:  # type: ignore[override]
        return str(require_secret(self._secret_key))
