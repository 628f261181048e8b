"""Shared-access-signature tokens for the payment hub.

Tokens are memoised in an injected :class:`~common.cache.TTLCache` for the
configured TTL, so each process signs at most one token per TTL window.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Callable, Optional
from urllib.parse import quote

from common.cache import TTLCache
from common.secrets import require_secret

from . import hub_uri, token_ttl

__all__ = ["SasTokenProvider", "generate_sas_token"]

_LOG = logging.getLogger(__name__)

_CACHE_KEY = "payment_hub_token"


def generate_sas_token(uri: str, key_name: str, key: str, ttl: float, *, now: Optional[float] = None) -> str:
    """Sign *uri* with HMAC-SHA256 and return the ``SharedAccessSignature`` header value."""

    encoded = quote(uri, safe="!~*'()")
    expiry = round((time.time() if now is None else now) + ttl)
    digest = hmac.new(key.encode("utf-8"), f"{encoded}\n{expiry}".encode("utf-8"), hashlib.sha256).digest()
    signature = quote(base64.b64encode(digest).decode("ascii"), safe="")
    return f"SharedAccessSignature sr={encoded}&sig={signature}&se={expiry}&skn={key_name}"


class SasTokenProvider:
    def __init__(
        self,
        cache: Optional[TTLCache] = None,
        *,
        uri: Optional[str] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache or TTLCache()
        self._uri = uri
        self._ttl = ttl
        self._clock = clock

    def _sign(self) -> str:
        key_name = require_secret("PAYMENT_HUB_SA_KEY_NAME")
        key = require_secret("PAYMENT_HUB_SA_KEY")
        _LOG.debug("Signing new payment hub token for %s", key_name)
        return generate_sas_token(
            self._uri or hub_uri(),
            str(key_name),
            str(key),
            self._ttl or token_ttl(),
            now=self._clock(),
        )

    def token(self) -> str:
        return self._cache.get_or_set(_CACHE_KEY, self._sign, self._ttl or token_ttl())
