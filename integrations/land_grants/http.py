"""HTTP wrapper for the Land Grants API.

Uses `httpx.AsyncClient` with:
* Base URL from ``LAND_GRANTS_BASE_URL`` (see `integrations.land_grants`)
* Bearer-token injection via `TokenProvider`
* Prometheus counter + histogram (labels: endpoint, method, status)

There is no retry here: failed calls surface to the caller and the event
transport redelivers. Tests swap the transport for `httpx.MockTransport`.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from agreement_observability.metrics import (rate_calculator_latency_seconds,
                                             rate_calculator_requests_total)
from common.errors import ExternalServiceError

from . import base_url as _default_base_url
from .auth import StaticTokenProvider, TokenProvider

__all__ = ["LandGrantsHTTP"]

_LOG = logging.getLogger(__name__)


class LandGrantsHTTP:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10,
    ):
        self._token_provider = token_provider or StaticTokenProvider()
        self._client = httpx.AsyncClient(
            base_url=base_url or _default_base_url(), timeout=timeout, transport=transport
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        token = await self._token_provider.token()
        headers = {**kwargs.pop("headers", {}), "Authorization": f"Bearer {token}"}
        endpoint_label = url.split("?", 1)[0]

        start = time.perf_counter()
        try:
            resp = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            rate_calculator_requests_total.labels(endpoint_label, method.lower(), "error").inc()
            _LOG.error("Land Grants %s %s failed: %s", method, endpoint_label, exc)
            raise ExternalServiceError(
                f"Land Grants request failed: {exc}", service="land_grants"
            ) from exc
        rate_calculator_latency_seconds.labels(endpoint_label).observe(time.perf_counter() - start)
        rate_calculator_requests_total.labels(endpoint_label, method.lower(), resp.status_code).inc()
        return resp

    async def post(self, url: str, **kw) -> httpx.Response:
        return await self._request("POST", url, **kw)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
