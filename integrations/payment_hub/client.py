"""Send dispatch payloads to the payment hub service bus."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from agreement_observability.metrics import payment_hub_dispatch_total
from common.errors import ExternalServiceError

from . import dispatch_enabled, hub_uri, payload_logging_enabled
from .auth import SasTokenProvider

__all__ = ["PaymentHubClient"]

_LOG = logging.getLogger(__name__)

_BROKER_PROPERTIES = json.dumps({"SessionId": "123"})
_SUCCESS = {"status": "success", "message": "Payload sent to payment hub successfully"}


class PaymentHubClient:
    def __init__(
        self,
        token_provider: Optional[SasTokenProvider] = None,
        *,
        uri: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10,
    ) -> None:
        self._token_provider = token_provider or SasTokenProvider(uri=uri)
        self._uri = uri
        self._transport = transport
        self._timeout = timeout

    async def send(self, body: Mapping[str, Any]) -> Dict[str, str]:
        """POST *body* to ``{uri}/messages``.

        With ``PAYMENT_HUB_ENABLED`` off the payload is only logged and the
        call is reported as successful.
        """
        payload = json.dumps(body, default=str)
        if not dispatch_enabled():
            _LOG.info(
                "Payment hub dispatch disabled; payload not sent: %s",
                payload,
                extra={"invoice_number": body.get("invoiceNumber")},
            )
            payment_hub_dispatch_total.labels("skipped").inc()
            return dict(_SUCCESS)

        if payload_logging_enabled():
            _LOG.info("Payload to be sent to payment hub: %s", payload)

        # Missing key or key name raises ConfigurationError from the provider.
        token = self._token_provider.token()
        headers = {
            "Authorization": token,
            "Content-Type": "application/json",
            "BrokerProperties": _BROKER_PROPERTIES,
        }
        url = f"{self._uri or hub_uri()}/messages"

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(url, content=json.dumps(body, default=str), headers=headers)
        except httpx.RequestError as exc:
            payment_hub_dispatch_total.labels("error").inc()
            raise ExternalServiceError(
                f"Payment hub request failed: {exc}", service="payment_hub"
            ) from exc

        if not resp.is_success:
            payment_hub_dispatch_total.labels("error").inc()
            raise ExternalServiceError(
                f"Payment hub request failed: {resp.status_code} {resp.reason_phrase}",
                service="payment_hub",
                status_code=resp.status_code,
                body=resp.text,
            )

        payment_hub_dispatch_total.labels("sent").inc()
        _LOG.info("The payment hub request was sent successfully")
        if payload_logging_enabled():
            _LOG.info("Payment hub response %s: %s", resp.status_code, resp.text)
        return dict(_SUCCESS)
