"""CloudEvents status notifications for agreement transitions.

Events go to Kafka through ``aiokafka`` when ``AGREEMENT_EVENTS_ENABLED`` is
set; otherwise they are only logged.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from aiokafka import AIOKafkaProducer

from agreement_store.models import AgreementView
from common.config import env_bool, env_str
from common.datetime import to_iso_z, utcnow

__all__ = ["StatusPublisher", "build_status_event"]

_LOG = logging.getLogger(__name__)

STATUS_EVENT_TYPE = "io.onsite.agreement.status.updated"


def _events_enabled() -> bool:
    return env_bool("AGREEMENT_EVENTS_ENABLED", "0")


def build_status_event(
    view: AgreementView,
    *,
    event_type: Optional[str] = None,
    source: Optional[str] = None,
    now: Optional[Callable[[], Any]] = None,
) -> Dict[str, Any]:
    stamp = to_iso_z((now or utcnow)())
    data: Dict[str, Any] = {
        "agreementNumber": view.agreement_number,
        "correlationId": view.correlation_id,
        "clientRef": view.client_ref,
        "version": view.version,
        "status": view.status,
        "date": stamp,
        "code": view.code,
        "endDate": (view.payment or {}).get("agreementEndDate"),
    }
    ui_url = env_str("AGREEMENT_UI_URL", "")
    if ui_url:
        data["agreementUrl"] = f"{ui_url.rstrip('/')}/{view.agreement_number}"

    return {
        "id": str(uuid.uuid4()),
        "source": source or env_str("AGREEMENT_EVENT_SOURCE", "urn:service:agreement"),
        "specversion": "1.0",
        "type": event_type or env_str("AGREEMENT_STATUS_EVENT_TYPE", STATUS_EVENT_TYPE),
        "time": stamp,
        "datacontenttype": "application/json",
        "data": data,
    }


class StatusPublisher:
    def __init__(
        self,
        producer: Optional[AIOKafkaProducer] = None,
        *,
        topic: Optional[str] = None,
    ) -> None:
        self._producer = producer
        self._owns_producer = producer is None
        self._started = producer is not None
        self._topic = topic

    async def _ensure_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=env_str("KAFKA_BOOTSTRAP", "localhost:29092")
            )
        if not self._started:
            await self._producer.start()
            self._started = True
        return self._producer

    async def publish(self, view: AgreementView) -> Dict[str, Any]:
        event = build_status_event(view)
        extra = {"agreement_number": view.agreement_number, "correlation_id": view.correlation_id}
        if not _events_enabled():
            _LOG.info("Status event (not published): %s", json.dumps(event), extra=extra)
            return event

        producer = await self._ensure_producer()
        topic = self._topic or env_str("AGREEMENT_STATUS_TOPIC", "agreement_status_updated")
        await producer.send_and_wait(
            topic,
            value=json.dumps(event).encode("utf-8"),
            key=view.agreement_number.encode("utf-8"),
        )
        _LOG.info("Published %s status for %s", view.status, view.agreement_number, extra=extra)
        return event

    async def aclose(self) -> None:
        if self._producer is not None and self._owns_producer and self._started:
            await self._producer.stop()
            self._started = False
