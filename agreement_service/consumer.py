"""Kafka consumer for agreement create and update events.

Offsets are committed manually after a message is handled. A failed message
is sought back so the next poll redelivers it; malformed messages are
committed and dropped because redelivery cannot fix them.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from aiokafka import AIOKafkaConsumer, TopicPartition
from sqlmodel import Session

from agreement_store.db import get_session, init_db
from common.errors import ValidationError
from common.logging import configure_logging
from integrations.land_grants.calculator_client import RateCalculatorClient
from integrations.payment_hub.client import PaymentHubClient

from .events import (Handler, handle_create_agreement_event,
                     handle_update_agreement_event, process_message)
from .offers import OfferService
from .payment_hub import PaymentHubDispatcher
from .publisher import StatusPublisher

_LOG = logging.getLogger(__name__)

BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "localhost:29092")
CREATE_TOPIC = os.getenv("AGREEMENT_CREATE_TOPIC", "create_agreement")
UPDATE_TOPIC = os.getenv("AGREEMENT_UPDATE_TOPIC", "gas_application_status_updated")
GROUP_ID = os.getenv("KAFKA_GROUP_ID", "agreement-service")
AUTO_OFFSET_RESET = os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest")


def message_id_for(record) -> str:
    """Prefer an explicit ``message-id`` header, else topic:partition:offset."""
    for key, value in record.headers or ():
        if key.lower() in {"message-id", "message_id", "ce_id"} and value:
            return value.decode("utf-8") if isinstance(value, bytes) else str(value)
    return f"{record.topic}:{record.partition}:{record.offset}"


class AgreementEventConsumer:
    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        *,
        session_factory: Callable[[], Session] = get_session,
        publisher: Optional[StatusPublisher] = None,
        calculator: Optional[RateCalculatorClient] = None,
        payment_hub: Optional[PaymentHubClient] = None,
    ) -> None:
        self._consumer = consumer
        self._session_factory = session_factory
        self._publisher = publisher or StatusPublisher()
        self._calculator = calculator or RateCalculatorClient()
        self._payment_hub = payment_hub or PaymentHubClient()
        self._handlers: Dict[str, Handler] = {
            CREATE_TOPIC: handle_create_agreement_event,
            UPDATE_TOPIC: handle_update_agreement_event,
        }

    async def handle(self, record) -> bool:
        """Process one record; return True when its offset may be committed."""
        handler = self._handlers.get(record.topic)
        if handler is None:
            _LOG.warning("No handler for topic %s", record.topic)
            return True

        message_id = message_id_for(record)
        with self._session_factory() as session:
            service = OfferService(
                session,
                calculator=self._calculator,
                publisher=self._publisher,
                dispatcher=PaymentHubDispatcher(session, client=self._payment_hub),
            )
            try:
                await process_message(handler, service, message_id, record.value)
            except ValidationError:
                return True
            except Exception:
                return False
        return True

    async def run(self) -> None:
        async for record in self._consumer:
            if await self.handle(record):
                await self._consumer.commit()
            else:
                self._consumer.seek(TopicPartition(record.topic, record.partition), record.offset)

    async def aclose(self) -> None:
        await self._publisher.aclose()
        await self._calculator.aclose()


@asynccontextmanager
async def kafka_consumer():
    consumer = AIOKafkaConsumer(
        CREATE_TOPIC,
        UPDATE_TOPIC,
        bootstrap_servers=BOOTSTRAP,
        group_id=GROUP_ID,
        enable_auto_commit=False,
        auto_offset_reset=AUTO_OFFSET_RESET,
    )
    await consumer.start()
    _LOG.info(
        "Consumer started bootstrap=%s topics=%s,%s group_id=%s",
        BOOTSTRAP,
        CREATE_TOPIC,
        UPDATE_TOPIC,
        GROUP_ID,
    )
    try:
        yield consumer
    finally:
        await consumer.stop()


async def main() -> None:
    configure_logging(service_name="agreement_consumer")
    init_db()
    async with kafka_consumer() as consumer:
        worker = AgreementEventConsumer(consumer)
        try:
            await worker.run()
        finally:
            await worker.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
