import datetime as _dt
import json
import re
import uuid

import httpx
import pytest

from agreement_service.offers import OfferService, generate_agreement_number
from agreement_service.payment_hub import PaymentHubDispatcher
from agreement_store.sequencer import ClaimSequencer
from agreement_store.versions import AgreementVersionStore
from common.errors import (ConflictError, ExternalServiceError, NotFoundError,
                           ValidationError)
from integrations.payment_hub.client import PaymentHubClient

FIXED_NOW = _dt.datetime(2025, 9, 1, 10, 0, tzinfo=_dt.timezone.utc)


def _service(session, calculator, publisher, dispatcher, **kwargs):
    return OfferService(
        session,
        calculator=calculator,
        publisher=publisher,
        dispatcher=dispatcher,
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


def test_generate_agreement_number():
    assert re.fullmatch(r"SFI\d{9}", generate_agreement_number())


@pytest.mark.anyio
async def test_create_offer(session, calculator, publisher, dispatcher, application_payload):
    service = _service(session, calculator, publisher, dispatcher)

    view = await service.create_offer("msg-1", application_payload)

    assert re.fullmatch(r"SFI\d{9}", view.agreement_number)
    assert view.version == 1
    assert view.status == "offered"
    assert view.frn == "1234567890"
    assert view.sbi == "106284736"
    assert view.client_ref == "client-ref-001"
    assert view.code == "frps-private-beta"
    assert view.scheme == "SFI"
    assert view.agreement_name == "Unnamed Agreement"
    assert view.notification_message_id == "msg-1"
    assert view.payment["annualTotalPence"] == 35150
    assert view.applicant["business"]["name"] == "Sample Farm Ltd"
    uuid.UUID(view.correlation_id)
    assert publisher.published == [view]


@pytest.mark.anyio
async def test_numeric_identifiers_are_stored_as_strings(session, calculator, publisher, dispatcher, application_payload):
    application_payload["identifiers"] = {"frn": 1234567890, "sbi": 106284736}
    view = await _service(session, calculator, publisher, dispatcher).create_offer("msg-1", application_payload)
    assert (view.frn, view.sbi) == ("1234567890", "106284736")


@pytest.mark.anyio
async def test_duplicate_message_is_rejected(session, calculator, publisher, dispatcher, application_payload):
    service = _service(session, calculator, publisher, dispatcher)
    await service.create_offer("msg-1", application_payload)

    with pytest.raises(ConflictError, match="already been created"):
        await service.create_offer("msg-1", application_payload)

    # the untouched offer is announced again for the redelivered message
    assert [(v.version, v.status) for v in publisher.published] == [(1, "offered"), (1, "offered")]
    assert len(AgreementVersionStore(session).list_versions(publisher.published[0].agreement_number)) == 1


@pytest.mark.anyio
async def test_duplicate_message_after_accept_is_not_republished(
    session, calculator, publisher, dispatcher, application_payload
):
    service = _service(session, calculator, publisher, dispatcher)
    created = await service.create_offer("msg-1", application_payload)
    await service.accept_offer(created.agreement_number)

    with pytest.raises(ConflictError):
        await service.create_offer("msg-1", application_payload)

    assert [v.status for v in publisher.published] == ["offered", "accepted"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "message_id,mutate",
    [
        ("msg-1", lambda p: p.pop("identifiers")),
        ("msg-1", lambda p: p["identifiers"].pop("sbi")),
        ("msg-1", lambda p: p.pop("application")),
        ("", lambda p: None),
    ],
)
async def test_create_offer_validation(
    session, calculator, publisher, dispatcher, application_payload, message_id, mutate
):
    mutate(application_payload)
    with pytest.raises(ValidationError):
        await _service(session, calculator, publisher, dispatcher).create_offer(message_id, application_payload)
    assert publisher.published == []


@pytest.mark.anyio
async def test_accept_offer(session, calculator, publisher, dispatcher, seed, calculated_payment):
    offered = seed("SFI123456789")
    service = _service(session, calculator, publisher, dispatcher)

    view = await service.accept_offer("SFI123456789")

    assert view.status == "accepted"
    assert view.version == 2
    assert view.signature_date == _dt.datetime(2025, 9, 1, 10, 0)
    assert view.payment == calculated_payment
    assert calculator.calls == [offered.action_applications]
    assert [v.status for v in publisher.published] == ["accepted"]
    assert dispatcher.dispatched == ["SFI123456789"]


@pytest.mark.anyio
async def test_accept_again_only_retries_dispatch(session, calculator, publisher, dispatcher, seed):
    seed("SFI123456789")
    service = _service(session, calculator, publisher, dispatcher)
    first = await service.accept_offer("SFI123456789")

    again = await service.accept_offer("SFI123456789")

    assert again.version_id == first.version_id
    assert len(calculator.calls) == 1
    assert len(publisher.published) == 1
    assert dispatcher.dispatched == ["SFI123456789", "SFI123456789"]


@pytest.mark.anyio
async def test_accept_retry_sends_payment_hub_request_after_failure(
    monkeypatch, session, calculator, publisher, seed
):
    monkeypatch.setenv("PAYMENT_HUB_ENABLED", "1")
    responses = [httpx.Response(503, text="busy"), httpx.Response(201)]
    sent = []

    def _handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return responses.pop(0)

    client = PaymentHubClient(uri="https://paymenthub.test", transport=httpx.MockTransport(_handler))
    service = _service(session, calculator, publisher, PaymentHubDispatcher(session, client=client))
    seed("SFI123456789")

    with pytest.raises(ExternalServiceError):
        await service.accept_offer("SFI123456789")
    invoice = ClaimSequencer(session).find_invoice("SFI123456789", 2)
    assert invoice.dispatched_at is None

    view = await service.accept_offer("SFI123456789")

    assert view.status == "accepted"
    assert len(sent) == 2
    invoice = ClaimSequencer(session).find_invoice("SFI123456789", 2)
    assert invoice.dispatched_at is not None
    assert json.loads(sent[1].content)["invoiceNumber"] == invoice.invoice_number

    # once sent, a further accept does not post again
    await service.accept_offer("SFI123456789")
    assert len(sent) == 2


@pytest.mark.anyio
async def test_calculator_failure_leaves_agreement_unchanged(session, publisher, dispatcher, seed, failing_calculator):
    seed("SFI123456789")
    service = _service(session, failing_calculator, publisher, dispatcher)

    with pytest.raises(ExternalServiceError):
        await service.accept_offer("SFI123456789")

    current = AgreementVersionStore(session).get_current({"agreement_number": "SFI123456789"})
    assert (current.version, current.status) == (1, "offered")
    assert publisher.published == []
    assert dispatcher.dispatched == []


@pytest.mark.anyio
async def test_accept_dispatches_invoice_to_payment_hub(monkeypatch, session, calculator, publisher, seed):
    monkeypatch.delenv("PAYMENT_HUB_ENABLED", raising=False)
    seed("SFI123456789")
    service = OfferService(session, calculator=calculator, publisher=publisher, clock=lambda: FIXED_NOW)

    await service.accept_offer("SFI123456789")

    invoice = ClaimSequencer(session).find_invoice("SFI123456789", 2)
    assert invoice.invoice_number == "R00000001-V002Q4"
    assert invoice.payment_hub_request["dueDate"] == "05/12/2025"


@pytest.mark.anyio
async def test_withdraw_offer(session, calculator, publisher, dispatcher, seed):
    seed("SFI123456789")
    service = _service(session, calculator, publisher, dispatcher)

    view = await service.withdraw_offer("client-ref-001")

    assert (view.version, view.status) == (2, "withdrawn")
    assert [v.status for v in publisher.published] == ["withdrawn"]

    with pytest.raises(ConflictError):
        await service.accept_offer("SFI123456789")
    with pytest.raises(NotFoundError):
        await service.withdraw_offer("client-ref-001")


@pytest.mark.anyio
async def test_withdraw_narrows_by_agreement_number(session, calculator, publisher, dispatcher, seed):
    seed("SFI100000001")
    seed("SFI100000002")
    service = _service(session, calculator, publisher, dispatcher)

    view = await service.withdraw_offer("client-ref-001", "SFI100000001")

    assert view.agreement_number == "SFI100000001"
    store = AgreementVersionStore(session)
    assert store.get_current({"agreement_number": "SFI100000002"}).status == "offered"


@pytest.mark.anyio
async def test_withdraw_requires_client_ref(session, calculator, publisher, dispatcher):
    with pytest.raises(ValidationError):
        await _service(session, calculator, publisher, dispatcher).withdraw_offer("")


@pytest.mark.anyio
async def test_unaccept_offer(session, calculator, publisher, dispatcher, seed):
    seed("SFI123456789")
    service = _service(session, calculator, publisher, dispatcher)
    await service.accept_offer("SFI123456789")

    view = await service.unaccept_offer("SFI123456789")

    assert (view.version, view.status) == (3, "offered")
    assert view.signature_date is None
    history = AgreementVersionStore(session).list_versions("SFI123456789")
    assert [v.status for v in history] == ["offered", "accepted", "offered"]


@pytest.mark.anyio
async def test_unaccept_requires_accepted_agreement(session, calculator, publisher, dispatcher, seed):
    seed("SFI123456789")
    with pytest.raises(NotFoundError):
        await _service(session, calculator, publisher, dispatcher).unaccept_offer("SFI123456789")
