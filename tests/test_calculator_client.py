import json
import random
from decimal import Decimal

import httpx
import pytest

from common.errors import ExternalServiceError, ValidationError
from integrations.land_grants.calculator_client import (
    RateCalculatorClient, build_calculation_request, coerce_quantity,
    group_actions, group_parcels)
from integrations.land_grants.http import LandGrantsHTTP


def test_group_actions_drops_non_positive_quantities():
    actions = [
        {"sheetId": "A", "parcelId": "1", "code": "X1", "appliedFor": {"quantity": "2.5"}},
        {"sheetId": "A", "parcelId": "1", "code": "X2", "appliedFor": {"quantity": 0}},
    ]
    assert group_actions(actions) == {
        "parcel": [{"sheetId": "A", "parcelId": "1", "actions": [{"code": "X1", "quantity": 2.5}]}]
    }


def test_group_actions_skips_incomplete_actions():
    actions = [
        {"parcelId": "1", "code": "X1", "appliedFor": {"quantity": 1}},
        {"sheetId": "A", "code": "X1", "appliedFor": {"quantity": 1}},
        {"sheetId": "A", "parcelId": "1", "appliedFor": {"quantity": 1}},
        {"sheetId": "B", "parcelId": "2", "code": "X3", "appliedFor": {"quantity": "lots"}},
        "not-an-action",
    ]
    assert group_actions(actions) == {"parcel": [{"sheetId": "B", "parcelId": "2", "actions": []}]}


def test_group_actions_is_order_independent():
    actions = [
        {"sheetId": "A", "parcelId": "1", "code": "X1", "appliedFor": {"quantity": 1}},
        {"sheetId": "A", "parcelId": "2", "code": "X2", "appliedFor": {"quantity": 2}},
        {"sheetId": "B", "parcelId": "1", "code": "X3", "appliedFor": {"quantity": 3}},
        {"sheetId": "A", "parcelId": "1", "code": "X4", "eligible": {"quantity": 4}},
    ]

    def canonical(payload):
        return {
            (g["sheetId"], g["parcelId"]): sorted(a["code"] for a in g["actions"])
            for g in payload["parcel"]
        }

    expected = canonical(group_actions(actions))
    shuffled = list(actions)
    random.Random(7).shuffle(shuffled)

    assert canonical(group_actions(shuffled)) == expected
    assert expected == {("A", "1"): ["X1", "X4"], ("A", "2"): ["X2"], ("B", "1"): ["X3"]}


@pytest.mark.parametrize(
    "raw,expected",
    [
        (3, 3),
        (2.5, 2.5),
        ("4", 4),
        (" 1.75 ", 1.75),
        ("2.5 ha", 2.5),
        ("3e2", 300),
        ("ha 2", None),
        (Decimal("0.3333"), 0.3333),
        (0, None),
        (-1, None),
        ("abc", None),
        (float("inf"), None),
        (float("nan"), None),
        (None, None),
        (True, None),
    ],
)
def test_coerce_quantity(raw, expected):
    assert coerce_quantity(raw) == expected


def test_group_parcels_and_autodetect():
    parcels = [
        {"sheetId": "A", "parcelId": "1", "actions": [{"code": "X1", "appliedFor": {"quantity": 1}}]},
        {"sheetId": "A", "parcelId": "1", "actions": [{"code": "X2", "appliedFor": {"quantity": 2}}]},
    ]
    expected = {
        "parcel": [
            {
                "sheetId": "A",
                "parcelId": "1",
                "actions": [{"code": "X1", "quantity": 1}, {"code": "X2", "quantity": 2}],
            }
        ]
    }
    assert group_parcels(parcels) == expected
    assert build_calculation_request(parcels) == expected


def test_group_parcels_rejects_non_list_actions():
    with pytest.raises(ValidationError):
        group_parcels([{"sheetId": "A", "parcelId": "1", "actions": "X1"}])


def test_group_actions_rejects_non_list():
    with pytest.raises(ValidationError):
        group_actions({"sheetId": "A"})  # type: ignore[arg-type]


class _RecordingTransport(httpx.AsyncBaseTransport):
    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests = []

    async def handle_async_request(self, request):  # type: ignore[override]
        self.requests.append(request)
        return self.response


def _client(response: httpx.Response) -> tuple[RateCalculatorClient, _RecordingTransport]:
    transport = _RecordingTransport(response)
    http = LandGrantsHTTP(base_url="https://land-grants.test", transport=transport)
    return RateCalculatorClient(http), transport


ACTIONS = [{"sheetId": "AB1234", "parcelId": "10001", "code": "CMOR1", "appliedFor": {"quantity": 7.5}}]


@pytest.mark.anyio
async def test_calculate_posts_grouped_body_with_bearer(calculated_payment):
    client, transport = _client(
        httpx.Response(200, json={"message": "ok", "payment": {**calculated_payment, "explanations": ["x"]}})
    )

    payment = await client.calculate(ACTIONS)

    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://land-grants.test/payments/calculate"
    assert request.headers["Authorization"] == "Bearer lg-token"
    assert json.loads(request.content) == {
        "parcel": [{"sheetId": "AB1234", "parcelId": "10001", "actions": [{"code": "CMOR1", "quantity": 7.5}]}]
    }
    assert payment == calculated_payment
    assert "explanations" not in payment


@pytest.mark.anyio
async def test_calculate_non_2xx_raises_with_status_and_body():
    client, _ = _client(httpx.Response(503, text="unavailable"))

    with pytest.raises(ExternalServiceError) as exc_info:
        await client.calculate(ACTIONS)

    assert exc_info.value.upstream_status == 503
    assert exc_info.value.body == "unavailable"
    assert exc_info.value.status_code == 502


@pytest.mark.anyio
async def test_calculate_missing_payment_field_raises():
    client, _ = _client(httpx.Response(200, json={"message": "no payment"}))

    with pytest.raises(ExternalServiceError, match="payment"):
        await client.calculate(ACTIONS)


@pytest.mark.anyio
async def test_calculate_wraps_transport_errors():
    def _boom(request):
        raise httpx.ConnectError("refused", request=request)

    http = LandGrantsHTTP(base_url="https://land-grants.test", transport=httpx.MockTransport(_boom))
    client = RateCalculatorClient(http)

    with pytest.raises(ExternalServiceError):
        await client.calculate(ACTIONS)


@pytest.mark.anyio
async def test_payload_logging_is_optional(monkeypatch, caplog, calculated_payment):
    monkeypatch.setenv("LAND_GRANTS_LOGGING", "1")
    client, _ = _client(httpx.Response(200, json={"payment": calculated_payment}))

    with caplog.at_level("INFO", logger="integrations.land_grants.calculator_client"):
        await client.calculate(ACTIONS)

    messages = [r.getMessage() for r in caplog.records]
    assert any("calculation request" in m for m in messages)
    assert any("calculation response" in m for m in messages)
