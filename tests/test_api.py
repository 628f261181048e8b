import jwt
import pytest
from fastapi.testclient import TestClient

from agreement_service.api import app, get_offer_service, get_store
from agreement_service.offers import OfferService
from agreement_store.versions import AgreementVersionStore

AUTH = {"Authorization": "Bearer testtoken"}


@pytest.fixture()
def client(session, calculator, publisher, dispatcher):
    app.dependency_overrides[get_store] = lambda: AgreementVersionStore(session)
    app.dependency_overrides[get_offer_service] = lambda: OfferService(
        session, calculator=calculator, publisher=publisher, dispatcher=dispatcher
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_requires_token(client, seed):
    seed("SFI123456789")
    assert client.get("/api/agreement/v1/SFI123456789").status_code == 401
    assert (
        client.get("/api/agreement/v1/SFI123456789", headers={"Authorization": "Bearer nope"}).status_code
        == 403
    )


def test_get_agreement(client, seed):
    seed("SFI123456789")

    resp = client.get("/api/agreement/v1/SFI123456789", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["agreement_number"] == "SFI123456789"
    assert body["status"] == "offered"
    assert body["payment"]["annualTotalPence"] == 35150


def test_jwt_is_accepted(client, seed):
    seed("SFI123456789")
    token = jwt.encode({"sub": "caseworker"}, "testsecret", algorithm="HS256")

    resp = client.get("/api/agreement/v1/SFI123456789", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 200


def test_unknown_agreement_is_404(client):
    resp = client.get("/api/agreement/v1/SFI000000000", headers=AUTH)

    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"


def test_accept_unaccept_and_versions(client, seed, dispatcher):
    seed("SFI123456789")

    accepted = client.post("/api/agreement/v1/SFI123456789/accept", headers=AUTH)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert dispatcher.dispatched == ["SFI123456789"]

    unaccepted = client.post("/api/agreement/v1/SFI123456789/unaccept", headers=AUTH)
    assert unaccepted.json()["status"] == "offered"

    versions = client.get("/api/agreement/v1/SFI123456789/versions", headers=AUTH).json()
    assert [(v["version"], v["status"]) for v in versions] == [(1, "offered"), (2, "accepted"), (3, "offered")]


def test_calculator_failure_maps_to_502(session, publisher, dispatcher, failing_calculator, seed):
    seed("SFI123456789")
    app.dependency_overrides[get_offer_service] = lambda: OfferService(
        session, calculator=failing_calculator, publisher=publisher, dispatcher=dispatcher
    )
    try:
        resp = TestClient(app).post("/api/agreement/v1/SFI123456789/accept", headers=AUTH)
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 502
    assert resp.json()["service"] == "land_grants"
    assert resp.json()["upstream_status"] == 503


def test_withdrawn_agreement_cannot_be_accepted(client, seed):
    seed("SFI123456789", status="withdrawn")

    resp = client.post("/api/agreement/v1/SFI123456789/accept", headers=AUTH)

    assert resp.status_code == 409


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}
