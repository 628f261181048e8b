import copy
from typing import Any, Dict, List

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from agreement_store import models  # noqa: F401  register tables
from common import secrets as secrets_module


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _secrets() -> None:
    """Provide default secrets for tests via the secrets manager."""

    secrets_module.secrets.set_override(
        {
            "API_TOKENS": {"tester": "testtoken"},
            "JWT_SECRET": "testsecret",
            "LAND_GRANTS_TOKEN": "lg-token",
            "PAYMENT_HUB_SA_KEY_NAME": "MyManagedAccessKey",
            "PAYMENT_HUB_SA_KEY": "my_key",
        }
    )
    yield
    secrets_module.secrets.set_override({})


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


# ---------------------------------------------------------------------------
# Payloads + fakes
# ---------------------------------------------------------------------------

APPLICATION_PAYLOAD: Dict[str, Any] = {
    "clientRef": "client-ref-001",
    "code": "frps-private-beta",
    "identifiers": {"sbi": "106284736", "frn": "1234567890", "crn": "1102838829"},
    "application": {
        "agreementStartDate": "2025-01-01",
        "applicant": {"business": {"name": "Sample Farm Ltd"}, "customer": {"name": {"first": "Ada"}}},
        "totalAnnualPaymentPence": 35150,
        "parcels": [
            {
                "sheetId": "AB1234",
                "parcelId": "10001",
                "actions": [
                    {
                        "code": "CMOR1",
                        "description": "Assess moorland",
                        "durationYears": 3,
                        "appliedFor": {"unit": "ha", "quantity": 7.5},
                        "paymentRates": {"ratePerUnitPence": 1060},
                        "annualPaymentPence": 35150,
                    }
                ],
            }
        ],
    },
}

CALCULATED_PAYMENT: Dict[str, Any] = {
    "agreementStartDate": "2025-09-01",
    "agreementEndDate": "2028-09-01",
    "frequency": "Quarterly",
    "agreementTotalPence": 105450,
    "annualTotalPence": 35150,
    "parcelItems": {
        "1": {
            "code": "CMOR1",
            "description": "Assess moorland",
            "version": 1,
            "unit": "ha",
            "quantity": 7.5,
            "rateInPence": 1060,
            "annualPaymentPence": 7950,
            "sheetId": "AB1234",
            "parcelId": "10001",
        }
    },
    "agreementLevelItems": {
        "1": {"code": "CMOR1", "description": "Moorland management payment", "version": 1, "annualPaymentPence": 27200}
    },
    "payments": [
        {
            "totalPaymentPence": 8788,
            "paymentDate": "2025-12-05",
            "lineItems": [
                {"parcelItemId": 1, "paymentPence": 1988},
                {"agreementLevelItemId": 1, "paymentPence": 6800},
            ],
        },
        {
            "totalPaymentPence": 8787,
            "paymentDate": "2026-03-05",
            "lineItems": [
                {"parcelItemId": 1, "paymentPence": 1987},
                {"agreementLevelItemId": 1, "paymentPence": 6800},
            ],
        },
    ],
}


@pytest.fixture()
def application_payload() -> Dict[str, Any]:
    return copy.deepcopy(APPLICATION_PAYLOAD)


@pytest.fixture()
def calculated_payment() -> Dict[str, Any]:
    return copy.deepcopy(CALCULATED_PAYMENT)


class RecordingPublisher:
    """Stand-in for StatusPublisher that keeps the views it was asked to publish."""

    def __init__(self):
        self.published: List[Any] = []

    async def publish(self, view):
        self.published.append(view)
        return {"data": {"status": view.status}}

    async def aclose(self):
        return None


class FakeCalculator:
    def __init__(self, payment=None, error: Exception | None = None):
        self.payment = payment
        self.error = error
        self.calls: List[Any] = []

    async def calculate(self, items):
        self.calls.append(items)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.payment)

    async def aclose(self):
        return None


class RecordingDispatcher:
    def __init__(self):
        self.dispatched: List[str] = []

    async def dispatch(self, agreement_number):
        self.dispatched.append(agreement_number)
        return {"status": "success"}


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def calculator(calculated_payment) -> FakeCalculator:
    return FakeCalculator(payment=calculated_payment)


@pytest.fixture()
def seed(session, calculated_payment):
    """Create agreements through the version store with sensible defaults."""

    from agreement_store.versions import AgreementVersionStore

    store = AgreementVersionStore(session)
    counter = {"n": 0}

    def _seed(agreement_number: str | None = None, **version_fields):
        counter["n"] += 1
        number = agreement_number or f"SFI{100000000 + counter['n']}"
        version = {
            "status": "offered",
            "correlation_id": f"corr-{counter['n']}",
            "client_ref": "client-ref-001",
            "code": "frps-private-beta",
            "action_applications": [
                {
                    "parcelId": "10001",
                    "sheetId": "AB1234",
                    "code": "CMOR1",
                    "appliedFor": {"unit": "ha", "quantity": 7.5},
                }
            ],
            "payment": copy.deepcopy(calculated_payment),
        }
        version.update(version_fields)
        return store.create(
            {
                "agreement_number": number,
                "frn": "1234567890",
                "sbi": "106284736",
                "notification_message_id": f"msg-{number}",
            },
            version,
        )

    return _seed


@pytest.fixture()
def failing_calculator() -> FakeCalculator:
    from common.errors import ExternalServiceError

    return FakeCalculator(error=ExternalServiceError("down", service="land_grants", status_code=503))
