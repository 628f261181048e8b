"""Normalise upstream grant-application payloads into a canonical payment.

Producers have sent the same information in several layouts over time. Each
known layout is a :class:`PayloadShape`; :func:`detect_payload_shapes` tells
which ones a payload carries and every shape has one extractor that turns it
into a common *source* mapping. A single converter then builds the canonical
``{payment, applicant, actionApplications}`` triple from that source.

Merge rule: canonical fields already present on the payload always win;
converted values only fill gaps, in shape priority order.

Numbers are coerced leniently. A value that cannot be read as a number falls
back to 0 or ``None`` instead of raising.
"""
from __future__ import annotations

import datetime as _dt
import logging
import math
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from common.datetime import add_months, add_years, parse_iso8601, to_iso_z, utcnow
from common.errors import ValidationError

__all__ = [
    "CANONICAL_FIELDS",
    "PayloadShape",
    "detect_payload_shapes",
    "build_payment_from_source",
    "normalize_agreement_payload",
]

_LOG = logging.getLogger(__name__)

CANONICAL_FIELDS = ("payment", "applicant", "actionApplications")
DEFAULT_PAYMENT_FREQUENCY = "Quarterly"
_QUARTERS_PER_YEAR = 4
_MONTHS_PER_QUARTER = 3

Clock = Callable[[], _dt.datetime]


class PayloadShape(str, Enum):
    """Known producer layouts, highest priority first."""

    APPLICATION = "application"
    ANSWERS_APPLICATION = "answers.application"
    ANSWERS_PARCELS = "answers.parcels"
    ANSWERS_PARCEL = "answers.parcel"
    ANSWERS_PAYMENTS = "answers.payments"
    PAYMENTS = "payments"


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _to_number(value: Any, fallback: Any = 0) -> Any:
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return fallback
    if isinstance(number, float):
        if math.isnan(number) or math.isinf(number):
            return fallback
        if number.is_integer():
            return int(number)
    return number


def _round_half_up(value: float) -> int:
    """Round like ``Math.round``: halves go towards positive infinity."""
    return int(math.floor(value + 0.5))


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first_list(*candidates: Any) -> Optional[List[Any]]:
    for candidate in candidates:
        if isinstance(candidate, list):
            return candidate
    return None


# ---------------------------------------------------------------------------
# Shape detection + extraction
# ---------------------------------------------------------------------------


def _extract_application(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    application = payload.get("application")
    return dict(application) if isinstance(application, Mapping) else None


def _extract_answers_application(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    application = _mapping(payload.get("answers")).get("application")
    return dict(application) if isinstance(application, Mapping) else None


def _extract_answers_list(key: str) -> Callable[[Mapping[str, Any]], Optional[Dict[str, Any]]]:
    def extract(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        answers = _mapping(payload.get("answers"))
        parcels = answers.get(key)
        if not isinstance(parcels, list):
            return None
        return {**answers, "parcels": parcels}

    return extract


def _payments_source(payments: Any, applicant: Any) -> Optional[Dict[str, Any]]:
    payments = _mapping(payments)
    parcels = _first_list(payments.get("parcel"), payments.get("parcels"))
    if parcels is None:
        return None
    source = {**payments, "parcels": parcels}
    source.setdefault("applicant", applicant)
    return source


def _extract_answers_payments(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    answers = _mapping(payload.get("answers"))
    return _payments_source(answers.get("payments"), answers.get("applicant"))


def _extract_top_payments(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    return _payments_source(payload.get("payments"), payload.get("applicant"))


_EXTRACTORS: Dict[PayloadShape, Callable[[Mapping[str, Any]], Optional[Dict[str, Any]]]] = {
    PayloadShape.APPLICATION: _extract_application,
    PayloadShape.ANSWERS_APPLICATION: _extract_answers_application,
    PayloadShape.ANSWERS_PARCELS: _extract_answers_list("parcels"),
    PayloadShape.ANSWERS_PARCEL: _extract_answers_list("parcel"),
    PayloadShape.ANSWERS_PAYMENTS: _extract_answers_payments,
    PayloadShape.PAYMENTS: _extract_top_payments,
}


def detect_payload_shapes(payload: Mapping[str, Any]) -> List[PayloadShape]:
    """Return every known shape present on *payload*, in priority order."""
    if not isinstance(payload, Mapping):
        return []
    return [shape for shape, extract in _EXTRACTORS.items() if extract(payload) is not None]


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _summarise_parcels(parcels: List[Any], default_duration: Any) -> Dict[str, Any]:
    parcel_items: Dict[int, Dict[str, Any]] = {}
    agreement_level_items: Dict[int, Dict[str, Any]] = {}
    computed_agreement_total = 0
    max_duration = default_duration

    for parcel in parcels:
        parcel = _mapping(parcel)
        for action in parcel.get("actions") or []:
            action = _mapping(action)
            applied = _mapping(action.get("appliedFor") or action.get("eligible"))
            rates = _mapping(action.get("paymentRates"))
            rate = _to_number(rates.get("ratePerUnitPence"), None)
            quantity = _to_number(applied.get("quantity"), None)

            annual = _to_number(action.get("annualPaymentPence"), None)
            if annual is None and rate is not None and quantity is not None:
                annual = _round_half_up(rate * quantity)

            parcel_items[len(parcel_items) + 1] = {
                "code": action.get("code"),
                "description": action.get("description"),
                "version": 1,
                "unit": applied.get("unit"),
                "quantity": quantity,
                "rateInPence": rate,
                "annualPaymentPence": annual,
                "sheetId": parcel.get("sheetId"),
                "parcelId": parcel.get("parcelId"),
            }

            duration = _to_number(action.get("durationYears"), default_duration) or default_duration
            max_duration = max(max_duration, duration)
            if annual is not None:
                computed_agreement_total += annual * duration

            level_amount = _to_number(rates.get("agreementLevelAmountPence"), None)
            if level_amount:
                agreement_level_items[len(agreement_level_items) + 1] = {
                    "code": action.get("code"),
                    "description": action.get("description"),
                    "version": 1,
                    "annualPaymentPence": level_amount,
                }

    return {
        "parcel_items": parcel_items,
        "agreement_level_items": agreement_level_items,
        "computed_agreement_total": _to_number(computed_agreement_total, 0),
        "max_duration": max_duration,
    }


def _build_installments(
    start: _dt.datetime,
    parcel_items: Mapping[int, Mapping[str, Any]],
    agreement_level_items: Mapping[int, Mapping[str, Any]],
    annual_total: Any,
) -> List[Dict[str, Any]]:
    def quarter_share(item: Mapping[str, Any]) -> int:
        return _round_half_up(_to_number(item.get("annualPaymentPence"), 0) / _QUARTERS_PER_YEAR)

    line_items = [
        {"parcelItemId": key, "paymentPence": quarter_share(item)}
        for key, item in parcel_items.items()
    ] + [
        {"agreementLevelItemId": key, "paymentPence": quarter_share(item)}
        for key, item in agreement_level_items.items()
    ]
    total = sum(line["paymentPence"] for line in line_items) or _round_half_up(
        _to_number(annual_total, 0) / _QUARTERS_PER_YEAR
    )

    return [
        {
            "totalPaymentPence": total,
            "paymentDate": to_iso_z(add_months(start, _MONTHS_PER_QUARTER * n)),
            "lineItems": [dict(line) for line in line_items],
        }
        for n in (1, 2)
    ]


def _parse_or_now(value: Any, now: _dt.datetime) -> _dt.datetime:
    if value:
        try:
            return parse_iso8601(value)
        except (TypeError, ValueError):
            _LOG.warning("Unreadable agreement date %r, falling back to now", value)
    return now


def build_payment_from_source(
    source: Mapping[str, Any],
    payload: Mapping[str, Any],
    *,
    now: Optional[Clock] = None,
) -> Dict[str, Any]:
    """Convert one extracted *source* mapping into the canonical triple.

    *payload* is the whole upstream object; it supplies fallback dates and the
    applicant when the source does not carry them.
    """
    clock = now or utcnow
    parcels = source.get("parcels") if isinstance(source.get("parcels"), list) else []
    default_duration = _to_number(source.get("durationYears"), 1) or 1

    summary = _summarise_parcels(parcels, default_duration)
    parcel_items = summary["parcel_items"]
    agreement_level_items = summary["agreement_level_items"]

    explicit_annual = _to_number(
        source.get("totalAnnualPaymentPence", source.get("annualTotalPence")), 0
    )
    if explicit_annual > 0:
        annual_total = explicit_annual
    else:
        annual_total = sum(
            _to_number(item.get("annualPaymentPence"), 0)
            for item in list(parcel_items.values()) + list(agreement_level_items.values())
        )

    duration = summary["max_duration"] or default_duration or 1
    agreement_total = summary["computed_agreement_total"] or _to_number(annual_total * duration, 0)

    answers_payment = _mapping(_mapping(payload.get("answers")).get("payment"))
    explicit_start = (
        source.get("agreementStartDate")
        or payload.get("agreementStartDate")
        or answers_payment.get("agreementStartDate")
    )
    explicit_end = (
        source.get("agreementEndDate")
        or payload.get("agreementEndDate")
        or answers_payment.get("agreementEndDate")
    )

    if explicit_start:
        start_value: Any = explicit_start
        start = _parse_or_now(explicit_start, clock())
    else:
        # No start date supplied anywhere; the schedule is anchored on "now".
        start = clock()
        start_value = to_iso_z(start)
        _LOG.warning("No agreementStartDate supplied; using current time")

    end_value = explicit_end or to_iso_z(add_years(start, duration))

    applicant = (
        source.get("applicant")
        or _mapping(payload.get("answers")).get("applicant")
        or payload.get("applicant")
    )

    action_applications = [
        {
            "parcelId": _mapping(parcel).get("parcelId"),
            "sheetId": _mapping(parcel).get("sheetId"),
            "code": _mapping(action).get("code"),
            "appliedFor": _mapping(action).get("appliedFor")
            or _mapping(action).get("eligible")
            or {},
        }
        for parcel in parcels
        for action in (_mapping(parcel).get("actions") or [])
    ]

    return {
        "payment": {
            "agreementStartDate": start_value,
            "agreementEndDate": end_value,
            "frequency": source.get("paymentFrequency") or DEFAULT_PAYMENT_FREQUENCY,
            "agreementTotalPence": agreement_total,
            "annualTotalPence": annual_total,
            "parcelItems": parcel_items,
            "agreementLevelItems": agreement_level_items,
            "payments": _build_installments(start, parcel_items, agreement_level_items, annual_total),
        },
        "applicant": applicant,
        "actionApplications": action_applications,
    }


def normalize_agreement_payload(
    payload: Mapping[str, Any],
    *,
    now: Optional[Clock] = None,
) -> Dict[str, Any]:
    """Return ``{payment, applicant, actionApplications}`` for *payload*.

    Raises :class:`ValidationError` when neither the payload itself nor any
    detected shape yields both a payment and an applicant.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Agreement payload must be an object")

    result: Dict[str, Any] = {
        field: payload[field] for field in CANONICAL_FIELDS if payload.get(field) is not None
    }

    for shape in detect_payload_shapes(payload):
        if all(field in result for field in CANONICAL_FIELDS):
            break
        source = _EXTRACTORS[shape](payload)
        if source is None:
            continue
        converted = build_payment_from_source(source, payload, now=now)
        _LOG.debug("Converted payload shape %s", shape.value)
        for field in CANONICAL_FIELDS:
            if field not in result and converted.get(field) is not None:
                result[field] = converted[field]

    if not result.get("payment") or not result.get("applicant"):
        raise ValidationError("Agreement payload has no payment or applicant")

    result.setdefault("actionApplications", [])
    return result
