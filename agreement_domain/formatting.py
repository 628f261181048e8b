"""Formatting helpers for downstream payment payloads."""
from __future__ import annotations

import datetime as _dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Union

from common.datetime import parse_iso8601
from common.errors import ValidationError

__all__ = ["format_payment_decimal", "format_payment_date", "quarter_for"]

_MAX_PENCE = 99_999_999_999_999


def format_payment_decimal(pence: Any) -> float:
    """Convert an integer amount in pence into pounds rounded to 2 dp.

    Rejects non-integers and values outside 0..99,999,999,999,999.
    """
    if isinstance(pence, bool) or not isinstance(pence, (int, float, Decimal)):
        raise ValidationError(f"Payment amount must be an integer number of pence, got {pence!r}")
    try:
        whole = int(pence)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"Payment amount must be an integer number of pence, got {pence!r}") from exc
    if whole != pence:
        raise ValidationError(f"Payment amount must be an integer number of pence, got {pence!r}")
    if not 0 <= pence <= _MAX_PENCE:
        raise ValidationError(f"Payment amount {pence} is out of range")
    pounds = (Decimal(int(pence)) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(pounds)


def _as_date(value: Union[str, _dt.date, _dt.datetime]) -> _dt.date:
    if isinstance(value, _dt.datetime):
        return parse_iso8601(value).date()
    if isinstance(value, _dt.date):
        return value
    try:
        return parse_iso8601(str(value)).date()
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid payment date: {value!r}") from exc


def format_payment_date(value: Union[str, _dt.date, _dt.datetime]) -> str:
    """Render a payment date as ``DD/MM/YYYY``."""
    return _as_date(value).strftime("%d/%m/%Y")


def quarter_for(value: Union[str, _dt.date, _dt.datetime]) -> str:
    month = _as_date(value).month
    return f"Q{(month - 1) // 3 + 1}"
