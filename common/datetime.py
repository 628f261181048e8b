"""Datetime helpers common to the agreement services.

Provides:
    parse_iso8601(s): ISO-8601 parser that always returns an *aware* UTC
    datetime. Accepts a trailing "Z", explicit offsets and fractional seconds.
    add_months / add_years: calendar arithmetic via dateutil.relativedelta.
    Month overflow clamps to the last day of the month (31 Jan + 1 month is
    28/29 Feb).
    to_iso_z(dt): millisecond ISO string with a "Z" suffix.
    utcnow(): aware "now" in UTC.
"""
from __future__ import annotations

import datetime as _dt
from typing import Union

from dateutil.parser import isoparse as _isoparse
from dateutil.relativedelta import relativedelta

__all__ = ["parse_iso8601", "add_months", "add_years", "to_iso_z", "utcnow"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: Union[str, _dt.datetime, _dt.date]) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Plain dates are taken as midnight UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)
    if isinstance(value, _dt.date):
        return _dt.datetime(value.year, value.month, value.day, tzinfo=_dt.timezone.utc)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def add_months(value: _dt.datetime, months: int) -> _dt.datetime:
    return value + relativedelta(months=months)


def add_years(value: _dt.datetime, years: Union[int, float]) -> _dt.datetime:
    """Add *years* to *value*; fractional years are converted to whole months."""

    whole = int(years)
    if whole == years:
        return value + relativedelta(years=whole)
    return value + relativedelta(months=round(years * 12))


def to_iso_z(value: _dt.datetime) -> str:
    return _ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)
