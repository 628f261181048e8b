"""Client for the Land Grants payment calculator.

Grouping helpers turn action data into the calculator's request body::

    {"parcel": [{"sheetId", "parcelId", "actions": [{"code", "quantity"}]}]}

Two input forms are accepted: a flat list of tagged actions
(``{sheetId, parcelId, code, appliedFor}``, the ``actionApplications`` an
agreement stores) or parcels that already carry their ``actions``.
"""
from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from common.errors import ExternalServiceError, ValidationError

from . import CALCULATE_PATH, payload_logging_enabled
from .http import LandGrantsHTTP

__all__ = [
    "CalculatedPayment",
    "RateCalculatorClient",
    "build_calculation_request",
    "coerce_quantity",
    "group_actions",
    "group_parcels",
]

_LOG = logging.getLogger(__name__)


class CalculatedPayment(BaseModel):
    """The subset of the calculator's ``payment`` object an agreement keeps.

    Unknown fields are dropped so new calculator fields never leak into
    stored versions.
    """

    model_config = ConfigDict(extra="ignore")

    agreementStartDate: Optional[Any] = None
    agreementEndDate: Optional[Any] = None
    frequency: Optional[Any] = None
    agreementTotalPence: Optional[Any] = None
    annualTotalPence: Optional[Any] = None
    parcelItems: Optional[Any] = None
    agreementLevelItems: Optional[Any] = None
    payments: Optional[Any] = None


_LEADING_NUMBER = re.compile(r"\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?")


def coerce_quantity(raw: Any) -> Optional[float]:
    """Return *raw* as a positive finite number, else ``None``.

    Strings are read up to the end of their leading number, so ``"2.5 ha"``
    gives 2.5. Anything whose ``str()`` is numeric (``Decimal``) is accepted.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = _LEADING_NUMBER.match(str(raw))
        if match is None:
            return None
        value = float(match.group(0))
    if not math.isfinite(value) or value <= 0:
        return None
    return int(value) if value.is_integer() and not isinstance(raw, float) else value


def _action_quantity(action: Mapping[str, Any]) -> Optional[float]:
    for key in ("appliedFor", "eligible"):
        holder = action.get(key)
        if isinstance(holder, Mapping) and holder.get("quantity") is not None:
            return coerce_quantity(holder.get("quantity"))
    return None


class _Grouper:
    def __init__(self) -> None:
        self._groups: Dict[str, Dict[str, Any]] = {}

    def add(self, sheet_id: Any, parcel_id: Any, action: Mapping[str, Any]) -> None:
        code = action.get("code")
        if not sheet_id or not parcel_id or not code:
            return
        group = self._groups.setdefault(
            f"{sheet_id}|{parcel_id}",
            {"sheetId": sheet_id, "parcelId": parcel_id, "actions": []},
        )
        quantity = _action_quantity(action)
        if quantity is not None:
            group["actions"].append({"code": code, "quantity": quantity})

    def payload(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"parcel": list(self._groups.values())}


def group_actions(actions: Iterable[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group a flat list of tagged actions by ``sheetId|parcelId``."""
    if not isinstance(actions, (list, tuple)):
        raise ValidationError("actions must be a list")
    grouper = _Grouper()
    for action in actions:
        if isinstance(action, Mapping):
            grouper.add(action.get("sheetId"), action.get("parcelId"), action)
    return grouper.payload()


def group_parcels(parcels: Iterable[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group parcels that already contain their ``actions``."""
    if not isinstance(parcels, (list, tuple)):
        raise ValidationError("parcels must be a list")
    grouper = _Grouper()
    for parcel in parcels:
        if not isinstance(parcel, Mapping):
            continue
        actions = parcel.get("actions")
        if not isinstance(actions, list):
            raise ValidationError("parcel actions must be a list")
        for action in actions:
            if isinstance(action, Mapping):
                grouper.add(parcel.get("sheetId"), parcel.get("parcelId"), action)
    return grouper.payload()


def build_calculation_request(items: Iterable[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Pick the grouping that matches the form of *items*."""
    items = list(items) if isinstance(items, (list, tuple)) else items
    if isinstance(items, list) and items and all(
        isinstance(item, Mapping) and "actions" in item for item in items
    ):
        return group_parcels(items)
    return group_actions(items)


class RateCalculatorClient:
    """Typed async client for the payment calculation endpoint."""

    def __init__(self, http: Optional[LandGrantsHTTP] = None):
        self._http = http or LandGrantsHTTP()

    async def calculate(self, items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        body = build_calculation_request(items)
        if payload_logging_enabled():
            _LOG.info("Land Grants calculation request %s", json.dumps(body, default=str))

        resp: httpx.Response = await self._http.post(CALCULATE_PATH, json=body)
        if not resp.is_success:
            _LOG.error("Land Grants calculation failed with %s", resp.status_code)
            raise ExternalServiceError(
                f"Land Grants payment calculation failed: {resp.status_code}",
                service="land_grants",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ExternalServiceError(
                "Land Grants response is not JSON",
                service="land_grants",
                status_code=resp.status_code,
                body=resp.text,
            ) from exc

        if payload_logging_enabled():
            _LOG.info("Land Grants calculation response %s", json.dumps(data, default=str))

        payment = data.get("payment") if isinstance(data, Mapping) else None
        if not payment or not isinstance(payment, Mapping):
            raise ExternalServiceError(
                'Land Grants response missing "payment" field',
                service="land_grants",
                status_code=resp.status_code,
                body=resp.text,
            )
        return CalculatedPayment.model_validate(payment).model_dump()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
