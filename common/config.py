"""Environment lookups shared by the agreement services.

Values are read at call time, not import time, so tests can monkeypatch the
environment per test.
"""
from __future__ import annotations

import os

__all__ = ["env_bool", "env_str", "env_float"]

_TRUTHY = {"1", "true", "yes", "on", "y"}


def env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value else default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
