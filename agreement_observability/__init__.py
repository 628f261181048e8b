"""Prometheus metrics for the agreement services."""

from .metrics import (agreement_events_total, agreements_created_total,
                      get_metric)

__all__ = [
    "get_metric",
    "agreements_created_total",
    "agreement_events_total",
]
