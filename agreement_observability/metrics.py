"""
Prometheus metrics for the agreement services.

This module does NOT start a standalone HTTP server. The API mounts the ASGI
exporter instead:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())
"""
from __future__ import annotations

from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Histogram

# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Agreement lifecycle
# ----------------------------

agreements_created_total = get_metric(
    Counter,
    "agreements_created_total",
    "Agreements created from create events",
)

agreement_transitions_total = get_metric(
    Counter,
    "agreement_transitions_total",
    "Versions appended to agreements, by resulting status",
    ["status"],
)

agreement_events_total = get_metric(
    Counter,
    "agreement_events_total",
    "Inbound agreement events by handler and outcome",
    ["event", "outcome"],
)

claim_ids_minted_total = get_metric(
    Counter,
    "claim_ids_minted_total",
    "Claim identifiers minted from the counter",
)

# ----------------------------
# Collaborators
# ----------------------------

rate_calculator_requests_total = get_metric(
    Counter,
    "rate_calculator_requests_total",
    "HTTP requests to the rate calculator",
    ["endpoint", "method", "status"],
)

rate_calculator_latency_seconds = get_metric(
    Histogram,
    "rate_calculator_latency_seconds",
    "Latency for rate calculator requests",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

payment_hub_dispatch_total = get_metric(
    Counter,
    "payment_hub_dispatch_total",
    "Payment hub dispatch attempts by outcome",
    ["outcome"],
)
