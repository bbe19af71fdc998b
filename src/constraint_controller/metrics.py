"""Metrics reporter gateway.

Exports the rule cache aggregate as a Prometheus gauge labelled by
enforcement action and status.
"""

from __future__ import annotations

import logging
from typing import Protocol

from prometheus_client import REGISTRY, CollectorRegistry, Gauge, start_http_server

from .models import Tag

logger = logging.getLogger(__name__)

CONSTRAINTS_METRIC_NAME = "gatekeeper_constraints"
CONSTRAINTS_METRIC_HELP = "Current number of known constraints"


class MetricsReporter(Protocol):
    """Sink for per-tag constraint totals."""

    def report(self, tag: Tag, count: int) -> None:
        ...


class PrometheusReporter:
    """MetricsReporter writing to a Prometheus gauge."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._gauge = Gauge(
            CONSTRAINTS_METRIC_NAME,
            CONSTRAINTS_METRIC_HELP,
            ["enforcement_action", "status"],
            registry=registry if registry is not None else REGISTRY,
        )

    def report(self, tag: Tag, count: int) -> None:
        self._gauge.labels(
            enforcement_action=tag.enforcement_action.value,
            status=tag.status.value,
        ).set(count)


def start_metrics_server(port: int, registry: CollectorRegistry | None = None) -> None:
    """Serve /metrics on the given port from a background thread."""
    start_http_server(port, registry=registry if registry is not None else REGISTRY)
    logger.info("Metrics endpoint started", extra={"port": port})
