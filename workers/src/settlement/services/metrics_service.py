"""
Metrics Service
===============

Subscribes to ``settlement_result`` events on the internal event bus and
exposes them as Prometheus metrics.

Metrics
-------

* ``settlement_results_total{status, side}`` – trades per terminal status.
* ``settlement_rejections_total{reason}`` – rejected trades per reason.
* ``settlement_compensation_failures_total{step}`` – compensations that
  could not be applied.
* ``settlement_duration_seconds`` – time from submission to terminal state.
* ``settlement_pending_reconciliations`` – trades stuck awaiting an operator
  since the worker started.

Set ``PROMETHEUS_PORT`` to serve the metrics over HTTP.  Tests pass their
own ``CollectorRegistry`` so that gauges can be created more than once.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


class MetricsService:
    """Subscribe to settlement results and expose metrics for Prometheus."""

    def __init__(
        self,
        event_bus: Any,
        *,
        port: Optional[int] = None,
        registry: CollectorRegistry = REGISTRY,
    ) -> None:
        self.event_bus = event_bus
        self.results_counter = Counter(
            "settlement_results_total",
            "Trades by terminal settlement status",
            labelnames=["status", "side"],
            registry=registry,
        )
        self.rejections_counter = Counter(
            "settlement_rejections_total",
            "Rejected trades by reason",
            labelnames=["reason"],
            registry=registry,
        )
        self.compensation_failures = Counter(
            "settlement_compensation_failures_total",
            "Compensating calls that could not be applied",
            labelnames=["step"],
            registry=registry,
        )
        self.duration = Histogram(
            "settlement_duration_seconds",
            "Time from submission to terminal state",
            registry=registry,
        )
        self.pending_reconciliations = Gauge(
            "settlement_pending_reconciliations",
            "Trades awaiting manual reconciliation",
            registry=registry,
        )
        if port:
            try:
                start_http_server(port, registry=registry)
            except OSError as exc:
                # Likely already started by another service in this process
                logger.debug("Prometheus server likely already running: %s", exc)

    def record(self, message: Dict[str, Any]) -> None:
        status = message.get("status")
        if not status:
            return
        self.results_counter.labels(status=status, side=message.get("side", "unknown")).inc()
        if status == "rejected":
            self.rejections_counter.labels(reason=message.get("reason") or "unknown").inc()
        if status == "needs_reconciliation":
            self.pending_reconciliations.inc()
            for step in message.get("failed_compensations") or []:
                self.compensation_failures.labels(step=step).inc()
        duration = message.get("duration_seconds")
        if duration is not None:
            self.duration.observe(float(duration))

    async def run(self) -> None:
        """Consume ``settlement_result`` events forever."""
        if self.event_bus is None:
            logger.error("MetricsService requires an event bus")
            return
        async for message in self.event_bus.subscribe("settlement_result"):
            if isinstance(message, dict):
                self.record(message)
