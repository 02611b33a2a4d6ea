# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail gateway.

All metrics use the ``gmg_`` prefix (genro-mail-gateway).

Metrics exposed:
    - ``gmg_deliveries_total``: Counter of per-recipient outcomes by action and status.
    - ``gmg_rejected_recipients_total``: Counter of recipients refused at RCPT time.
    - ``gmg_check_failures_total``: Counter of messages refused by an inbound check.
    - ``gmg_listener_restarts_total``: Counter of listener recycles by reason.
    - ``gmg_queue_depth``: Gauge of messages waiting for a delivery worker.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class GatewayMetrics:
    """Prometheus metrics collector for the mail gateway.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        deliveries: Counter of delivery outcomes.
        rejected: Counter of recipients rejected during the SMTP dialogue.
        check_failures: Counter of inbound check failures.
        restarts: Counter of listener restarts.
        queue_depth: Gauge showing the delivery queue depth.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry."""
        self.registry = registry or CollectorRegistry()
        self.deliveries = Counter(
            "gmg_deliveries_total",
            "Per-recipient delivery outcomes",
            ["action", "status"],
            registry=self.registry,
        )
        self.rejected = Counter(
            "gmg_rejected_recipients_total",
            "Recipients rejected at RCPT time",
            registry=self.registry,
        )
        self.check_failures = Counter(
            "gmg_check_failures_total",
            "Messages refused by an inbound check",
            ["check"],
            registry=self.registry,
        )
        self.restarts = Counter(
            "gmg_listener_restarts_total",
            "Listener restarts",
            ["reason"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "gmg_queue_depth",
            "Messages waiting for a delivery worker",
            registry=self.registry,
        )

    def inc_delivery(self, action: str, status: str) -> None:
        self.deliveries.labels(action=action or "unknown", status=status or "unknown").inc()

    def inc_rejected(self) -> None:
        self.rejected.inc()

    def inc_check_failure(self, check: str) -> None:
        self.check_failures.labels(check=check or "unknown").inc()

    def inc_restart(self, reason: str) -> None:
        """Count a listener recycle (``signal`` or ``crash``)."""
        self.restarts.labels(reason=reason).inc()

    def set_queue_depth(self, value: int) -> None:
        self.queue_depth.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
