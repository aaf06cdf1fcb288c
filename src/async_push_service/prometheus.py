# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the push dispatchers.

All metrics use the ``aps_`` prefix (async-push-service) and are labeled by
dispatcher name so that each credential can be monitored separately.

Metrics exposed:
    - ``aps_attempts_total``: Gateway attempts performed.
    - ``aps_delivered_total``: Recipients reported delivered.
    - ``aps_identifier_changed_total``: Recipients with a replacement id.
    - ``aps_recipient_errors_total``: Per-recipient error codes.
    - ``aps_transport_failures_total``: Attempts that failed before results.
    - ``aps_retries_scheduled_total``: Backoff resubmissions scheduled.
    - ``aps_abandoned_total``: Pushes abandoned by the scheduler.
    - ``aps_queued_jobs``: Jobs waiting in a dispatcher queue.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class PushMetrics:
    """Prometheus metrics collector for the push dispatchers.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.attempts = Counter(
            "aps_attempts_total",
            "Total gateway attempts",
            ["dispatcher"],
            registry=self.registry,
        )
        self.delivered = Counter(
            "aps_delivered_total",
            "Total recipients delivered",
            ["dispatcher"],
            registry=self.registry,
        )
        self.identifier_changed = Counter(
            "aps_identifier_changed_total",
            "Total recipients with a canonical replacement id",
            ["dispatcher"],
            registry=self.registry,
        )
        self.recipient_errors = Counter(
            "aps_recipient_errors_total",
            "Total per-recipient errors",
            ["dispatcher", "code"],
            registry=self.registry,
        )
        self.transport_failures = Counter(
            "aps_transport_failures_total",
            "Total attempts failed at transport level",
            ["dispatcher", "kind"],
            registry=self.registry,
        )
        self.retries = Counter(
            "aps_retries_scheduled_total",
            "Total backoff resubmissions scheduled",
            ["dispatcher"],
            registry=self.registry,
        )
        self.abandoned = Counter(
            "aps_abandoned_total",
            "Total pushes abandoned",
            ["dispatcher"],
            registry=self.registry,
        )
        self.queued = Gauge(
            "aps_queued_jobs",
            "Jobs waiting in the dispatcher queue",
            ["dispatcher"],
            registry=self.registry,
        )

    def inc_attempt(self, dispatcher: str) -> None:
        self.attempts.labels(dispatcher=dispatcher or "default").inc()

    def inc_delivered(self, dispatcher: str, count: int = 1) -> None:
        self.delivered.labels(dispatcher=dispatcher or "default").inc(count)

    def inc_identifier_changed(self, dispatcher: str) -> None:
        self.identifier_changed.labels(dispatcher=dispatcher or "default").inc()

    def inc_recipient_error(self, dispatcher: str, code: str) -> None:
        self.recipient_errors.labels(dispatcher=dispatcher or "default", code=code or "unknown").inc()

    def inc_transport_failure(self, dispatcher: str, kind: str) -> None:
        self.transport_failures.labels(dispatcher=dispatcher or "default", kind=kind).inc()

    def inc_retry(self, dispatcher: str) -> None:
        self.retries.labels(dispatcher=dispatcher or "default").inc()

    def inc_abandoned(self, dispatcher: str) -> None:
        self.abandoned.labels(dispatcher=dispatcher or "default").inc()

    def set_queued(self, dispatcher: str, value: int) -> None:
        """Set the queue depth gauge for a dispatcher."""
        self.queued.labels(dispatcher=dispatcher or "default").set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
