# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring automation runs.

All metrics use the ``ae_`` prefix and are labelled by ``tenant_id``, except
the last-run gauge.

Metrics exposed:
    - ``ae_steps_advanced_total``: Steps advanced (delays, sends, completions).
    - ``ae_sends_total``: Messages accepted by a provider.
    - ``ae_delivery_failures_total``: Sends rejected or timed out.
    - ``ae_skipped_quota_total``: Send steps skipped because of quota.
    - ``ae_skipped_circuit_total``: Tenant runs cut short by an open breaker.
    - ``ae_configuration_errors_total``: Send steps skipped for configuration.
    - ``ae_tenant_errors_total``: Tenant runs aborted by an exception.
    - ``ae_last_run_timestamp``: Unix time of the last completed run.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class EngineMetrics:
    """Prometheus metrics collector for the automation engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new one is
                created when omitted, which keeps test instances isolated.
        """
        self.registry = registry or CollectorRegistry()
        self.steps_advanced = Counter(
            "ae_steps_advanced_total",
            "Total automation steps advanced",
            ["tenant_id"],
            registry=self.registry,
        )
        self.sends = Counter(
            "ae_sends_total",
            "Total messages accepted by a provider",
            ["tenant_id"],
            registry=self.registry,
        )
        self.delivery_failures = Counter(
            "ae_delivery_failures_total",
            "Total delivery failures",
            ["tenant_id"],
            registry=self.registry,
        )
        self.skipped_quota = Counter(
            "ae_skipped_quota_total",
            "Total send steps skipped for quota",
            ["tenant_id"],
            registry=self.registry,
        )
        self.skipped_circuit = Counter(
            "ae_skipped_circuit_total",
            "Total tenant runs skipped by an open circuit breaker",
            ["tenant_id"],
            registry=self.registry,
        )
        self.configuration_errors = Counter(
            "ae_configuration_errors_total",
            "Total send steps skipped for configuration errors",
            ["tenant_id"],
            registry=self.registry,
        )
        self.tenant_errors = Counter(
            "ae_tenant_errors_total",
            "Total tenant runs aborted by an error",
            ["tenant_id"],
            registry=self.registry,
        )
        self.last_run = Gauge(
            "ae_last_run_timestamp",
            "Unix timestamp of the last completed run",
            registry=self.registry,
        )

    def inc_steps_advanced(self, tenant_id: str, amount: int = 1) -> None:
        if amount:
            self.steps_advanced.labels(tenant_id=tenant_id or "default").inc(amount)

    def inc_sent(self, tenant_id: str) -> None:
        self.sends.labels(tenant_id=tenant_id or "default").inc()

    def inc_delivery_failure(self, tenant_id: str) -> None:
        self.delivery_failures.labels(tenant_id=tenant_id or "default").inc()

    def inc_skipped_quota(self, tenant_id: str) -> None:
        self.skipped_quota.labels(tenant_id=tenant_id or "default").inc()

    def inc_skipped_circuit(self, tenant_id: str) -> None:
        self.skipped_circuit.labels(tenant_id=tenant_id or "default").inc()

    def inc_configuration_error(self, tenant_id: str) -> None:
        self.configuration_errors.labels(tenant_id=tenant_id or "default").inc()

    def inc_tenant_error(self, tenant_id: str) -> None:
        self.tenant_errors.labels(tenant_id=tenant_id or "default").inc()

    def set_last_run(self, timestamp: float) -> None:
        """Set the last-run gauge to a Unix timestamp."""
        self.last_run.set(timestamp)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)


__all__ = ["EngineMetrics"]
