"""Prometheus metrics for the relay service and failover watcher.

Uses a dedicated ``CollectorRegistry`` so tests can instantiate
isolated registries without polluting the global default.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

__all__ = ["RelayMetrics"]


class RelayMetrics:
    """Counters and histograms for submissions, confirmations and failover.

    Parameters
    ----------
    registry:
        A ``CollectorRegistry`` to register metrics in.  When *None*,
        a fresh registry is created.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self.submissions_total = Counter(
            "metatx_submissions_total",
            "Forward requests accepted by the ledger",
            labelnames=["relayer"],
            registry=self._registry,
        )

        self.confirmations_total = Counter(
            "metatx_confirmations_total",
            "Forward requests confirmed, by inner-call result",
            labelnames=["success"],
            registry=self._registry,
        )

        self.errors_total = Counter(
            "metatx_errors_total",
            "Failures by error code",
            labelnames=["code"],
            registry=self._registry,
        )

        self.failovers_total = Counter(
            "metatx_failovers_total",
            "Resubmissions through a fallback relayer",
            registry=self._registry,
        )

        self.fees_quoted = Counter(
            "metatx_fees_quoted_wei_total",
            "Sum of quoted transactor fees (fee-token wei)",
            registry=self._registry,
        )

        self.confirmation_latency = Histogram(
            "metatx_confirmation_seconds",
            "Time from submission to observed confirmation",
            buckets=(1, 2, 5, 10, 20, 30, 60, 120, 180, 300),
            registry=self._registry,
        )

    # ── Recording helpers ───────────────────────────────────────

    def record_submission(self, relayer: str) -> None:
        self.submissions_total.labels(relayer=relayer).inc()

    def record_confirmation(self, success: bool, latency_seconds: float | None = None) -> None:
        self.confirmations_total.labels(success=str(success).lower()).inc()
        if latency_seconds is not None:
            self.confirmation_latency.observe(latency_seconds)

    def record_error(self, code: str) -> None:
        self.errors_total.labels(code=code).inc()

    def record_failover(self) -> None:
        self.failovers_total.inc()

    def record_fee(self, amount: int) -> None:
        self.fees_quoted.inc(amount)

    # ── Exposition ──────────────────────────────────────────────

    def exposition(self) -> bytes:
        """Return Prometheus text exposition format."""
        return generate_latest(self._registry)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
