from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import CollectorRegistry, Counter, Histogram


@dataclass(slots=True)
class AllocationMetrics:
    registry: CollectorRegistry
    runs_total: Counter = field(init=False)
    run_duration: Histogram = field(init=False)
    units_allocated: Counter = field(init=False)
    gate_refusals: Counter = field(init=False)
    lock_conflicts: Counter = field(init=False)
    review_flags: Counter = field(init=False)

    def __post_init__(self) -> None:
        self.runs_total = Counter(
            "allocation_runs_total",
            "Allocation runs by terminal status",
            labelnames=("status", "mode"),
            registry=self.registry,
        )
        self.run_duration = Histogram(
            "allocation_run_duration_seconds",
            "Allocation run duration in seconds",
            labelnames=("mode",),
            registry=self.registry,
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
        )
        self.units_allocated = Counter(
            "allocation_units_total",
            "Units allocated by completed runs",
            labelnames=("mode",),
            registry=self.registry,
        )
        self.gate_refusals = Counter(
            "allocation_gate_refusals_total",
            "Live runs refused by the safety gate",
            labelnames=("reason",),
            registry=self.registry,
        )
        self.lock_conflicts = Counter(
            "allocation_lock_conflicts_total",
            "Runs rejected because the policy lock was held",
            registry=self.registry,
        )
        self.review_flags = Counter(
            "allocation_review_flags_total",
            "Allocation results flagged for review",
            labelnames=("flag",),
            registry=self.registry,
        )

    @staticmethod
    def _mode(simulation: bool) -> str:
        return "simulation" if simulation else "live"

    def record_completed(self, *, simulation: bool, duration: float, units: int) -> None:
        mode = self._mode(simulation)
        self.runs_total.labels(status="completed", mode=mode).inc()
        self.run_duration.labels(mode=mode).observe(duration)
        self.units_allocated.labels(mode=mode).inc(units)

    def record_failed(self, *, simulation: bool, duration: float) -> None:
        mode = self._mode(simulation)
        self.runs_total.labels(status="failed", mode=mode).inc()
        self.run_duration.labels(mode=mode).observe(duration)

    def record_gate_refusal(self, reason: str) -> None:
        self.gate_refusals.labels(reason=reason).inc()

    def record_lock_conflict(self) -> None:
        self.lock_conflicts.inc()

    def record_flags(self, flags: tuple[str, ...]) -> None:
        for flag in flags:
            self.review_flags.labels(flag=flag).inc()


__all__ = ["AllocationMetrics"]
