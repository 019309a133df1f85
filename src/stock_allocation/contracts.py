"""Core contracts shared by the validator, algorithm and orchestrator."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Literal, Mapping, Tuple

ReviewFlag = Literal[
    "EQUAL_WEIGHT_FALLBACK",
    "UNALLOCATED_REMAINDER",
    "MIN_BOUNDS_RELAXED",
    "NON_CONVERGENT",
    "ROUNDING_DRIFT",
]

EQUAL_WEIGHT_FALLBACK: ReviewFlag = "EQUAL_WEIGHT_FALLBACK"
UNALLOCATED_REMAINDER: ReviewFlag = "UNALLOCATED_REMAINDER"
MIN_BOUNDS_RELAXED: ReviewFlag = "MIN_BOUNDS_RELAXED"
NON_CONVERGENT: ReviewFlag = "NON_CONVERGENT"
ROUNDING_DRIFT: ReviewFlag = "ROUNDING_DRIFT"

# Flags that require an operator to look at the run; the others are informational.
REVIEW_FLAGS: frozenset[str] = frozenset({NON_CONVERGENT, ROUNDING_DRIFT, MIN_BOUNDS_RELAXED})


class AllocationMethod(IntEnum):
    PROPORTIONAL = 1
    SOFTMAX = 2


class RoundingMethod(IntEnum):
    FLOOR = 0
    CEIL = 1
    ROUND_HALF_UP = 2
    LARGEST_REMAINDER = 3


class ExecutionStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class AllocationPolicy:
    """Validated policy; only ``ConfigValidator`` should construct one from user input."""

    name: str
    description: str = ""
    method: AllocationMethod = AllocationMethod.PROPORTIONAL
    power_factor: float = 2.0
    min_allocation_pct: float = 5.0
    max_allocation_pct: float = 50.0
    rounding_method: RoundingMethod = RoundingMethod.LARGEST_REMAINDER
    safety_checks_enabled: bool = True
    logging_enabled: bool = True
    is_active: bool = True
    is_preset: bool = False
    id: int | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly copy attached to execution records."""

        data = asdict(self)
        data["method"] = int(self.method)
        data["rounding_method"] = int(self.rounding_method)
        for key in ("created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data


@dataclass(frozen=True)
class OutletDemandSignal:
    outlet_id: str
    product_id: str
    current_stock: int
    demand_weight: float
    capacity: int | None = None


@dataclass(frozen=True)
class AllocationLine:
    product_id: str
    outlet_id: str
    allocated_units: int
    priority_score: float
    min_units: float
    max_units: float
    capacity: int | None
    projected_stock: int


@dataclass(frozen=True)
class AllocationResult:
    """Output of one ``allocate`` call; equal inputs give equal results."""

    lines: Tuple[AllocationLine, ...]
    total_requested: int
    total_allocated: int
    unallocated_units: int = 0
    capacity_exceptions: Tuple[Tuple[str, str], ...] = ()
    excluded_outlets: Tuple[Tuple[str, str], ...] = ()
    flags: Tuple[str, ...] = ()
    iterations: int = 0
    converged: bool = True

    @property
    def conserved(self) -> bool:
        return self.total_allocated + self.unallocated_units == self.total_requested

    @property
    def needs_review(self) -> bool:
        return any(flag in REVIEW_FLAGS for flag in self.flags)

    @property
    def products(self) -> Tuple[str, ...]:
        return tuple(sorted({line.product_id for line in self.lines}))

    @property
    def outlets_updated(self) -> int:
        return len({line.outlet_id for line in self.lines if line.allocated_units > 0})

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lines": [asdict(line) for line in self.lines],
            "total_requested": self.total_requested,
            "total_allocated": self.total_allocated,
            "unallocated_units": self.unallocated_units,
            "capacity_exceptions": [list(pair) for pair in self.capacity_exceptions],
            "excluded_outlets": [list(pair) for pair in self.excluded_outlets],
            "flags": list(self.flags),
            "iterations": self.iterations,
            "converged": self.converged,
            "conserved": self.conserved,
            "needs_review": self.needs_review,
        }


@dataclass
class ExecutionRecord:
    """Audit record of one run; the orchestrator owns every transition."""

    run_id: str
    policy_key: str
    simulation_mode: bool
    created_at: datetime
    policy_id: int | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    products_processed: int = 0
    outlets_updated: int = 0
    units_requested: int = 0
    units_allocated: int = 0
    execution_duration_seconds: float = 0.0
    error_code: str | None = None
    error_message: str | None = None
    needs_review: bool = False
    flags: Tuple[str, ...] = ()
    policy_snapshot: Mapping[str, Any] | None = None
    actor: str | None = None
    completed_at: datetime | None = None
    result: AllocationResult | None = field(default=None, compare=False, repr=False)
    error: Exception | None = field(default=None, compare=False, repr=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "policy_id": self.policy_id,
            "policy_key": self.policy_key,
            "status": self.status.value,
            "simulation_mode": self.simulation_mode,
            "products_processed": self.products_processed,
            "outlets_updated": self.outlets_updated,
            "units_requested": self.units_requested,
            "units_allocated": self.units_allocated,
            "execution_duration_seconds": self.execution_duration_seconds,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "needs_review": self.needs_review,
            "flags": list(self.flags),
            "policy_snapshot": dict(self.policy_snapshot) if self.policy_snapshot else None,
            "actor": self.actor,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class AllocationLineRecord:
    run_id: str
    product_id: str
    source_outlet_id: str
    outlet_id: str
    units: int
    priority_score: float


__all__ = [
    "AllocationLine",
    "AllocationLineRecord",
    "AllocationMethod",
    "AllocationPolicy",
    "AllocationResult",
    "EQUAL_WEIGHT_FALLBACK",
    "ExecutionRecord",
    "ExecutionStatus",
    "MIN_BOUNDS_RELAXED",
    "NON_CONVERGENT",
    "OutletDemandSignal",
    "REVIEW_FLAGS",
    "ROUNDING_DRIFT",
    "ReviewFlag",
    "RoundingMethod",
    "UNALLOCATED_REMAINDER",
]
