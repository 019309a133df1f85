"""Stock allocation engine: policy-driven unit allocation with guarded execution."""
from __future__ import annotations

from .algorithm import allocate
from .contracts import (
    AllocationLine,
    AllocationMethod,
    AllocationPolicy,
    AllocationResult,
    ExecutionRecord,
    ExecutionStatus,
    OutletDemandSignal,
    RoundingMethod,
)
from .errors import (
    AllocationError,
    CommitError,
    ConcurrencyError,
    ConvergenceWarning,
    ExecutionError,
    ExecutionTimeoutError,
    GateRefusedError,
    RunConflictError,
    ValidationError,
)
from .orchestrator import ExecutionOrchestrator
from .safety import GateDecision, SafetyGate
from .store import ExecutionStore
from .validator import ConfigValidator, Invalid, Valid

__all__ = [
    "AllocationError",
    "AllocationLine",
    "AllocationMethod",
    "AllocationPolicy",
    "AllocationResult",
    "CommitError",
    "ConcurrencyError",
    "ConfigValidator",
    "ConvergenceWarning",
    "ExecutionError",
    "ExecutionOrchestrator",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionStore",
    "ExecutionTimeoutError",
    "GateDecision",
    "GateRefusedError",
    "Invalid",
    "OutletDemandSignal",
    "RoundingMethod",
    "RunConflictError",
    "SafetyGate",
    "Valid",
    "ValidationError",
    "allocate",
]
