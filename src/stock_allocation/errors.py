"""Error envelopes and the domain exception hierarchy."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

MESSAGES: dict[str, str] = {
    "VALIDATION_FAILED": "The allocation request is invalid.",
    "GATE_REFUSED": "Live stock writes are currently blocked.",
    "ALREADY_RUNNING": "An execution for this policy is already running.",
    "COMMIT_FAILED": "Stock movements could not be committed; all changes were rolled back.",
    "SAFETY_CHECK_FAILED": "The allocation plan failed pre-commit safety checks.",
    "EXECUTION_TIMEOUT": "The execution exceeded its time limit and was rolled back.",
    "INTERNAL_ERROR": "The execution failed unexpectedly.",
    "POLICY_NOT_FOUND": "Allocation policy not found.",
    "POLICY_IN_USE": "The policy is referenced by executions and cannot be deleted.",
    "PRESET_NOT_FOUND": "Preset not found.",
    "PRESET_READ_ONLY": "Preset policies cannot be modified.",
    "RUN_ID_CONFLICT": "Run identifiers cannot be reused.",
    "EXECUTION_NOT_FOUND": "Execution record not found.",
}


@dataclass(frozen=True, slots=True)
class ErrorEnvelope:
    code: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


def envelope(code: str, *, details: Mapping[str, Any] | None = None, message: str | None = None) -> ErrorEnvelope:
    return ErrorEnvelope(
        code=code,
        message=message or MESSAGES.get(code, code),
        details=dict(details or {}),
    )


@dataclass(frozen=True, slots=True)
class FieldError:
    """One rejected policy field."""

    field: str
    code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


class AllocationError(Exception):
    """Base class; every domain error carries an envelope."""

    default_code = "INTERNAL_ERROR"

    def __init__(self, env: ErrorEnvelope | None = None) -> None:
        self.envelope = env or envelope(self.default_code)
        super().__init__(self.envelope.message)

    @property
    def code(self) -> str:
        return self.envelope.code


class ValidationError(AllocationError):
    default_code = "VALIDATION_FAILED"

    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors = tuple(errors)
        message = "; ".join(f"{item.field}: {item.message}" for item in self.errors)
        super().__init__(
            envelope(
                self.default_code,
                message=message or None,
                details={"errors": [item.as_dict() for item in self.errors]},
            )
        )


class GateRefusedError(AllocationError):
    default_code = "GATE_REFUSED"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(
            envelope(
                self.default_code,
                message=f"{MESSAGES[self.default_code]} (reason: {reason})",
                details={"reason": reason},
            )
        )


class ConcurrencyError(AllocationError):
    default_code = "ALREADY_RUNNING"

    def __init__(self, policy_key: str, *, run_id: str | None = None) -> None:
        self.policy_key = policy_key
        self.run_id = run_id
        super().__init__(envelope(self.default_code, details={"policy_key": policy_key, "run_id": run_id}))


class CommitError(AllocationError):
    default_code = "COMMIT_FAILED"


class ExecutionTimeoutError(AllocationError):
    default_code = "EXECUTION_TIMEOUT"


class ExecutionError(AllocationError):
    default_code = "INTERNAL_ERROR"


class PolicyNotFoundError(AllocationError):
    default_code = "POLICY_NOT_FOUND"


class PolicyInUseError(AllocationError):
    default_code = "POLICY_IN_USE"


class PresetNotFoundError(AllocationError):
    default_code = "PRESET_NOT_FOUND"


class PresetReadOnlyError(AllocationError):
    default_code = "PRESET_READ_ONLY"


class RunConflictError(AllocationError):
    default_code = "RUN_ID_CONFLICT"


class ConvergenceWarning(UserWarning):
    """Water-filling hit its pass ceiling; the result is usable but flagged for review."""


__all__ = [
    "AllocationError",
    "CommitError",
    "ConcurrencyError",
    "ConvergenceWarning",
    "ErrorEnvelope",
    "ExecutionError",
    "ExecutionTimeoutError",
    "FieldError",
    "GateRefusedError",
    "MESSAGES",
    "PolicyInUseError",
    "PolicyNotFoundError",
    "PresetNotFoundError",
    "PresetReadOnlyError",
    "RunConflictError",
    "ValidationError",
    "envelope",
]
