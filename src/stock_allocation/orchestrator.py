"""Execution state machine: validate, lock, gate, allocate, then simulate or commit.

Every call to ``execute`` leaves exactly one ``ExecutionRecord`` behind; the
record moves ``Pending -> Running -> Completed`` or ends in ``Failed`` with a
single error code. Live runs commit every stock movement, the allocation
lines and the completed record in one transaction.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, Mapping, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from .algorithm import TotalUnits, allocate, group_signals, resolve_totals
from .clock import Clock
from .config import ExecutionConfig
from .contracts import (
    AllocationLineRecord,
    AllocationPolicy,
    AllocationResult,
    ExecutionRecord,
    ExecutionStatus,
    OutletDemandSignal,
)
from .errors import (
    AllocationError,
    CommitError,
    ConcurrencyError,
    ExecutionError,
    ExecutionTimeoutError,
    FieldError,
    GateRefusedError,
    RunConflictError,
    ValidationError,
    envelope,
)
from .keys import new_run_id, normalize_run_id, policy_key
from .logging_utils import get_logger
from .metrics import AllocationMetrics
from .repository import StockShortageError
from .safety import SafetyGate
from .store import ExecutionStore
from .uow import UnitOfWorkError, UnitOfWorkFactory
from .validator import ConfigValidator, Invalid

PolicyRef = Union[int, AllocationPolicy, Mapping[str, Any]]

logger = get_logger(__name__)


def _invalid(field: str, code: str, message: str) -> ValidationError:
    return ValidationError([FieldError(field=field, code=code, message=message)])


class ExecutionOrchestrator:
    def __init__(
        self,
        *,
        store: ExecutionStore,
        gate: SafetyGate,
        uow_factory: UnitOfWorkFactory,
        clock: Clock,
        settings: ExecutionConfig | None = None,
        metrics: AllocationMetrics | None = None,
        validator: ConfigValidator | None = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._uow_factory = uow_factory
        self._clock = clock
        self._settings = settings or ExecutionConfig()
        self._metrics = metrics
        self._validator = validator or ConfigValidator()

    # -- public API -------------------------------------------------------

    def simulate(
        self,
        policy_ref: PolicyRef,
        signals: Iterable[OutletDemandSignal],
        total_units: TotalUnits,
        *,
        source_outlet_id: str | None = None,
    ) -> AllocationResult:
        """Preview an allocation; writes nothing."""

        signals = tuple(signals)
        policy = self._resolve_policy(policy_ref)
        self._check_working_set(signals, total_units, source_outlet_id or self._settings.source_outlet_id)
        return allocate(policy, signals, total_units, max_passes=self._settings.max_redistribution_passes)

    def execute(
        self,
        policy_ref: PolicyRef,
        signals: Iterable[OutletDemandSignal],
        total_units: TotalUnits,
        *,
        simulation_mode: bool,
        source_outlet_id: str | None = None,
        run_id: str | None = None,
        actor: str | None = None,
    ) -> ExecutionRecord:
        signals = tuple(signals)
        source = source_outlet_id or self._settings.source_outlet_id
        run_id = self._claim_run_id(run_id)
        started = self._clock.monotonic()
        record = ExecutionRecord(
            run_id=run_id,
            policy_key=self._provisional_key(policy_ref),
            simulation_mode=simulation_mode,
            created_at=self._clock.now(),
            actor=actor,
        )
        self._store.create(record)
        logger.info(
            "allocation run created",
            extra={"ctx_run_id": run_id, "ctx_simulation": simulation_mode, "ctx_actor": actor},
        )

        try:
            try:
                policy = self._resolve_policy(policy_ref)
                self._check_working_set(signals, total_units, source)
            except ValidationError as exc:
                self._fail(record, exc, started)
                return record

            record.policy_id = policy.id
            record.policy_key = policy_key(policy)
            record.policy_snapshot = policy.snapshot()

            if not self._store.try_lock(record.policy_key, owner=run_id):
                error = ConcurrencyError(record.policy_key, run_id=run_id)
                if self._metrics:
                    self._metrics.record_lock_conflict()
                self._fail(record, error, started)
                raise error

            try:
                return self._run_locked(record, policy, signals, total_units, source, started)
            finally:
                self._store.unlock(record.policy_key, owner=run_id)
        except AllocationError:
            raise
        except Exception as exc:
            error = ExecutionError(envelope("INTERNAL_ERROR", details={"cause": type(exc).__name__}))
            logger.exception("allocation run crashed", extra={"ctx_run_id": run_id})
            self._fail(record, error, started)
            raise error from exc

    def recent(self, limit: int = 20) -> list[ExecutionRecord]:
        return self._store.recent(min(limit, self._settings.recent_limit_max))

    # -- state transitions ------------------------------------------------

    def _run_locked(
        self,
        record: ExecutionRecord,
        policy: AllocationPolicy,
        signals: Sequence[OutletDemandSignal],
        total_units: TotalUnits,
        source: str,
        started: float,
    ) -> ExecutionRecord:
        if not record.simulation_mode:
            decision = self._gate.check_writable()
            if not decision.allowed:
                reason = decision.reason or "refused"
                if self._metrics:
                    self._metrics.record_gate_refusal(reason)
                self._fail(record, GateRefusedError(reason), started)
                return record

        record.status = ExecutionStatus.RUNNING
        self._store.save(record)

        result = allocate(policy, signals, total_units, max_passes=self._settings.max_redistribution_passes)
        record.result = result
        self._apply_result(record, result)
        if not result.converged:
            logger.warning(
                "allocation did not converge",
                extra={"ctx_run_id": record.run_id, "ctx_iterations": result.iterations},
            )
        deadline = started + self._settings.timeout_seconds

        try:
            self._check_deadline(deadline)
        except ExecutionTimeoutError as exc:
            self._fail(record, exc, started)
            return record

        if record.simulation_mode:
            self._complete(record, started)
            self._store.save(record)
            self._log_lines(record, policy, result)
            self._finish(record)
            return record

        return self._commit(record, policy, result, source, started, deadline)

    def _commit(
        self,
        record: ExecutionRecord,
        policy: AllocationPolicy,
        result: AllocationResult,
        source: str,
        started: float,
        deadline: float,
    ) -> ExecutionRecord:
        now = self._clock.now()
        try:
            with self._uow_factory() as uow:
                if policy.safety_checks_enabled:
                    self._preflight(uow, result, source)
                line_records = []
                for line in result.lines:
                    if line.allocated_units <= 0:
                        continue
                    self._check_deadline(deadline)
                    uow.stock.move(
                        source=source,
                        destination=line.outlet_id,
                        product_id=line.product_id,
                        units=line.allocated_units,
                        now=now,
                    )
                    line_records.append(
                        AllocationLineRecord(
                            run_id=record.run_id,
                            product_id=line.product_id,
                            source_outlet_id=source,
                            outlet_id=line.outlet_id,
                            units=line.allocated_units,
                            priority_score=line.priority_score,
                        )
                    )
                uow.lines.add_many(line_records)
                self._check_deadline(deadline)
                self._complete(record, started)
                uow.executions.upsert(record)
        except (CommitError, ExecutionTimeoutError) as exc:
            self._fail(record, exc, started)
            return record
        except (StockShortageError, UnitOfWorkError, SQLAlchemyError) as exc:
            error = CommitError(envelope("COMMIT_FAILED", details={"cause": str(exc)}))
            logger.error(
                "allocation commit rolled back",
                extra={"ctx_run_id": record.run_id, "ctx_cause": str(exc)},
            )
            self._fail(record, error, started)
            return record

        self._log_lines(record, policy, result)
        self._finish(record)
        return record

    def _preflight(self, uow, result: AllocationResult, source: str) -> None:
        needed: Dict[str, int] = defaultdict(int)
        for line in result.lines:
            needed[line.product_id] += line.allocated_units
        shortages = []
        for product_id in sorted(needed):
            available = uow.stock.quantity(source, product_id)
            if needed[product_id] > available:
                shortages.append({"product_id": product_id, "available": available, "requested": needed[product_id]})
        if shortages:
            raise CommitError(
                envelope(
                    "SAFETY_CHECK_FAILED",
                    message=f"source outlet {source!r} cannot cover the plan for {len(shortages)} product(s)",
                    details={"source_outlet_id": source, "shortages": shortages},
                )
            )

    def _apply_result(self, record: ExecutionRecord, result: AllocationResult) -> None:
        record.products_processed = len(result.products)
        record.outlets_updated = result.outlets_updated
        record.units_requested = result.total_requested
        record.units_allocated = result.total_allocated
        record.flags = result.flags
        record.needs_review = result.needs_review

    def _complete(self, record: ExecutionRecord, started: float) -> None:
        record.status = ExecutionStatus.COMPLETED
        record.error_code = None
        record.error_message = None
        record.completed_at = self._clock.now()
        record.execution_duration_seconds = max(self._clock.monotonic() - started, 0.0)

    def _finish(self, record: ExecutionRecord) -> None:
        if self._metrics:
            self._metrics.record_completed(
                simulation=record.simulation_mode,
                duration=record.execution_duration_seconds,
                units=record.units_allocated,
            )
            self._metrics.record_flags(record.flags)
        logger.info(
            "allocation run completed",
            extra={
                "ctx_run_id": record.run_id,
                "ctx_policy_key": record.policy_key,
                "ctx_simulation": record.simulation_mode,
                "ctx_units": record.units_allocated,
                "ctx_needs_review": record.needs_review,
            },
        )

    def _fail(self, record: ExecutionRecord, error: AllocationError, started: float) -> None:
        record.status = ExecutionStatus.FAILED
        record.error = error
        record.error_code = error.code
        record.error_message = error.envelope.message
        record.completed_at = self._clock.now()
        record.execution_duration_seconds = max(self._clock.monotonic() - started, 0.0)
        if self._metrics:
            self._metrics.record_failed(simulation=record.simulation_mode, duration=record.execution_duration_seconds)
        try:
            self._store.save(record)
        except SQLAlchemyError as exc:
            logger.exception(
                "failed to persist failed run",
                extra={"ctx_run_id": record.run_id, "ctx_error_code": record.error_code},
            )
            raise ExecutionError(
                envelope(
                    "INTERNAL_ERROR",
                    details={
                        "run_id": record.run_id,
                        "failed_code": record.error_code,
                        "record_persisted": False,
                    },
                )
            ) from exc
        logger.warning(
            "allocation run failed",
            extra={
                "ctx_run_id": record.run_id,
                "ctx_error_code": record.error_code,
                "ctx_error": record.error_message,
            },
        )

    def _log_lines(self, record: ExecutionRecord, policy: AllocationPolicy, result: AllocationResult) -> None:
        if not policy.logging_enabled:
            return
        for line in result.lines:
            logger.info(
                "allocation line",
                extra={
                    "ctx_run_id": record.run_id,
                    "ctx_product_id": line.product_id,
                    "ctx_outlet_id": line.outlet_id,
                    "ctx_units": line.allocated_units,
                    "ctx_priority": round(line.priority_score, 6),
                },
            )

    # -- helpers ----------------------------------------------------------

    def _check_deadline(self, deadline: float) -> None:
        if self._clock.monotonic() > deadline:
            raise ExecutionTimeoutError(
                envelope(
                    "EXECUTION_TIMEOUT",
                    details={"timeout_seconds": self._settings.timeout_seconds},
                )
            )

    def _claim_run_id(self, run_id: str | None) -> str:
        if run_id is None:
            return new_run_id()
        try:
            run_id = normalize_run_id(run_id)
        except ValueError as exc:
            raise _invalid("run_id", "INVALID", str(exc)) from exc
        if self._store.exists(run_id):
            raise RunConflictError(envelope("RUN_ID_CONFLICT", details={"run_id": run_id}))
        return run_id

    @staticmethod
    def _provisional_key(policy_ref: PolicyRef) -> str:
        if isinstance(policy_ref, int) and not isinstance(policy_ref, bool):
            return f"policy-{policy_ref}"
        if isinstance(policy_ref, AllocationPolicy) and policy_ref.id is not None:
            return f"policy-{policy_ref.id}"
        return "inline"

    def _resolve_policy(self, policy_ref: PolicyRef) -> AllocationPolicy:
        if isinstance(policy_ref, bool):
            raise _invalid("policy", "INVALID", "policy must be an id or a policy object")
        if isinstance(policy_ref, int):
            with self._uow_factory() as uow:
                stored = uow.policies.get(policy_ref)
            if stored is None:
                raise _invalid("policy_id", "NOT_FOUND", f"policy {policy_ref} does not exist")
            if not stored.is_active:
                raise _invalid("is_active", "INACTIVE", f"policy {policy_ref} is not active")
            outcome = self._validator.revalidate(stored)
        elif isinstance(policy_ref, AllocationPolicy):
            outcome = self._validator.revalidate(policy_ref)
        elif isinstance(policy_ref, Mapping):
            outcome = self._validator.validate({k: v for k, v in policy_ref.items() if k != "id"})
        else:
            raise _invalid("policy", "INVALID", "policy must be an id or a policy object")
        if isinstance(outcome, Invalid):
            raise ValidationError(outcome.errors)
        return outcome.policy

    @staticmethod
    def _check_working_set(
        signals: Tuple[OutletDemandSignal, ...],
        total_units: TotalUnits,
        source: str,
    ) -> None:
        errors = []
        if not signals:
            errors.append(FieldError("signals", "REQUIRED", "at least one outlet signal is required"))
        if any(signal.outlet_id == source for signal in signals):
            errors.append(
                FieldError("signals", "SOURCE_AS_DESTINATION", f"source outlet {source!r} cannot receive stock")
            )
        groups = {}
        try:
            groups = group_signals(signals)
        except ValueError as exc:
            errors.append(FieldError("signals", "INVALID", str(exc)))
        if groups:
            try:
                resolve_totals(total_units, groups)
            except ValueError as exc:
                errors.append(FieldError("total_units", "INVALID", str(exc)))
        if errors:
            raise ValidationError(errors)


__all__ = ["ExecutionOrchestrator", "PolicyRef"]
