from __future__ import annotations

import logging
import threading
from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from stock_allocation.clock import UTC_TZ, FrozenClock
from stock_allocation.contracts import NON_CONVERGENT, ExecutionStatus
from stock_allocation.errors import (
    ConcurrencyError,
    ConvergenceWarning,
    ExecutionError,
    GateRefusedError,
    RunConflictError,
    ValidationError,
)
from stock_allocation.keys import policy_key
from stock_allocation.orchestrator import ExecutionOrchestrator
from stock_allocation.safety import SafetyGate

FROZEN_AT = datetime(2024, 3, 1, 10, 0, tzinfo=UTC_TZ)

INLINE = {"name": "inline", "min_allocation_pct": 0, "max_allocation_pct": 100}


def _stored_policy(services, **fields):
    return services.policies.create({"name": "stored", "min_allocation_pct": 0, "max_allocation_pct": 100, **fields})


def _three_outlets(signal_factory):
    return signal_factory([("north", 2.0), ("south", 1.0), ("east", 1.0)])


def _orchestrator_with_gate(services, gate) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        store=services.store,
        gate=gate,
        uow_factory=services.uow_factory,
        clock=services.clock,
        settings=services.config.execution,
        metrics=services.metrics,
    )


class BlockingGate(SafetyGate):
    """Holds the run inside the gate check until released."""

    def __init__(self, inner: SafetyGate) -> None:
        super().__init__(
            kill_switch=inner.kill_switch,
            write_window=inner.write_window,
            settings=inner._settings,
            clock=inner._clock,
        )
        self.entered = threading.Event()
        self.release = threading.Event()

    def check_writable(self):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().check_writable()


class BrokenGate(SafetyGate):
    def __init__(self, inner: SafetyGate) -> None:
        super().__init__(
            kill_switch=inner.kill_switch,
            write_window=inner.write_window,
            settings=inner._settings,
            clock=inner._clock,
        )

    def check_writable(self):
        raise RuntimeError("gate backend unavailable")


def test_simulation_never_touches_stock(services, signal_factory, seed, levels) -> None:
    seed(services, {("warehouse", "p1"): 100})
    before = levels(services)

    first = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True)
    second = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True)

    assert first.status is ExecutionStatus.COMPLETED
    assert second.status is ExecutionStatus.COMPLETED
    assert first.run_id != second.run_id
    assert first.result == second.result
    assert first.units_allocated == 40
    assert levels(services) == before
    assert services.store.lines_for(first.run_id) == []


def test_live_run_moves_stock_atomically(services, signal_factory, seed, levels) -> None:
    policy = _stored_policy(services)
    seed(services, {("warehouse", "p1"): 100})

    record = services.orchestrator.execute(
        policy.id, _three_outlets(signal_factory), 40, simulation_mode=False, actor="ops"
    )

    assert record.status is ExecutionStatus.COMPLETED
    assert record.policy_id == policy.id
    assert record.units_allocated == 40
    assert record.outlets_updated == 3
    assert record.products_processed == 1
    assert levels(services) == {
        ("east", "p1"): 10,
        ("north", "p1"): 20,
        ("south", "p1"): 10,
        ("warehouse", "p1"): 60,
    }
    lines = services.store.lines_for(record.run_id)
    assert sorted((line.outlet_id, line.units) for line in lines) == [("east", 10), ("north", 20), ("south", 10)]
    assert {line.source_outlet_id for line in lines} == {"warehouse"}

    persisted = services.store.find_by_run_id(record.run_id)
    assert persisted.status is ExecutionStatus.COMPLETED
    assert persisted.policy_snapshot["name"] == "stored"
    assert persisted.actor == "ops"


def test_commit_failure_rolls_back_every_movement(services, signal_factory, seed, levels) -> None:
    seed(services, {("warehouse", "p1"): 100, ("warehouse", "p2"): 5})
    before = levels(services)
    signals = signal_factory([("north", 1.0), ("south", 1.0)], product_id="p1") + signal_factory(
        [("north", 1.0), ("south", 1.0)], product_id="p2"
    )
    policy = {**INLINE, "safety_checks_enabled": False}

    record = services.orchestrator.execute(policy, signals, {"p1": 50, "p2": 50}, simulation_mode=False)

    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "COMMIT_FAILED"
    assert levels(services) == before
    assert services.store.lines_for(record.run_id) == []
    assert services.store.find_by_run_id(record.run_id).status is ExecutionStatus.FAILED
    assert not services.store.is_locked(record.policy_key)


def test_safety_checks_reject_uncovered_plan(services, signal_factory, seed, levels) -> None:
    seed(services, {("warehouse", "p1"): 10})
    before = levels(services)

    record = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "SAFETY_CHECK_FAILED"
    assert record.error.envelope.details["shortages"][0]["available"] == 10
    assert levels(services) == before


def test_timeout_rolls_back(make_services, signal_factory, seed, levels) -> None:
    ticking = FrozenClock(fixed=FROZEN_AT)
    services = make_services(clock=ticking, execution={"timeout_seconds": 2.5})
    seed(services, {("warehouse", "p1"): 100})
    before = levels(services)
    ticking.tick = 1.0

    record = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "EXECUTION_TIMEOUT"
    assert levels(services) == before
    assert services.store.lines_for(record.run_id) == []


def test_kill_switch_blocks_live_runs_only(services, signal_factory, seed, levels) -> None:
    seed(services, {("warehouse", "p1"): 100})
    before = levels(services)
    services.gate.kill_switch.activate()

    live = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    assert live.status is ExecutionStatus.FAILED
    assert live.error_code == "GATE_REFUSED"
    assert isinstance(live.error, GateRefusedError)
    assert live.error.reason == "kill_switch"
    assert levels(services) == before
    assert not services.store.is_locked(live.policy_key)

    simulated = services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True)
    assert simulated.status is ExecutionStatus.COMPLETED


def test_held_lock_fails_fast(services, signal_factory) -> None:
    policy = _stored_policy(services)
    services.store.try_lock(policy_key(policy))

    with pytest.raises(ConcurrencyError) as exc:
        services.orchestrator.execute(policy.id, _three_outlets(signal_factory), 40, simulation_mode=True)

    assert exc.value.envelope.code == "ALREADY_RUNNING"
    failed = services.store.find_by_run_id(exc.value.run_id)
    assert failed.status is ExecutionStatus.FAILED
    assert failed.error_code == "ALREADY_RUNNING"
    assert services.store.is_locked(policy_key(policy))


def test_concurrent_runs_on_one_policy(services, signal_factory, seed) -> None:
    policy = _stored_policy(services)
    seed(services, {("warehouse", "p1"): 100})
    gate = BlockingGate(services.gate)
    orchestrator = _orchestrator_with_gate(services, gate)
    outcome = {}

    def first_run() -> None:
        outcome["record"] = orchestrator.execute(
            policy.id, _three_outlets(signal_factory), 40, simulation_mode=False
        )

    worker = threading.Thread(target=first_run)
    worker.start()
    assert gate.entered.wait(timeout=5)
    try:
        with pytest.raises(ConcurrencyError):
            orchestrator.execute(policy.id, _three_outlets(signal_factory), 40, simulation_mode=False)
    finally:
        gate.release.set()
        worker.join(timeout=10)

    assert outcome["record"].status is ExecutionStatus.COMPLETED
    statuses = sorted((record.status.value, record.error_code or "") for record in services.store.recent(10))
    assert statuses == [("Completed", ""), ("Failed", "ALREADY_RUNNING")]
    assert not services.store.is_locked(policy_key(policy))


def test_independent_policies_do_not_block_each_other(services, signal_factory) -> None:
    first = _stored_policy(services)
    second = _stored_policy(services, power_factor=3.0)
    services.store.try_lock(policy_key(first))

    record = services.orchestrator.execute(second.id, _three_outlets(signal_factory), 40, simulation_mode=True)
    assert record.status is ExecutionStatus.COMPLETED


def test_invalid_policy_fails_without_lock(services, signal_factory) -> None:
    record = services.orchestrator.execute(
        {"name": "bad", "min_allocation_pct": 60, "max_allocation_pct": 40},
        _three_outlets(signal_factory),
        40,
        simulation_mode=False,
    )

    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "VALIDATION_FAILED"
    assert isinstance(record.error, ValidationError)
    assert record.error.errors[0].field == "min_allocation_pct"
    assert services.store.find_by_run_id(record.run_id).status is ExecutionStatus.FAILED
    assert services.redis.keys(f"{services.config.redis.namespace}:lock:*") == []


@pytest.mark.parametrize("case", ["missing", "inactive", "source_in_signals", "no_signals"])
def test_working_set_validation(services, signal_factory, case) -> None:
    policy_ref = INLINE
    signals = _three_outlets(signal_factory)
    if case == "missing":
        policy_ref = 999
    elif case == "inactive":
        policy_ref = _stored_policy(services, is_active=False).id
    elif case == "source_in_signals":
        signals = signal_factory([("warehouse", 1.0), ("north", 1.0)])
    else:
        signals = []

    record = services.orchestrator.execute(policy_ref, signals, 10, simulation_mode=True)

    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "VALIDATION_FAILED"
    assert record.policy_id is None


def test_run_ids_are_never_reused(services, signal_factory) -> None:
    services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True, run_id="run-1")

    with pytest.raises(RunConflictError):
        services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True, run_id="run-1")
    assert [record.run_id for record in services.store.recent(10)] == ["run-1"]


def test_racing_calls_cannot_share_a_run_id(services, signal_factory, monkeypatch) -> None:
    both_checked = threading.Barrier(2, timeout=5)
    original_exists = services.store.exists

    def exists_once_both_checked(run_id: str) -> bool:
        found = original_exists(run_id)
        both_checked.wait()
        return found

    monkeypatch.setattr(services.store, "exists", exists_once_both_checked)
    outcomes = {}

    def run(name: str, power_factor: float) -> None:
        try:
            outcomes[name] = services.orchestrator.execute(
                {**INLINE, "power_factor": power_factor},
                _three_outlets(signal_factory),
                40,
                simulation_mode=True,
                run_id="run-1",
            )
        except RunConflictError as exc:
            outcomes[name] = exc

    workers = [
        threading.Thread(target=run, args=("first", 1.0)),
        threading.Thread(target=run, args=("second", 3.0)),
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    conflicts = [item for item in outcomes.values() if isinstance(item, RunConflictError)]
    accepted = [item for item in outcomes.values() if not isinstance(item, RunConflictError)]
    assert len(conflicts) == 1
    assert len(accepted) == 1
    assert conflicts[0].envelope.code == "RUN_ID_CONFLICT"

    [stored] = services.store.recent(10)
    assert stored.run_id == "run-1"
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.policy_key == accepted[0].policy_key


def test_unsaved_failure_is_raised(services, signal_factory, monkeypatch) -> None:
    original_save = services.store.save

    def save_unless_failed(record) -> None:
        if record.status is ExecutionStatus.FAILED:
            raise SQLAlchemyError("database unavailable")
        original_save(record)

    monkeypatch.setattr(services.store, "save", save_unless_failed)
    services.gate.kill_switch.activate()

    with pytest.raises(ExecutionError) as exc:
        services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    details = exc.value.envelope.details
    assert exc.value.envelope.code == "INTERNAL_ERROR"
    assert details["record_persisted"] is False
    assert details["failed_code"] == "GATE_REFUSED"
    assert isinstance(exc.value.__cause__, SQLAlchemyError)
    assert services.store.find_by_run_id(details["run_id"]).status is ExecutionStatus.PENDING
    assert services.redis.keys(f"{services.config.redis.namespace}:lock:*") == []


def test_non_convergence_marks_run_for_review(make_services, signal_factory) -> None:
    services = make_services(execution={"max_redistribution_passes": 1})
    signals = signal_factory([("A", 5.0), ("B", 1.0)], capacity={"A": 10})

    with pytest.warns(ConvergenceWarning):
        record = services.orchestrator.execute(INLINE, signals, 100, simulation_mode=True)

    assert record.status is ExecutionStatus.COMPLETED
    assert record.needs_review
    assert NON_CONVERGENT in record.flags


def test_unexpected_fault_is_recorded_and_lock_released(services, signal_factory) -> None:
    orchestrator = _orchestrator_with_gate(services, BrokenGate(services.gate))

    with pytest.raises(ExecutionError) as exc:
        orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    assert isinstance(exc.value.__cause__, RuntimeError)
    [record] = services.store.recent(1)
    assert record.status is ExecutionStatus.FAILED
    assert record.error_code == "INTERNAL_ERROR"
    assert not services.store.is_locked(record.policy_key)


def test_metrics_follow_run_outcomes(services, signal_factory) -> None:
    services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=True)
    services.gate.kill_switch.activate()
    services.orchestrator.execute(INLINE, _three_outlets(signal_factory), 40, simulation_mode=False)

    registry = services.registry
    assert registry.get_sample_value("allocation_runs_total", {"status": "completed", "mode": "simulation"}) == 1
    assert registry.get_sample_value("allocation_runs_total", {"status": "failed", "mode": "live"}) == 1
    assert registry.get_sample_value("allocation_gate_refusals_total", {"reason": "kill_switch"}) == 1
    assert registry.get_sample_value("allocation_units_total", {"mode": "simulation"}) == 40


@pytest.mark.parametrize("enabled", [True, False])
def test_line_logging_follows_policy(services, signal_factory, caplog, enabled) -> None:
    caplog.set_level(logging.INFO, logger="stock_allocation")
    services.orchestrator.execute(
        {**INLINE, "logging_enabled": enabled}, _three_outlets(signal_factory), 40, simulation_mode=True
    )
    line_logs = [record for record in caplog.records if record.getMessage() == "allocation line"]
    assert bool(line_logs) is enabled
    assert any(record.getMessage() == "allocation run completed" for record in caplog.records)


def test_simulate_preview_validates_input(services, signal_factory) -> None:
    result = services.orchestrator.simulate(INLINE, _three_outlets(signal_factory), 40)
    assert result.total_allocated == 40
    assert services.store.recent(10) == []

    with pytest.raises(ValidationError):
        services.orchestrator.simulate({"name": ""}, _three_outlets(signal_factory), 40)
