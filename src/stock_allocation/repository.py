"""Session-bound repositories translating ORM rows to contract values."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .contracts import (
    AllocationLineRecord,
    AllocationMethod,
    AllocationPolicy,
    ExecutionRecord,
    ExecutionStatus,
    RoundingMethod,
)
from .models import AllocationLineModel, ExecutionModel, OutletStockModel, PolicyModel


class StockShortageError(RuntimeError):
    """Raised when a movement would drive outlet stock below zero."""

    def __init__(self, outlet_id: str, product_id: str, *, available: int, requested: int) -> None:
        super().__init__(
            f"insufficient stock for product {product_id!r} at outlet {outlet_id!r}: "
            f"available={available} requested={requested}"
        )
        self.outlet_id = outlet_id
        self.product_id = product_id
        self.available = available
        self.requested = requested


_POLICY_FIELDS = (
    "name",
    "description",
    "power_factor",
    "min_allocation_pct",
    "max_allocation_pct",
    "safety_checks_enabled",
    "logging_enabled",
    "is_active",
    "is_preset",
    "created_by",
    "created_at",
    "updated_by",
    "updated_at",
)


class PolicyRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, policy: AllocationPolicy) -> AllocationPolicy:
        model = PolicyModel(
            method=int(policy.method),
            rounding_method=int(policy.rounding_method),
            **{name: getattr(policy, name) for name in _POLICY_FIELDS},
        )
        self.session.add(model)
        self.session.flush()
        return self._to_policy(model)

    def update(self, policy: AllocationPolicy) -> AllocationPolicy:
        model = self.session.get(PolicyModel, policy.id, with_for_update=True)
        if model is None:
            raise KeyError(policy.id)
        for name in _POLICY_FIELDS:
            setattr(model, name, getattr(policy, name))
        model.method = int(policy.method)
        model.rounding_method = int(policy.rounding_method)
        self.session.flush()
        return self._to_policy(model)

    def get(self, policy_id: int) -> Optional[AllocationPolicy]:
        model = self.session.get(PolicyModel, policy_id)
        return self._to_policy(model) if model else None

    def list(self, *, active_only: bool = False) -> List[AllocationPolicy]:
        stmt = select(PolicyModel).order_by(PolicyModel.id)
        if active_only:
            stmt = stmt.where(PolicyModel.is_active.is_(True))
        return [self._to_policy(model) for model in self.session.scalars(stmt)]

    def find_preset(self, name: str) -> Optional[AllocationPolicy]:
        stmt = select(PolicyModel).where(PolicyModel.name == name, PolicyModel.is_preset.is_(True))
        model = self.session.scalars(stmt).first()
        return self._to_policy(model) if model else None

    def is_referenced(self, policy_id: int) -> bool:
        stmt = select(func.count()).select_from(ExecutionModel).where(ExecutionModel.policy_id == policy_id)
        return bool(self.session.scalar(stmt))

    def delete(self, policy_id: int) -> None:
        model = self.session.get(PolicyModel, policy_id)
        if model is None:
            raise KeyError(policy_id)
        self.session.delete(model)
        self.session.flush()

    @staticmethod
    def _to_policy(model: PolicyModel) -> AllocationPolicy:
        return AllocationPolicy(
            id=model.id,
            method=AllocationMethod(model.method),
            rounding_method=RoundingMethod(model.rounding_method),
            **{name: getattr(model, name) for name in _POLICY_FIELDS},
        )


_EXECUTION_FIELDS = (
    "policy_id",
    "policy_key",
    "simulation_mode",
    "products_processed",
    "outlets_updated",
    "units_requested",
    "units_allocated",
    "execution_duration_seconds",
    "error_code",
    "error_message",
    "needs_review",
    "actor",
    "created_at",
    "completed_at",
)


class ExecutionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def exists(self, run_id: str) -> bool:
        return self.session.get(ExecutionModel, run_id) is not None

    def insert(self, record: ExecutionRecord) -> None:
        """Add a new run; a reused run id fails on the primary key at flush."""

        model = ExecutionModel(run_id=record.run_id)
        self._apply(model, record)
        self.session.add(model)
        self.session.flush()

    def upsert(self, record: ExecutionRecord) -> None:
        model = self.session.get(ExecutionModel, record.run_id)
        if model is None:
            model = ExecutionModel(run_id=record.run_id)
            self.session.add(model)
        self._apply(model, record)
        self.session.flush()

    @staticmethod
    def _apply(model: ExecutionModel, record: ExecutionRecord) -> None:
        for name in _EXECUTION_FIELDS:
            setattr(model, name, getattr(record, name))
        model.status = record.status.value
        model.flags = list(record.flags)
        model.policy_snapshot = dict(record.policy_snapshot) if record.policy_snapshot else None

    def get(self, run_id: str) -> Optional[ExecutionRecord]:
        model = self.session.get(ExecutionModel, run_id)
        return self._to_record(model) if model else None

    def recent(self, limit: int) -> List[ExecutionRecord]:
        stmt = (
            select(ExecutionModel)
            .order_by(ExecutionModel.created_at.desc(), ExecutionModel.run_id.desc())
            .limit(limit)
        )
        return [self._to_record(model) for model in self.session.scalars(stmt)]

    @staticmethod
    def _to_record(model: ExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            run_id=model.run_id,
            status=ExecutionStatus(model.status),
            flags=tuple(model.flags or ()),
            policy_snapshot=model.policy_snapshot,
            **{name: getattr(model, name) for name in _EXECUTION_FIELDS},
        )


class AllocationLineRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add_many(self, records: Iterable[AllocationLineRecord]) -> int:
        count = 0
        for record in records:
            self.session.add(
                AllocationLineModel(
                    run_id=record.run_id,
                    product_id=record.product_id,
                    source_outlet_id=record.source_outlet_id,
                    outlet_id=record.outlet_id,
                    units=record.units,
                    priority_score=record.priority_score,
                )
            )
            count += 1
        self.session.flush()
        return count

    def for_run(self, run_id: str) -> List[AllocationLineRecord]:
        stmt = (
            select(AllocationLineModel)
            .where(AllocationLineModel.run_id == run_id)
            .order_by(AllocationLineModel.product_id, AllocationLineModel.outlet_id)
        )
        return [
            AllocationLineRecord(
                run_id=model.run_id,
                product_id=model.product_id,
                source_outlet_id=model.source_outlet_id,
                outlet_id=model.outlet_id,
                units=model.units,
                priority_score=model.priority_score,
            )
            for model in self.session.scalars(stmt)
        ]


class StockRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _locked(self, outlet_id: str, product_id: str) -> Optional[OutletStockModel]:
        stmt = (
            select(OutletStockModel)
            .where(OutletStockModel.outlet_id == outlet_id, OutletStockModel.product_id == product_id)
            .with_for_update()
        )
        return self.session.scalars(stmt).first()

    def quantity(self, outlet_id: str, product_id: str) -> int:
        model = self.session.get(OutletStockModel, (outlet_id, product_id))
        return model.quantity if model else 0

    def set_quantity(self, outlet_id: str, product_id: str, quantity: int, *, now: datetime) -> None:
        if quantity < 0:
            raise ValueError("quantity must be non-negative")
        model = self._locked(outlet_id, product_id)
        if model is None:
            model = OutletStockModel(outlet_id=outlet_id, product_id=product_id)
            self.session.add(model)
        model.quantity = quantity
        model.updated_at = now
        self.session.flush()

    def move(self, *, source: str, destination: str, product_id: str, units: int, now: datetime) -> None:
        """Decrement ``source`` and increment ``destination`` under row locks."""

        if units <= 0:
            return
        source_row = self._locked(source, product_id)
        available = source_row.quantity if source_row else 0
        if source_row is None or available < units:
            raise StockShortageError(source, product_id, available=available, requested=units)
        destination_row = self._locked(destination, product_id)
        if destination_row is None:
            destination_row = OutletStockModel(outlet_id=destination, product_id=product_id, quantity=0)
            self.session.add(destination_row)
        source_row.quantity = available - units
        source_row.updated_at = now
        destination_row.quantity = destination_row.quantity + units
        destination_row.updated_at = now
        self.session.flush()

    def snapshot(self) -> dict[tuple[str, str], int]:
        stmt = select(OutletStockModel).order_by(OutletStockModel.outlet_id, OutletStockModel.product_id)
        return {(row.outlet_id, row.product_id): row.quantity for row in self.session.scalars(stmt)}


__all__ = [
    "AllocationLineRepository",
    "ExecutionRepository",
    "PolicyRepository",
    "StockRepository",
    "StockShortageError",
]
