from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    TypeDecorator,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .clock import UTC_TZ

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps; SQLite drops the offset, so it is restored on load."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(UTC_TZ)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC_TZ)
        return value.astimezone(UTC_TZ)


class PolicyModel(Base):
    __tablename__ = "allocation_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")
    method = Column(SmallInteger, nullable=False, default=1)
    power_factor = Column(Float, nullable=False, default=2.0)
    min_allocation_pct = Column(Float, nullable=False, default=5.0)
    max_allocation_pct = Column(Float, nullable=False, default=50.0)
    rounding_method = Column(SmallInteger, nullable=False, default=3)
    safety_checks_enabled = Column(Boolean, nullable=False, default=True)
    logging_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_preset = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    updated_by = Column(String(64), nullable=True)
    updated_at = Column(UTCDateTime(), nullable=True)

    executions = relationship("ExecutionModel", back_populates="policy")

    __table_args__ = (
        CheckConstraint("min_allocation_pct < max_allocation_pct", name="ck_policy_min_below_max"),
        CheckConstraint("power_factor >= 0.1 AND power_factor <= 10.0", name="ck_policy_power_factor"),
        Index("ix_allocation_policies_name", "name"),
    )


class ExecutionModel(Base):
    __tablename__ = "allocation_executions"

    run_id = Column(String(64), primary_key=True)
    policy_id = Column(Integer, ForeignKey("allocation_policies.id"), nullable=True)
    policy_key = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default="Pending")
    simulation_mode = Column(Boolean, nullable=False, default=True)
    products_processed = Column(Integer, nullable=False, default=0)
    outlets_updated = Column(Integer, nullable=False, default=0)
    units_requested = Column(Integer, nullable=False, default=0)
    units_allocated = Column(Integer, nullable=False, default=0)
    execution_duration_seconds = Column(Float, nullable=False, default=0.0)
    error_code = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    flags = Column(JSON, nullable=False, default=list)
    policy_snapshot = Column(JSON, nullable=True)
    actor = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False)
    completed_at = Column(UTCDateTime(), nullable=True)

    policy = relationship("PolicyModel", back_populates="executions")
    lines = relationship("AllocationLineModel", back_populates="execution")

    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Running', 'Completed', 'Failed')",
            name="ck_execution_status",
        ),
        Index("ix_allocation_executions_created", "created_at"),
        Index("ix_allocation_executions_policy_key", "policy_key"),
    )


class AllocationLineModel(Base):
    __tablename__ = "allocation_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), ForeignKey("allocation_executions.run_id"), nullable=False)
    product_id = Column(String(64), nullable=False)
    source_outlet_id = Column(String(64), nullable=False)
    outlet_id = Column(String(64), nullable=False)
    units = Column(Integer, nullable=False)
    priority_score = Column(Float, nullable=False, default=0.0)

    execution = relationship("ExecutionModel", back_populates="lines")

    __table_args__ = (
        UniqueConstraint("run_id", "product_id", "outlet_id", name="uq_allocation_line"),
        CheckConstraint("units > 0", name="ck_allocation_line_units"),
    )


class OutletStockModel(Base):
    __tablename__ = "outlet_stock"

    outlet_id = Column(String(64), primary_key=True)
    product_id = Column(String(64), primary_key=True)
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_outlet_stock_non_negative"),)


def make_engine(dsn: str, *, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if dsn.startswith("sqlite") else {}
    return create_engine(dsn, echo=echo, future=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


__all__ = [
    "AllocationLineModel",
    "Base",
    "ExecutionModel",
    "OutletStockModel",
    "PolicyModel",
    "create_schema",
    "create_session_factory",
    "make_engine",
]
