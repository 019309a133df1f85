from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry
from redis import Redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .clock import Clock, system_clock
from .config import AppConfig, get_config
from .logging_utils import setup_json_logging
from .metrics import AllocationMetrics
from .models import create_schema, create_session_factory, make_engine
from .orchestrator import ExecutionOrchestrator
from .policies import PolicyService
from .safety import RedisKillSwitch, SafetyGate, WriteWindow
from .store import ExecutionStore
from .uow import UnitOfWorkFactory, sqlalchemy_uow_factory
from .validator import ConfigValidator


@dataclass
class AllocationServices:
    config: AppConfig
    engine: Engine
    session_factory: sessionmaker
    uow_factory: UnitOfWorkFactory
    redis: Redis
    clock: Clock
    registry: CollectorRegistry
    metrics: AllocationMetrics
    gate: SafetyGate
    store: ExecutionStore
    policies: PolicyService
    orchestrator: ExecutionOrchestrator


def build_services(
    config: Optional[AppConfig] = None,
    *,
    redis_client: Optional[Redis] = None,
    engine: Optional[Engine] = None,
    clock: Optional[Clock] = None,
    registry: Optional[CollectorRegistry] = None,
    create_tables: bool = True,
) -> AllocationServices:
    config = config or get_config()
    setup_json_logging(level=config.observability.log_level)
    engine = engine or make_engine(config.database.dsn, echo=config.database.echo)
    if create_tables:
        create_schema(engine)
    session_factory = create_session_factory(engine)
    uow_factory = sqlalchemy_uow_factory(session_factory)
    redis_client = redis_client or Redis.from_url(
        config.redis.dsn,
        socket_timeout=config.redis.operation_timeout,
    )
    clock = clock or system_clock(config.timezone)
    registry = registry or CollectorRegistry()
    metrics = AllocationMetrics(registry)
    validator = ConfigValidator()

    gate = SafetyGate(
        kill_switch=RedisKillSwitch(redis_client, namespace=config.redis.namespace),
        write_window=WriteWindow(
            redis_client,
            namespace=config.redis.namespace,
            default_seconds=config.safety.default_window_seconds,
        ),
        settings=config.safety,
        clock=clock,
    )
    store = ExecutionStore(
        uow_factory,
        redis_client,
        namespace=config.redis.namespace,
        lock_ttl_seconds=config.execution.lock_ttl_seconds,
    )
    policies = PolicyService(uow_factory, clock=clock, validator=validator)
    orchestrator = ExecutionOrchestrator(
        store=store,
        gate=gate,
        uow_factory=uow_factory,
        clock=clock,
        settings=config.execution,
        metrics=metrics,
        validator=validator,
    )
    return AllocationServices(
        config=config,
        engine=engine,
        session_factory=session_factory,
        uow_factory=uow_factory,
        redis=redis_client,
        clock=clock,
        registry=registry,
        metrics=metrics,
        gate=gate,
        store=store,
        policies=policies,
        orchestrator=orchestrator,
    )


__all__ = ["AllocationServices", "build_services"]
