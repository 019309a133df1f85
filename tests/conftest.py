from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Iterable, Tuple

import pytest
from fakeredis import FakeStrictRedis
from prometheus_client import CollectorRegistry

from stock_allocation.bootstrap import AllocationServices, build_services
from stock_allocation.clock import UTC_TZ, FrozenClock
from stock_allocation.config import AppConfig, DatabaseConfig, ExecutionConfig, RedisConfig, SafetyConfig
from stock_allocation.contracts import OutletDemandSignal

FROZEN_AT = datetime(2024, 3, 1, 10, 0, tzinfo=UTC_TZ)


@pytest.fixture
def redis_client():
    client = FakeStrictRedis()
    client.flushall()
    yield client
    client.flushall()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(fixed=FROZEN_AT)


@pytest.fixture
def make_services(tmp_path, redis_client) -> Callable[..., AllocationServices]:
    """Build an isolated service graph; keyword overrides go to the nested settings."""

    counter = {"n": 0}

    def _build(
        *,
        clock: FrozenClock | None = None,
        registry: CollectorRegistry | None = None,
        execution: Dict | None = None,
        safety: Dict | None = None,
    ) -> AllocationServices:
        counter["n"] += 1
        db_path = tmp_path / f"allocation-{counter['n']}.db"
        config = AppConfig(
            database=DatabaseConfig(dsn=f"sqlite:///{db_path}"),
            redis=RedisConfig(namespace=f"test-{counter['n']}"),
            execution=ExecutionConfig(**(execution or {})),
            safety=SafetyConfig(**(safety or {})),
        )
        return build_services(
            config,
            redis_client=redis_client,
            clock=clock or FrozenClock(fixed=FROZEN_AT),
            registry=registry or CollectorRegistry(),
        )

    return _build


@pytest.fixture
def services(make_services, clock, registry) -> AllocationServices:
    return make_services(clock=clock, registry=registry)


def make_signals(
    weights: Iterable[Tuple[str, float]],
    *,
    product_id: str = "p1",
    capacity: Dict[str, int] | None = None,
) -> list[OutletDemandSignal]:
    capacity = capacity or {}
    return [
        OutletDemandSignal(
            outlet_id=outlet_id,
            product_id=product_id,
            current_stock=0,
            demand_weight=weight,
            capacity=capacity.get(outlet_id),
        )
        for outlet_id, weight in weights
    ]


def seed_stock(services: AllocationServices, quantities: Dict[Tuple[str, str], int]) -> None:
    with services.uow_factory() as uow:
        for (outlet_id, product_id), quantity in quantities.items():
            uow.stock.set_quantity(outlet_id, product_id, quantity, now=services.clock.now())


def stock_levels(services: AllocationServices) -> Dict[Tuple[str, str], int]:
    with services.uow_factory() as uow:
        return uow.stock.snapshot()


@pytest.fixture
def signal_factory() -> Callable[..., list[OutletDemandSignal]]:
    return make_signals


@pytest.fixture
def seed() -> Callable[[AllocationServices, Dict[Tuple[str, str], int]], None]:
    return seed_stock


@pytest.fixture
def levels() -> Callable[[AllocationServices], Dict[Tuple[str, str], int]]:
    return stock_levels
