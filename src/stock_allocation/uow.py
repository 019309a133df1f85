"""Unit of work spanning one database transaction."""
from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .repository import (
    AllocationLineRepository,
    ExecutionRepository,
    PolicyRepository,
    StockRepository,
)


class UnitOfWorkError(RuntimeError):
    """Wraps storage errors raised while committing."""


class UnitOfWork(AbstractContextManager):
    """Commits on clean exit, rolls back when the block raises."""

    session: Session
    policies: PolicyRepository
    executions: ExecutionRepository
    lines: AllocationLineRepository
    stock: StockRepository

    def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc:
                self.rollback()
            elif not getattr(self, "_skip_commit", False):
                self.commit()
        finally:
            self.close()
        return False


SessionFactory = Callable[[], Session]


@dataclass
class SQLAlchemyUnitOfWork(UnitOfWork):
    session_factory: SessionFactory
    _skip_commit: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.session = self.session_factory()
        self.policies = PolicyRepository(self.session)
        self.executions = ExecutionRepository(self.session)
        self.lines = AllocationLineRepository(self.session)
        self.stock = StockRepository(self.session)

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise UnitOfWorkError("COMMIT_FAILED") from exc

    def rollback(self) -> None:
        self._skip_commit = True
        self.session.rollback()

    def close(self) -> None:
        self.session.close()


class UnitOfWorkFactory(Protocol):
    def __call__(self) -> UnitOfWork:
        """Return a ready-to-use unit of work."""


def sqlalchemy_uow_factory(session_factory: SessionFactory) -> UnitOfWorkFactory:
    def factory() -> UnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory)

    return factory


__all__ = [
    "SQLAlchemyUnitOfWork",
    "UnitOfWork",
    "UnitOfWorkError",
    "UnitOfWorkFactory",
    "sqlalchemy_uow_factory",
]
