from __future__ import annotations

from typing import List, Optional

from redis import Redis
from sqlalchemy.exc import IntegrityError

from .contracts import AllocationLineRecord, ExecutionRecord
from .errors import RunConflictError, envelope
from .logging_utils import get_logger
from .uow import UnitOfWorkFactory

logger = get_logger(__name__)

# Delete the lock only while it still carries the caller's owner token.
_RELEASE_SCRIPT = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
    "  return redis.call('DEL', KEYS[1])\n"
    "end\n"
    "return 0"
)


class ExecutionStore:
    """Execution records in SQL plus a per-policy lock in Redis.

    Records are upserted by run id and never deleted. The lock is a
    ``SET NX EX`` key so a crashed process releases it when the TTL expires.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        redis: Redis,
        *,
        namespace: str,
        lock_ttl_seconds: int,
    ) -> None:
        self._uow_factory = uow_factory
        self._redis = redis
        self._namespace = namespace
        self._lock_ttl = lock_ttl_seconds

    def create(self, record: ExecutionRecord) -> None:
        try:
            with self._uow_factory() as uow:
                uow.executions.insert(record)
        except IntegrityError as exc:
            raise RunConflictError(envelope("RUN_ID_CONFLICT", details={"run_id": record.run_id})) from exc

    def save(self, record: ExecutionRecord) -> None:
        with self._uow_factory() as uow:
            uow.executions.upsert(record)

    def find_by_run_id(self, run_id: str) -> Optional[ExecutionRecord]:
        with self._uow_factory() as uow:
            return uow.executions.get(run_id)

    def exists(self, run_id: str) -> bool:
        with self._uow_factory() as uow:
            return uow.executions.exists(run_id)

    def recent(self, limit: int) -> List[ExecutionRecord]:
        if limit < 1:
            raise ValueError("limit must be positive")
        with self._uow_factory() as uow:
            return uow.executions.recent(limit)

    def lines_for(self, run_id: str) -> List[AllocationLineRecord]:
        with self._uow_factory() as uow:
            return uow.lines.for_run(run_id)

    def lock_key(self, policy_key: str) -> str:
        return f"{self._namespace}:lock:{policy_key}"

    def try_lock(self, policy_key: str, *, owner: str = "1") -> bool:
        acquired = bool(self._redis.set(self.lock_key(policy_key), owner, nx=True, ex=self._lock_ttl))
        if not acquired:
            logger.info("policy lock busy", extra={"ctx_policy_key": policy_key})
        return acquired

    def unlock(self, policy_key: str, *, owner: str = "1") -> bool:
        released = bool(self._redis.eval(_RELEASE_SCRIPT, 1, self.lock_key(policy_key), owner))
        if not released:
            logger.warning(
                "policy lock not released",
                extra={"ctx_policy_key": policy_key, "ctx_owner": owner},
            )
        return released

    def is_locked(self, policy_key: str) -> bool:
        return bool(self._redis.exists(self.lock_key(policy_key)))


__all__ = ["ExecutionStore"]
