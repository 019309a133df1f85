from __future__ import annotations

from dataclasses import replace
from typing import Any, List, Mapping

from .clock import Clock
from .contracts import AllocationPolicy
from .errors import (
    PolicyInUseError,
    PolicyNotFoundError,
    PresetReadOnlyError,
    envelope,
)
from .logging_utils import get_logger
from .presets import PresetCatalog
from .uow import UnitOfWork, UnitOfWorkFactory
from .validator import NAME_MAX_LENGTH, ConfigValidator

COPY_SUFFIX = " (Copy)"

logger = get_logger(__name__)


def _not_found(policy_id: int) -> PolicyNotFoundError:
    return PolicyNotFoundError(envelope("POLICY_NOT_FOUND", details={"policy_id": policy_id}))


class PolicyService:
    """Policy CRUD; every write goes through ``ConfigValidator``."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        clock: Clock,
        validator: ConfigValidator | None = None,
        presets: PresetCatalog | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._clock = clock
        self._validator = validator or ConfigValidator()
        self._presets = presets or PresetCatalog(validator=self._validator)

    def create(self, raw: Mapping[str, Any], *, actor: str | None = None) -> AllocationPolicy:
        policy = self._validator.validate_or_raise(raw)
        now = self._clock.now()
        policy = replace(
            policy,
            is_preset=False,
            created_by=actor,
            created_at=now,
            updated_by=actor,
            updated_at=now,
        )
        with self._uow_factory() as uow:
            stored = uow.policies.add(policy)
        logger.info("policy created", extra={"ctx_policy_id": stored.id, "ctx_actor": actor})
        return stored

    def update(self, policy_id: int, raw: Mapping[str, Any], *, actor: str | None = None) -> AllocationPolicy:
        policy = self._validator.validate_or_raise(raw)
        with self._uow_factory() as uow:
            current = self._require(uow, policy_id)
            if current.is_preset:
                raise PresetReadOnlyError(envelope("PRESET_READ_ONLY", details={"policy_id": policy_id}))
            stored = uow.policies.update(
                replace(
                    policy,
                    id=current.id,
                    is_preset=False,
                    created_by=current.created_by,
                    created_at=current.created_at,
                    updated_by=actor,
                    updated_at=self._clock.now(),
                )
            )
        logger.info("policy updated", extra={"ctx_policy_id": policy_id, "ctx_actor": actor})
        return stored

    def get(self, policy_id: int) -> AllocationPolicy:
        with self._uow_factory() as uow:
            return self._require(uow, policy_id)

    def list(self, *, active_only: bool = False) -> List[AllocationPolicy]:
        with self._uow_factory() as uow:
            return uow.policies.list(active_only=active_only)

    def delete(self, policy_id: int) -> None:
        with self._uow_factory() as uow:
            current = self._require(uow, policy_id)
            if current.is_preset:
                raise PresetReadOnlyError(envelope("PRESET_READ_ONLY", details={"policy_id": policy_id}))
            if uow.policies.is_referenced(policy_id):
                raise PolicyInUseError(envelope("POLICY_IN_USE", details={"policy_id": policy_id}))
            uow.policies.delete(policy_id)
        logger.info("policy deleted", extra={"ctx_policy_id": policy_id})

    def clone(self, policy_id: int, *, actor: str | None = None) -> AllocationPolicy:
        now = self._clock.now()
        with self._uow_factory() as uow:
            source = self._require(uow, policy_id)
            name = source.name[: NAME_MAX_LENGTH - len(COPY_SUFFIX)] + COPY_SUFFIX
            stored = uow.policies.add(
                replace(
                    source,
                    id=None,
                    name=name,
                    is_preset=False,
                    created_by=actor,
                    created_at=now,
                    updated_by=actor,
                    updated_at=now,
                )
            )
        logger.info("policy cloned", extra={"ctx_policy_id": policy_id, "ctx_clone_id": stored.id})
        return stored

    def preset_names(self) -> List[str]:
        return self._presets.names()

    def load_preset(self, name: str) -> AllocationPolicy:
        return self._presets.load(name)

    def install_presets(self, *, actor: str | None = None) -> List[AllocationPolicy]:
        """Store every bundled preset that is not stored yet; returns the new rows."""

        installed: List[AllocationPolicy] = []
        now = self._clock.now()
        with self._uow_factory() as uow:
            for name in self._presets.names():
                preset = self._presets.load(name)
                if uow.policies.find_preset(preset.name) is not None:
                    continue
                installed.append(
                    uow.policies.add(
                        replace(
                            preset,
                            created_by=actor,
                            created_at=now,
                            updated_by=actor,
                            updated_at=now,
                        )
                    )
                )
        if installed:
            logger.info("presets installed", extra={"ctx_count": len(installed)})
        return installed

    @staticmethod
    def _require(uow: UnitOfWork, policy_id: int) -> AllocationPolicy:
        policy = uow.policies.get(policy_id)
        if policy is None:
            raise _not_found(policy_id)
        return policy


__all__ = ["COPY_SUFFIX", "PolicyService"]
