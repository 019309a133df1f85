"""Run identifiers and lock keys."""
from __future__ import annotations

import hashlib
import json
import unicodedata
from typing import Any
from uuid import uuid4

from .contracts import AllocationPolicy

ZERO_WIDTH = {"\u200c", "\u200d", "\ufeff"}
RUN_ID_MAX_LENGTH = 64
INLINE_PREFIX = "inline-"

# Fields that define what a policy computes; identity and audit fields are excluded.
_CONTENT_FIELDS = (
    "method",
    "power_factor",
    "min_allocation_pct",
    "max_allocation_pct",
    "rounding_method",
    "safety_checks_enabled",
    "name",
)


def normalize_identifier(value: Any) -> str:
    if value is None:
        return ""
    text = unicodedata.normalize("NFKC", str(value))
    return "".join(ch for ch in text if ch not in ZERO_WIDTH).strip()


def normalize_payload(payload: Any) -> str:
    """Deterministic JSON rendering used for hashing."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def policy_key(policy: AllocationPolicy) -> str:
    """Lock scope: the stored id, or a content hash for inline policies."""

    if policy.id is not None:
        return f"policy-{policy.id}"
    snapshot = policy.snapshot()
    material = normalize_payload({name: snapshot[name] for name in _CONTENT_FIELDS})
    return INLINE_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def new_run_id() -> str:
    return uuid4().hex


def normalize_run_id(value: Any) -> str:
    run_id = normalize_identifier(value)
    if not run_id or len(run_id) > RUN_ID_MAX_LENGTH:
        raise ValueError(f"run_id must be 1..{RUN_ID_MAX_LENGTH} characters")
    return run_id


__all__ = ["new_run_id", "normalize_identifier", "normalize_payload", "normalize_run_id", "policy_key"]
