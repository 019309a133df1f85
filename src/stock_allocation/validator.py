"""Normalization and bounds checking for allocation policies."""
from __future__ import annotations

import math
import unicodedata
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Tuple, Type, TypeVar, Union

from .contracts import AllocationMethod, AllocationPolicy, RoundingMethod
from .errors import FieldError, ValidationError

ZERO_WIDTH_CHARS = {"\u200c", "\u200d", "\u200e", "\u200f", "\ufeff"}
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
POWER_FACTOR_RANGE = (0.1, 10.0)
PCT_RANGE = (0.0, 100.0)

DEFAULTS: Mapping[str, Any] = {
    "method": AllocationMethod.PROPORTIONAL,
    "power_factor": 2.0,
    "min_allocation_pct": 5.0,
    "max_allocation_pct": 50.0,
    "rounding_method": RoundingMethod.LARGEST_REMAINDER,
    "safety_checks_enabled": True,
    "logging_enabled": True,
    "is_active": True,
    "is_preset": False,
}

# Field names used by older payloads.
ALIASES: Mapping[str, str] = {"allocation_method": "method"}

_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off"}

E = TypeVar("E", AllocationMethod, RoundingMethod)


@dataclass(frozen=True)
class Valid:
    policy: AllocationPolicy
    ok: bool = True


@dataclass(frozen=True)
class Invalid:
    errors: Tuple[FieldError, ...]
    ok: bool = False


ValidationOutcome = Union[Valid, Invalid]


class _Rejected(ValueError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def _normalize_text(value: object) -> str:
    text = unicodedata.normalize("NFKC", str(value)) if value is not None else ""
    for char in ZERO_WIDTH_CHARS:
        text = text.replace(char, "")
    return text.strip()


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not _normalize_text(value))


def _normalize_float(value: object, *, field_name: str) -> float:
    if isinstance(value, bool):
        raise _Rejected("NOT_NUMERIC", f"{field_name} must be a number")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(_normalize_text(value))
        except ValueError as exc:
            raise _Rejected("NOT_NUMERIC", f"{field_name} must be a number") from exc
    if not math.isfinite(number):
        raise _Rejected("NOT_NUMERIC", f"{field_name} must be a finite number")
    return number


def _normalize_enum(value: object, enum_type: Type[E], *, field_name: str) -> E:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, bool):
        raise _Rejected("NOT_NUMERIC", f"{field_name} must be a number")
    text = _normalize_text(value) if isinstance(value, str) else value
    if isinstance(text, str):
        key = text.upper().replace("-", "_").replace(" ", "_")
        if key in enum_type.__members__:
            return enum_type[key]
    try:
        number = float(text)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise _Rejected("NOT_NUMERIC", f"{field_name} must be a number") from exc
    if not number.is_integer():
        raise _Rejected("INVALID_CHOICE", f"{field_name} must be one of {_choices(enum_type)}")
    try:
        return enum_type(int(number))
    except ValueError as exc:
        raise _Rejected("INVALID_CHOICE", f"{field_name} must be one of {_choices(enum_type)}") from exc


def _choices(enum_type: Type[E]) -> str:
    return ", ".join(f"{member.value} ({member.name.lower()})" for member in enum_type)


def _normalize_bool(value: object, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    text = _normalize_text(value).lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise _Rejected("INVALID_BOOLEAN", f"{field_name} must be a boolean")


class ConfigValidator:
    """Collects every field error of a raw policy payload in a single pass."""

    def validate(self, raw: Mapping[str, Any]) -> ValidationOutcome:
        data = {ALIASES.get(key, key): value for key, value in raw.items()}
        errors: List[FieldError] = []
        values: dict[str, Any] = {}

        def reject(field_name: str, code: str, message: str) -> None:
            errors.append(FieldError(field=field_name, code=code, message=message))

        name = _normalize_text(data.get("name"))
        if not name:
            reject("name", "REQUIRED", "name is required")
        elif len(name) > NAME_MAX_LENGTH:
            reject("name", "TOO_LONG", f"name must be at most {NAME_MAX_LENGTH} characters")
        values["name"] = name

        description = _normalize_text(data.get("description"))
        if len(description) > DESCRIPTION_MAX_LENGTH:
            reject(
                "description",
                "TOO_LONG",
                f"description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            )
        values["description"] = description

        for field_name, enum_type in (("method", AllocationMethod), ("rounding_method", RoundingMethod)):
            value = data.get(field_name)
            if _is_blank(value):
                values[field_name] = DEFAULTS[field_name]
                continue
            try:
                values[field_name] = _normalize_enum(value, enum_type, field_name=field_name)
            except _Rejected as exc:
                reject(field_name, exc.code, str(exc))

        for field_name in ("power_factor", "min_allocation_pct", "max_allocation_pct"):
            value = data.get(field_name)
            if _is_blank(value):
                values[field_name] = DEFAULTS[field_name]
                continue
            try:
                values[field_name] = _normalize_float(value, field_name=field_name)
            except _Rejected as exc:
                reject(field_name, exc.code, str(exc))

        for field_name in ("safety_checks_enabled", "logging_enabled", "is_active", "is_preset"):
            value = data.get(field_name)
            if _is_blank(value):
                values[field_name] = DEFAULTS[field_name]
                continue
            try:
                values[field_name] = _normalize_bool(value, field_name=field_name)
            except _Rejected as exc:
                reject(field_name, exc.code, str(exc))

        power_factor = values.get("power_factor")
        if power_factor is not None and not POWER_FACTOR_RANGE[0] <= power_factor <= POWER_FACTOR_RANGE[1]:
            reject(
                "power_factor",
                "OUT_OF_RANGE",
                f"power_factor must be between {POWER_FACTOR_RANGE[0]} and {POWER_FACTOR_RANGE[1]}",
            )

        in_range = True
        for field_name in ("min_allocation_pct", "max_allocation_pct"):
            pct = values.get(field_name)
            if pct is None:
                in_range = False
            elif not PCT_RANGE[0] <= pct <= PCT_RANGE[1]:
                in_range = False
                reject(field_name, "OUT_OF_RANGE", f"{field_name} must be between 0 and 100")
        if in_range and values["min_allocation_pct"] >= values["max_allocation_pct"]:
            reject(
                "min_allocation_pct",
                "MIN_NOT_BELOW_MAX",
                "min_allocation_pct must be less than max_allocation_pct",
            )

        if errors:
            return Invalid(errors=tuple(errors))
        return Valid(policy=AllocationPolicy(**values))

    def validate_or_raise(self, raw: Mapping[str, Any]) -> AllocationPolicy:
        outcome = self.validate(raw)
        if isinstance(outcome, Invalid):
            raise ValidationError(outcome.errors)
        return outcome.policy

    def revalidate(self, policy: AllocationPolicy) -> ValidationOutcome:
        """Re-check a stored policy, keeping its identity and audit fields."""

        outcome = self.validate(policy.snapshot())
        if isinstance(outcome, Invalid):
            return outcome
        return Valid(
            policy=replace(
                outcome.policy,
                id=policy.id,
                created_by=policy.created_by,
                created_at=policy.created_at,
                updated_by=policy.updated_by,
                updated_at=policy.updated_at,
            )
        )


__all__ = ["ConfigValidator", "DEFAULTS", "Invalid", "Valid", "ValidationOutcome"]
