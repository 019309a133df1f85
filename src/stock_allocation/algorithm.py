"""Pure allocation of stock units across outlets.

``allocate`` turns per-outlet demand signals into integral unit allocations
in five steps: weighting, raw shares, bounded water-filling, rounding and
priority scoring. It never touches storage and equal inputs always produce
equal results.
"""
from __future__ import annotations

import math
import warnings
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple, Union

from .contracts import (
    EQUAL_WEIGHT_FALLBACK,
    MIN_BOUNDS_RELAXED,
    NON_CONVERGENT,
    ROUNDING_DRIFT,
    UNALLOCATED_REMAINDER,
    AllocationLine,
    AllocationMethod,
    AllocationPolicy,
    AllocationResult,
    OutletDemandSignal,
    RoundingMethod,
)
from .errors import ConvergenceWarning

EPS = 1e-9
DEFAULT_MAX_PASSES = 10

TotalUnits = Union[int, Mapping[str, int]]


@dataclass
class _GroupOutcome:
    lines: List[AllocationLine]
    requested: int
    allocated: int
    unallocated: int
    capacity_exceptions: List[Tuple[str, str]] = field(default_factory=list)
    excluded: List[Tuple[str, str]] = field(default_factory=list)
    flags: Set[str] = field(default_factory=set)
    iterations: int = 0
    converged: bool = True


def _check_signal(signal: OutletDemandSignal) -> None:
    if isinstance(signal.current_stock, bool) or not isinstance(signal.current_stock, int) or signal.current_stock < 0:
        raise ValueError(f"current_stock must be a non-negative integer for outlet {signal.outlet_id!r}")
    if not math.isfinite(float(signal.demand_weight)):
        raise ValueError(f"demand_weight must be finite for outlet {signal.outlet_id!r}")
    if signal.capacity is not None and (
        isinstance(signal.capacity, bool) or not isinstance(signal.capacity, int) or signal.capacity < 0
    ):
        raise ValueError(f"capacity must be a non-negative integer for outlet {signal.outlet_id!r}")


def group_signals(signals: Iterable[OutletDemandSignal]) -> Dict[str, List[OutletDemandSignal]]:
    """Group signals by product, each group sorted by outlet id."""

    groups: Dict[str, List[OutletDemandSignal]] = defaultdict(list)
    seen: Set[Tuple[str, str]] = set()
    for signal in signals:
        _check_signal(signal)
        key = (signal.product_id, signal.outlet_id)
        if key in seen:
            raise ValueError(f"duplicate signal for product {key[0]!r} at outlet {key[1]!r}")
        seen.add(key)
        groups[signal.product_id].append(signal)
    for members in groups.values():
        members.sort(key=lambda item: item.outlet_id)
    return dict(groups)


def resolve_totals(total_units: TotalUnits, products: Iterable[str]) -> Dict[str, int]:
    products = list(products)
    if isinstance(total_units, Mapping):
        unknown = sorted(set(total_units) - set(products))
        if unknown:
            raise ValueError(f"total_units names products without signals: {unknown}")
        missing = sorted(set(products) - set(total_units))
        if missing:
            raise ValueError(f"total_units is missing products: {missing}")
        totals = {product: total_units[product] for product in products}
    else:
        totals = {product: total_units for product in products}
    for product, units in totals.items():
        if isinstance(units, bool) or not isinstance(units, int) or units < 0:
            raise ValueError(f"total_units for product {product!r} must be a non-negative integer")
    return totals


def _weights(policy: AllocationPolicy, demands: Sequence[float]) -> List[float]:
    if policy.method is AllocationMethod.SOFTMAX:
        logits = [policy.power_factor * demand for demand in demands]
        top = max(logits)
        return [math.exp(logit - top) for logit in logits]
    return [max(demand, 0.0) for demand in demands]


def _water_fill(
    weights: Sequence[float],
    lo: Sequence[float],
    hi: Sequence[float],
    target: float,
    max_passes: int,
) -> Tuple[List[float], int, bool]:
    """Distribute ``target`` by weight within ``[lo, hi]``.

    Each pass spreads the remaining total over the free outlets and pins the
    violators on whichever side carries the larger total violation.
    """

    count = len(weights)
    pinned: Dict[int, float] = {}
    shares = [0.0] * count
    converged = False
    passes = 0
    while passes < max_passes:
        passes += 1
        shares = _spread(weights, pinned, target)
        free = [index for index in range(count) if index not in pinned]
        if not free:
            converged = abs(sum(shares) - target) <= EPS * max(1.0, target)
            break
        over = [index for index in free if shares[index] > hi[index] + EPS]
        under = [index for index in free if shares[index] < lo[index] - EPS]
        if not over and not under:
            converged = True
            break
        excess = sum(shares[index] - hi[index] for index in over)
        deficit = sum(lo[index] - shares[index] for index in under)
        if excess >= deficit:
            for index in over:
                pinned[index] = hi[index]
        else:
            for index in under:
                pinned[index] = lo[index]
    if not converged:
        shares = _spread(weights, pinned, target)
    return _settle(shares, weights, hi, target), passes, converged


def _spread(weights: Sequence[float], pinned: Mapping[int, float], target: float) -> List[float]:
    shares = [pinned.get(index, 0.0) for index in range(len(weights))]
    free = [index for index in range(len(weights)) if index not in pinned]
    if not free:
        return shares
    remaining = target - sum(pinned.values())
    total_weight = sum(weights[index] for index in free)
    for index in free:
        portion = weights[index] / total_weight if total_weight > 0 else 1.0 / len(free)
        shares[index] = portion * remaining
    return shares


def _settle(shares: List[float], weights: Sequence[float], hi: Sequence[float], target: float) -> List[float]:
    """Force ``0 <= share <= hi`` and ``sum == target``; upper bounds are hard limits."""

    settled = [min(max(share, 0.0), bound) for share, bound in zip(shares, hi)]
    total = sum(settled)
    if total > target + EPS and total > 0:
        scale = target / total
        settled = [share * scale for share in settled]
    for _ in range(len(settled)):
        shortfall = target - sum(settled)
        if shortfall <= EPS:
            break
        open_ = [index for index in range(len(settled)) if hi[index] - settled[index] > EPS]
        if not open_:
            break
        total_weight = sum(weights[index] for index in open_)
        for index in open_:
            portion = weights[index] / total_weight if total_weight > 0 else 1.0 / len(open_)
            settled[index] = min(hi[index], settled[index] + portion * shortfall)
    return settled


def _round_shares(
    shares: Sequence[float],
    outlet_ids: Sequence[str],
    capacities: Sequence[int | None],
    target: int,
    method: RoundingMethod,
) -> List[int]:
    def cap(index: int, units: int) -> int:
        limit = capacities[index]
        return units if limit is None else min(units, limit)

    if method is RoundingMethod.FLOOR:
        return [math.floor(share + EPS) for share in shares]
    if method is RoundingMethod.CEIL:
        return [cap(index, math.ceil(share - EPS)) for index, share in enumerate(shares)]
    if method is RoundingMethod.ROUND_HALF_UP:
        return [cap(index, math.floor(share + 0.5 + EPS)) for index, share in enumerate(shares)]

    units = [math.floor(share + EPS) for share in shares]
    shortfall = target - sum(units)
    order = sorted(range(len(shares)), key=lambda index: (-(shares[index] - units[index]), outlet_ids[index]))
    for index in order:
        if shortfall <= 0:
            break
        if cap(index, units[index] + 1) > units[index]:
            units[index] += 1
            shortfall -= 1
    for index in reversed(order):
        if shortfall >= 0:
            break
        if units[index] > 0:
            units[index] -= 1
            shortfall += 1
    return units


def _allocate_group(
    policy: AllocationPolicy,
    product_id: str,
    members: Sequence[OutletDemandSignal],
    total: int,
    max_passes: int,
) -> _GroupOutcome:
    eligible = [signal for signal in members if signal.capacity != 0]
    outcome = _GroupOutcome(
        lines=[],
        requested=total,
        allocated=0,
        unallocated=0,
        excluded=[(product_id, signal.outlet_id) for signal in members if signal.capacity == 0],
    )
    if not eligible:
        outcome.unallocated = total
        if total:
            outcome.flags.add(UNALLOCATED_REMAINDER)
        return outcome

    raw_weights = _weights(policy, [float(signal.demand_weight) for signal in eligible])
    top_weight = max(raw_weights)
    priorities = [weight / top_weight if top_weight > 0 else 0.0 for weight in raw_weights]
    weights = list(raw_weights)
    if sum(weights) <= 0:
        weights = [1.0] * len(eligible)
        outcome.flags.add(EQUAL_WEIGHT_FALLBACK)

    policy_hi = policy.max_allocation_pct * total / 100.0
    policy_lo = policy.min_allocation_pct * total / 100.0
    hi = [policy_hi if signal.capacity is None else min(policy_hi, float(signal.capacity)) for signal in eligible]
    lo = [min(policy_lo, bound) for bound in hi]

    if sum(hi) >= total - EPS:
        placeable = total
    else:
        placeable = math.floor(sum(hi) + EPS)
    outcome.unallocated = total - placeable
    if outcome.unallocated:
        outcome.flags.add(UNALLOCATED_REMAINDER)

    if sum(lo) > placeable + EPS:
        scale = placeable / sum(lo)
        lo = [bound * scale for bound in lo]
        outcome.flags.add(MIN_BOUNDS_RELAXED)

    shares, outcome.iterations, outcome.converged = _water_fill(weights, lo, hi, float(placeable), max_passes)
    if not outcome.converged:
        outcome.flags.add(NON_CONVERGENT)

    outlet_ids = [signal.outlet_id for signal in eligible]
    capacities = [signal.capacity for signal in eligible]
    units = _round_shares(shares, outlet_ids, capacities, placeable, policy.rounding_method)
    outcome.allocated = sum(units)
    if outcome.allocated != placeable:
        outcome.flags.add(ROUNDING_DRIFT)

    for index, signal in enumerate(eligible):
        if (
            signal.capacity is not None
            and signal.capacity < policy_hi - EPS
            and shares[index] >= signal.capacity - EPS
        ):
            outcome.capacity_exceptions.append((product_id, signal.outlet_id))
        outcome.lines.append(
            AllocationLine(
                product_id=product_id,
                outlet_id=signal.outlet_id,
                allocated_units=units[index],
                priority_score=priorities[index],
                min_units=lo[index],
                max_units=hi[index],
                capacity=signal.capacity,
                projected_stock=signal.current_stock + units[index],
            )
        )
    return outcome


def allocate(
    policy: AllocationPolicy,
    signals: Iterable[OutletDemandSignal],
    total_units: TotalUnits,
    *,
    max_passes: int = DEFAULT_MAX_PASSES,
) -> AllocationResult:
    """Allocate ``total_units`` of each product across its outlets.

    ``total_units`` is either one count applied to every product or a mapping
    of product id to count. Raises ``ValueError`` for malformed signals.
    Emits ``ConvergenceWarning`` when water-filling hits ``max_passes``.
    """

    if max_passes < 1:
        raise ValueError("max_passes must be at least 1")
    groups = group_signals(signals)
    totals = resolve_totals(total_units, groups)

    lines: List[AllocationLine] = []
    capacity_exceptions: List[Tuple[str, str]] = []
    excluded: List[Tuple[str, str]] = []
    flags: Set[str] = set()
    requested = allocated = unallocated = iterations = 0
    converged = True
    for product_id in sorted(groups):
        outcome = _allocate_group(policy, product_id, groups[product_id], totals[product_id], max_passes)
        lines.extend(outcome.lines)
        capacity_exceptions.extend(outcome.capacity_exceptions)
        excluded.extend(outcome.excluded)
        flags.update(outcome.flags)
        requested += outcome.requested
        allocated += outcome.allocated
        unallocated += outcome.unallocated
        iterations = max(iterations, outcome.iterations)
        converged = converged and outcome.converged

    if not converged:
        warnings.warn(
            f"water-filling did not converge within {max_passes} passes; result flagged for review",
            ConvergenceWarning,
            stacklevel=2,
        )

    lines.sort(key=lambda line: (line.product_id, -line.priority_score, line.outlet_id))
    return AllocationResult(
        lines=tuple(lines),
        total_requested=requested,
        total_allocated=allocated,
        unallocated_units=unallocated,
        capacity_exceptions=tuple(capacity_exceptions),
        excluded_outlets=tuple(excluded),
        flags=tuple(sorted(flags)),
        iterations=iterations,
        converged=converged,
    )


__all__ = ["DEFAULT_MAX_PASSES", "EPS", "TotalUnits", "allocate", "group_signals", "resolve_totals"]
