"""
Staleness Scheduler — decides which profiles and pairs need recomputation.

A profile is stale when it was never computed or is older than the cutoff.
A correlation is stale under the same rule, or when either member item's
consumption rows changed after the correlation was last calculated
(ingestion stamps Item.consumption_modified_at).

Pair enumeration for a refresh is bounded: only items with consumption in
the window are paired, and only when they share a category or their
consumption windows overlap.
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from analytics.correlation import canonical_pair

Pair = tuple[uuid.UUID, uuid.UUID]


class RefreshScope(str, Enum):
    ALL = "all"
    CATEGORY = "category"
    STALE = "stale"


@dataclass(frozen=True)
class ActivityWindow:
    """First and last consumption date of an item inside the lookback window."""

    item_id: uuid.UUID
    category_id: uuid.UUID | None
    first_date: date
    last_date: date


def _older_than(timestamp: datetime | None, now: datetime, cutoff: timedelta) -> bool:
    return timestamp is None or now - timestamp > cutoff


def is_profile_stale(item: Any, now: datetime, cutoff: timedelta) -> bool:
    return _older_than(item.last_statistics_update, now, cutoff)


def is_correlation_stale(
    correlation: Any,
    item_a: Any,
    item_b: Any,
    now: datetime,
    cutoff: timedelta,
) -> bool:
    last = correlation.last_calculated
    if _older_than(last, now, cutoff):
        return True
    for item in (item_a, item_b):
        modified = getattr(item, "consumption_modified_at", None)
        if modified is not None and modified > last:
            return True
    return False


def windows_overlap(a: ActivityWindow, b: ActivityWindow) -> bool:
    return a.first_date <= b.last_date and b.first_date <= a.last_date


def candidate_pairs(windows: Sequence[ActivityWindow]) -> set[Pair]:
    """
    Canonical pairs of items that share a category or overlap in time.

    Overlaps come from a sweep over windows sorted by first date, so only
    intersecting windows are ever compared.
    """
    pairs: set[Pair] = set()

    by_category: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    for window in windows:
        if window.category_id is not None:
            by_category[window.category_id].append(window.item_id)
    for members in by_category.values():
        for i, first in enumerate(members):
            for second in members[i + 1 :]:
                pairs.add(canonical_pair(first, second))

    active: list[ActivityWindow] = []
    for window in sorted(windows, key=lambda w: (w.first_date, w.last_date)):
        active = [w for w in active if w.last_date >= window.first_date]
        for other in active:
            pairs.add(canonical_pair(other.item_id, window.item_id))
        active.append(window)

    return pairs


def candidate_pairs_for_item(item_id: uuid.UUID, windows: Sequence[ActivityWindow]) -> set[Pair]:
    """The candidate pairs that contain item_id; empty when it has no activity."""
    own = next((w for w in windows if w.item_id == item_id), None)
    if own is None:
        return set()
    return {
        canonical_pair(item_id, other.item_id)
        for other in windows
        if other.item_id != item_id
        and ((own.category_id is not None and other.category_id == own.category_id) or windows_overlap(own, other))
    }


@dataclass
class RefreshPlan:
    profile_item_ids: list[uuid.UUID] = field(default_factory=list)
    pairs: list[Pair] = field(default_factory=list)


def plan_refresh(
    items: Iterable[Any],
    correlations: Iterable[Any],
    windows: Sequence[ActivityWindow],
    scope: RefreshScope,
    now: datetime,
    cutoff: timedelta,
) -> RefreshPlan:
    """
    Select the units of work for one batch pass.

    items: active catalog rows already filtered to the scope's category.
    correlations: existing active correlation rows.
    ALL / CATEGORY recompute everything in reach; STALE keeps only stale units.
    """
    items_by_id = {item.item_id: item for item in items}
    in_scope_windows = [w for w in windows if w.item_id in items_by_id]

    existing = {}
    for corr in correlations:
        if corr.item_low_id in items_by_id and corr.item_high_id in items_by_id:
            existing[(corr.item_low_id, corr.item_high_id)] = corr

    pairs = candidate_pairs(in_scope_windows) | set(existing)

    if scope is RefreshScope.STALE:
        profile_ids = [item_id for item_id, item in items_by_id.items() if is_profile_stale(item, now, cutoff)]
        stale_pairs = []
        for pair in pairs:
            corr = existing.get(pair)
            if corr is None or is_correlation_stale(corr, items_by_id[pair[0]], items_by_id[pair[1]], now, cutoff):
                stale_pairs.append(pair)
        pairs_out = stale_pairs
    else:
        profile_ids = list(items_by_id)
        pairs_out = list(pairs)

    return RefreshPlan(profile_item_ids=sorted(profile_ids), pairs=sorted(pairs_out))
