"""Lineage querying - filter predicate, sorting and summary stats.

Used by the alarms API on top of engine.get_lineages().
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from services.alarm_triage.config import AGED_THRESHOLD, PRIORITY_MAX, PRIORITY_MIN
from services.alarm_triage.triage import TriageStatus

if TYPE_CHECKING:
    from services.alarm_triage import LineageView

SORT_KEYS = (
    "date_time", "server", "site", "point", "value",
    "priority", "acknowledged", "discarded", "age",
)

_NUMBER_RE = re.compile(r"-?\d+([.,]\d+)?")


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def number_from_value(value: str) -> float | None:
    """'23,5 °C' -> 23.5; None when the value holds no number."""
    m = _NUMBER_RE.search(value or "")
    return float(m.group(0).replace(",", ".")) if m else None


@dataclass(frozen=True)
class LineageFilter:
    site: str = ""
    point: str = ""
    value: str = ""
    date_from: datetime | None = None
    date_to: datetime | None = None
    priority_min: int = PRIORITY_MIN
    priority_max: int = PRIORITY_MAX
    acknowledged: bool | None = None
    discarded: bool | None = None
    status: TriageStatus | None = None

    def __call__(self, view: LineageView) -> bool:
        rep = view.representative
        if self.status is not None and view.status is not self.status:
            return False
        if self.site and self.site.strip().lower() not in rep.site.lower():
            return False
        if self.point and self.point.strip().lower() not in rep.point.lower():
            return False
        if self.value and self.value.strip().lower() not in rep.value.lower():
            return False
        ts = rep.created_at_adjusted
        if self.date_from is not None and ts < _as_utc(self.date_from):
            return False
        if self.date_to is not None and ts > _as_utc(self.date_to):
            return False
        if not self.priority_min <= rep.priority <= self.priority_max:
            return False
        if self.acknowledged is not None and rep.acknowledged != self.acknowledged:
            return False
        if self.discarded is not None and rep.discarded != self.discarded:
            return False
        return True


def _value_key(view: LineageView):
    num = number_from_value(view.representative.value)
    # numbers sort before free text
    return (0, num, "") if num is not None else (1, 0.0, view.representative.value)


def sort_lineages(
    views: list[LineageView],
    key: str = "date_time",
    direction: str = "desc",
    now: datetime | None = None,
) -> list[LineageView]:
    if key not in SORT_KEYS:
        raise ValueError(f"unknown sort key: {key}")
    now = _as_utc(now or datetime.now(timezone.utc))
    reverse = direction == "desc"

    if key == "age":
        # age grows as the timestamp gets older
        return sorted(
            views,
            key=lambda v: now - v.representative.created_at_adjusted,
            reverse=reverse,
        )

    getters = {
        "date_time": lambda v: v.representative.created_at_adjusted,
        "server": lambda v: v.key.source,
        "site": lambda v: v.key.site,
        "point": lambda v: v.key.point,
        "value": _value_key,
        "priority": lambda v: v.representative.priority,
        "acknowledged": lambda v: v.representative.acknowledged,
        "discarded": lambda v: v.representative.discarded,
    }
    return sorted(views, key=getters[key], reverse=reverse)


def lineage_stats(views: list[LineageView], now: datetime | None = None) -> dict:
    now = _as_utc(now or datetime.now(timezone.utc))
    total = len(views)
    acknowledged = sum(1 for v in views if v.representative.acknowledged)
    discarded = sum(1 for v in views if v.representative.discarded)
    aged = sum(
        1 for v in views
        if (now - v.representative.created_at_adjusted).total_seconds() > AGED_THRESHOLD
    )
    by_status = {s.value: 0 for s in TriageStatus}
    for v in views:
        by_status[v.status.value] += 1
    return {
        "total": total,
        "acknowledged": acknowledged,
        "not_acknowledged": total - acknowledged,
        "discarded": discarded,
        "not_discarded": total - discarded,
        "up_to_2h": total - aged,
        "older_than_2h": aged,
        "by_status": by_status,
    }
