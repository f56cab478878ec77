"""Occurrence records and lineage grouping.

An occurrence is one alarm instance returned by one source in one cycle.
A lineage is every occurrence sharing (source label, site, point): the same
alarm point, however many times it fired. Grouping is a pure function.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple


class LineageKey(NamedTuple):
    source: str
    site: str
    point: str

    def as_dict(self) -> dict:
        return {"source": self.source, "site": self.site, "point": self.point}


@dataclass(frozen=True)
class OccurrenceRecord:
    id: str                     # "{source_id}_{native_id}"
    source_id: int
    native_id: str
    source_label: str
    created_at: datetime        # as reported by the source
    created_at_adjusted: datetime
    site: str
    point: str
    value: str
    priority: int
    acknowledged: bool
    discarded: bool
    message: str | None = None

    @property
    def lineage_key(self) -> LineageKey:
        return LineageKey(self.source_label, self.site, self.point)


@dataclass(frozen=True)
class Lineage:
    key: LineageKey
    representative: OccurrenceRecord
    count: int
    history: tuple[OccurrenceRecord, ...] = field(default_factory=tuple)


def _recency(occ: OccurrenceRecord) -> tuple[datetime, str]:
    # id breaks timestamp ties so the result never depends on input order
    return (occ.created_at_adjusted, occ.id)


def group_lineages(occurrences: list[OccurrenceRecord]) -> list[Lineage]:
    """Partition occurrences into lineages, newest lineage first."""
    groups: dict[LineageKey, list[OccurrenceRecord]] = defaultdict(list)
    for occ in occurrences:
        groups[occ.lineage_key].append(occ)

    lineages = []
    for key, members in groups.items():
        history = tuple(sorted(members, key=_recency, reverse=True))
        lineages.append(Lineage(
            key=key,
            representative=history[0],
            count=len(history),
            history=history,
        ))

    lineages.sort(key=lambda ln: (_recency(ln.representative), ln.key), reverse=True)
    return lineages
