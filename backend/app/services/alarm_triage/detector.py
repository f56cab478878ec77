"""Occurrence-change detection between consecutive poll cycles.

Keeps lineage_key -> occurrence count from the previous cycle (memory only,
empty after restart). detect() only reads the map; commit() replaces it
after the cycle's statuses are stored, so a failed cycle is detected again. A lineage "fired again" when its count grew and it was
already known with a non-zero count; a first sighting is never a new firing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from services.alarm_triage.lineage import Lineage, LineageKey

logger = logging.getLogger("triage.detector")


@dataclass(frozen=True)
class OccurrenceChange:
    key: LineageKey
    previous: int
    current: int


def is_new_occurrence(previous: int, current: int) -> bool:
    return current > previous and previous > 0


class OccurrenceChangeDetector:

    def __init__(self) -> None:
        self._prev_counts: dict[LineageKey, int] = {}

    @property
    def previous_counts(self) -> dict[LineageKey, int]:
        return dict(self._prev_counts)

    def detect(self, lineages: list[Lineage]) -> dict[LineageKey, OccurrenceChange]:
        """Flag re-fired lineages. Leaves the counts map untouched until commit()."""
        prev = self._prev_counts
        changes: dict[LineageKey, OccurrenceChange] = {}

        for lineage in lineages:
            previous = prev.get(lineage.key)
            if previous is None:
                continue
            if is_new_occurrence(previous, lineage.count):
                changes[lineage.key] = OccurrenceChange(lineage.key, previous, lineage.count)
                logger.info(
                    "NEW OCCURRENCE: %s / %s / %s (%d -> %d)",
                    lineage.key.source, lineage.key.site, lineage.key.point,
                    previous, lineage.count,
                )
        return changes

    def commit(self, lineages: list[Lineage]) -> None:
        """Replace the counts map wholesale once the cycle's statuses are stored."""
        self._prev_counts = {ln.key: ln.count for ln in lineages}

    def reset(self) -> None:
        self._prev_counts = {}
