"""Unified lineage history: comments + status changes in one timeline.

Recomputed from both logs on every call, never cached, so entries written
by an automatic reset show up without the caller knowing about it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from services.alarm_triage.audit_store import CommentEntry, StatusChangeEntry
from services.alarm_triage.triage import StatusReason

HistoryKind = Literal["comment", "status"]

# Equal timestamps: the status change is listed after the comment
_KIND_ORDER = {"comment": 0, "status": 1}


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    kind: HistoryKind
    text: str


def describe_status_change(entry: StatusChangeEntry) -> str:
    if entry.reason is StatusReason.AUTO_NEW_OCCURRENCE:
        return f"Status automatically reset to {entry.status.label} (new occurrence detected)"
    return f"Status changed to {entry.status.label} by user"


def merge_history(
    comments: list[CommentEntry],
    status_changes: list[StatusChangeEntry],
) -> list[HistoryEntry]:
    keyed = [
        ((c.timestamp, _KIND_ORDER["comment"], c.id), HistoryEntry(c.timestamp, "comment", c.text))
        for c in comments
    ]
    keyed += [
        ((s.timestamp, _KIND_ORDER["status"], s.id),
         HistoryEntry(s.timestamp, "status", describe_status_change(s)))
        for s in status_changes
    ]
    keyed.sort(key=lambda item: item[0])
    return [entry for _, entry in keyed]
