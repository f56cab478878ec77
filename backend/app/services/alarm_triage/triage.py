"""Triage state machine.

Status is re-derived for every lineage once per cycle, in this order:

1. upstream override - representative acknowledged or discarded -> completed
2. new-occurrence reset - lineage fired again -> not_handled (+ audit entries)
3. stored status - whatever was persisted, not_handled if never set

User actions (comment promotion, explicit status) happen between cycles and
are subject to rule 1 on the next cycle.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from services.alarm_triage.config import STATUS_LABELS

if TYPE_CHECKING:
    from services.alarm_triage.audit_store import AuditLogStore
    from services.alarm_triage.detector import OccurrenceChange
    from services.alarm_triage.lineage import Lineage, LineageKey, OccurrenceRecord

logger = logging.getLogger("triage.state_machine")


class TriageStatus(str, enum.Enum):
    NOT_HANDLED = "not_handled"
    HANDLED = "handled"
    COMPLETED = "completed"
    OPPORTUNITY = "opportunity"

    @property
    def label(self) -> str:
        return STATUS_LABELS[self.value]


class StatusReason(str, enum.Enum):
    USER = "user"
    AUTO_NEW_OCCURRENCE = "auto_new_occurrence"


class Rule(str, enum.Enum):
    UPSTREAM_OVERRIDE = "upstream_override"
    NEW_OCCURRENCE_RESET = "new_occurrence_reset"
    STORED = "stored"


@dataclass(frozen=True)
class TriageDecision:
    status: TriageStatus
    rule: Rule


@dataclass(frozen=True)
class StatusTransition:
    key: LineageKey
    previous: TriageStatus | None
    status: TriageStatus
    rule: Rule


def derive_status(
    representative: OccurrenceRecord,
    new_occurrence: bool,
    stored: TriageStatus | None,
) -> TriageDecision:
    if representative.acknowledged or representative.discarded:
        return TriageDecision(TriageStatus.COMPLETED, Rule.UPSTREAM_OVERRIDE)
    if new_occurrence:
        return TriageDecision(TriageStatus.NOT_HANDLED, Rule.NEW_OCCURRENCE_RESET)
    return TriageDecision(stored or TriageStatus.NOT_HANDLED, Rule.STORED)


def promote_on_comment(current: TriageStatus | None) -> TriageStatus:
    """A user comment means someone is handling it - unless already completed."""
    if current is TriageStatus.COMPLETED:
        return TriageStatus.COMPLETED
    return TriageStatus.HANDLED


def reset_comment(change: OccurrenceChange) -> str:
    return (
        f"New occurrence detected ({change.current} occurrences, previously "
        f"{change.previous}). Status automatically reset to "
        f"{TriageStatus.NOT_HANDLED.label}."
    )


class TriageStateMachine:

    def __init__(self, store: AuditLogStore):
        self.store = store

    async def apply_cycle(
        self,
        lineages: list[Lineage],
        changes: dict[LineageKey, OccurrenceChange],
        at: datetime,
    ) -> tuple[dict[LineageKey, TriageStatus], list[StatusTransition]]:
        """Derive and persist the status of every lineage of one cycle."""
        stored = await self.store.get_statuses([ln.key for ln in lineages])
        statuses: dict[LineageKey, TriageStatus] = {}
        transitions: list[StatusTransition] = []

        for lineage in lineages:
            key = lineage.key
            current = stored.get(key)
            decision = derive_status(lineage.representative, key in changes, current)

            if decision.rule is Rule.UPSTREAM_OVERRIDE:
                if current is not TriageStatus.COMPLETED:
                    await self.store.set_status(key, TriageStatus.COMPLETED, at=at)
                    transitions.append(StatusTransition(key, current, decision.status, decision.rule))
                    logger.info(
                        "Upstream ack/discard: %s / %s / %s -> completed",
                        key.source, key.site, key.point,
                    )
            elif decision.rule is Rule.NEW_OCCURRENCE_RESET:
                await self.store.set_status(
                    key,
                    TriageStatus.NOT_HANDLED,
                    at=at,
                    reason=StatusReason.AUTO_NEW_OCCURRENCE,
                    comment=reset_comment(changes[key]),
                )
                transitions.append(StatusTransition(key, current, decision.status, decision.rule))
                logger.info(
                    "Auto reset: %s / %s / %s %s -> not_handled",
                    key.source, key.site, key.point,
                    current.value if current else "-",
                )

            statuses[key] = decision.status

        return statuses, transitions
