"""Alarm triage engine.

Entry point: AlarmTriageEngine. Owns one poll scheduler, one
previous-cycle counts map and the triage stores. Each instance is
independent, so tests can run several side by side.

Cycle: fan-out ingestion -> lineage grouping -> occurrence-change detection
-> triage state re-derivation -> countdown reset.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from services.alarm_triage.audit_store import AuditLogStore, utcnow
from services.alarm_triage.config import REDIS_CHANNEL_CYCLES, REDIS_CHANNEL_TRIAGE
from services.alarm_triage.detector import OccurrenceChangeDetector
from services.alarm_triage.history import HistoryEntry, merge_history
from services.alarm_triage.ingestion import (
    ClientFactory, FanOutCollector, IngestionAdapter, default_client_factory,
)
from services.alarm_triage.lineage import Lineage, LineageKey, OccurrenceRecord, group_lineages
from services.alarm_triage.mirror import MirrorNotifier, is_relevant
from services.alarm_triage.registry import SourceRegistry
from services.alarm_triage.scheduler import PollScheduler
from services.alarm_triage.triage import (
    StatusReason, StatusTransition, TriageStateMachine, TriageStatus,
    promote_on_comment,
)

logger = logging.getLogger("triage.engine")

__all__ = [
    "AlarmTriageEngine",
    "CycleResult",
    "LineageKey",
    "LineageView",
    "TriageStatus",
]


@dataclass(frozen=True)
class LineageView:
    lineage: Lineage
    status: TriageStatus

    @property
    def key(self) -> LineageKey:
        return self.lineage.key

    @property
    def representative(self) -> OccurrenceRecord:
        return self.lineage.representative

    @property
    def count(self) -> int:
        return self.lineage.count


@dataclass
class CycleResult:
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    lineage_count: int = 0
    occurrence_count: int = 0
    failures: dict[int, str] = field(default_factory=dict)
    new_occurrences: list[LineageKey] = field(default_factory=list)
    stale: bool = False
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "lineage_count": self.lineage_count,
            "occurrence_count": self.occurrence_count,
            "failures": {str(k): v for k, v in self.failures.items()},
            "failure_count": len(self.failures),
            "new_occurrences": [k.as_dict() for k in self.new_occurrences],
            "stale": self.stale,
            "error": self.error,
        }


CycleListener = Callable[[CycleResult], Awaitable[None]]


class AlarmTriageEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis | None = None,
        *,
        client_factory: ClientFactory = default_client_factory,
        interval: float | None = None,
        source_timeout: float | None = None,
        mirror_enabled: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis = redis
        self.client_factory = client_factory
        self._clock = clock
        self.mirror_enabled = (
            settings.MIRROR_ENABLED if mirror_enabled is None else mirror_enabled
        )

        self.registry = SourceRegistry(session_factory)
        self.store = AuditLogStore(session_factory)
        self.collector = FanOutCollector(IngestionAdapter(client_factory, source_timeout))
        self.detector = OccurrenceChangeDetector()
        self.state_machine = TriageStateMachine(self.store)
        self.mirror = MirrorNotifier(client_factory, settings.MIRROR_TIMEOUT)
        self.scheduler: PollScheduler[CycleResult] = PollScheduler(
            self._run_cycle,
            interval=interval if interval is not None else settings.POLL_INTERVAL,
        )

        self._views: dict[LineageKey, LineageView] = {}
        self._failures: dict[int, str] = {}
        self._listeners: list[CycleListener] = []
        self._state_lock = asyncio.Lock()
        self._mirror_tasks: set[asyncio.Task] = set()
        self.last_result: CycleResult | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the poll timer; the first cycle runs immediately."""
        self.scheduler.start()

    async def stop(self) -> None:
        """Clear the timer and cancel pending mirror notes."""
        await self.scheduler.stop()
        for task in list(self._mirror_tasks):
            task.cancel()
        if self._mirror_tasks:
            await asyncio.gather(*self._mirror_tasks, return_exceptions=True)
        self._mirror_tasks.clear()
        logger.info("AlarmTriageEngine stopped")

    # ------------------------------------------------------------------
    # Produced interface
    # ------------------------------------------------------------------

    def on_cycle_complete(self, listener: CycleListener) -> None:
        self._listeners.append(listener)

    def get_countdown(self) -> int:
        return self.scheduler.seconds_left()

    @property
    def in_flight(self) -> bool:
        return self.scheduler.in_flight

    @property
    def failures(self) -> dict[int, str]:
        return dict(self._failures)

    async def trigger_manual_refresh(self) -> CycleResult:
        return await self.scheduler.run_now("manual")

    def get_lineages(
        self, predicate: Callable[[LineageView], bool] | None = None,
    ) -> list[LineageView]:
        views = list(self._views.values())
        if predicate is None:
            return views
        return [v for v in views if predicate(v)]

    def get_lineage(self, key: LineageKey) -> LineageView | None:
        return self._views.get(key)

    async def submit_comment(self, key: LineageKey, text: str) -> TriageStatus | None:
        """Append a user comment; promotes the status to handled unless completed."""
        text = (text or "").strip()
        if not text:
            return None

        async with self._state_lock:
            current = await self.store.get_status(key)
            promoted = promote_on_comment(current)
            at = self._clock()
            if promoted is not current:
                await self.store.set_status(key, promoted, at=at, comment=text)
            else:
                await self.store.append_comment(key, text, at=at)
            self._set_view_status(key, promoted)

        if promoted is not current:
            await self._publish_status(key, current, promoted, "comment")
        self._schedule_mirror(key, promoted, text)
        return promoted

    async def set_status(self, key: LineageKey, status: TriageStatus | str) -> TriageStatus:
        """Explicit user status change; always logged with reason=user."""
        status = TriageStatus(status)
        async with self._state_lock:
            current = await self.store.get_status(key)
            await self.store.set_status(key, status, at=self._clock(), reason=StatusReason.USER)
            self._set_view_status(key, status)

        await self._publish_status(key, current, status, StatusReason.USER.value)
        self._schedule_mirror(key, status, "")
        return status

    async def get_history(self, key: LineageKey) -> list[HistoryEntry]:
        comments = await self.store.list_comments(key)
        status_changes = await self.store.list_status_changes(key)
        return merge_history(comments, status_changes)

    async def flush_mirrors(self) -> None:
        """Wait for mirror notes already dispatched."""
        if self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, trigger: str) -> CycleResult:
        result = CycleResult(trigger=trigger, started_at=self._clock())
        transitions: list[StatusTransition] = []
        try:
            sources = await self.registry.list_enabled()
            collection = await self.collector.collect(sources)
            result.failures = dict(collection.failures)
            self._failures = result.failures

            if collection.all_failed:
                # keep what is on screen, flag the failure
                result.stale = True
                logger.warning(
                    "All %d alarm sources failed - keeping previous lineages",
                    collection.attempted,
                )
            else:
                lineages = group_lineages(collection.occurrences)
                changes = self.detector.detect(lineages)
                async with self._state_lock:
                    statuses, transitions = await self.state_machine.apply_cycle(
                        lineages, changes, self._clock(),
                    )
                    self.detector.commit(lineages)
                    self._views = {
                        ln.key: LineageView(ln, statuses[ln.key]) for ln in lineages
                    }
                result.lineage_count = len(lineages)
                result.occurrence_count = len(collection.occurrences)
                result.new_occurrences = list(changes)
        except Exception as exc:
            result.stale = True
            result.error = str(exc)
            logger.error("Triage cycle error: %s", exc, exc_info=True)

        result.finished_at = self._clock()
        self.last_result = result
        logger.info(
            "Cycle (%s): %d lineages / %d occurrences, %d new, %d source failures%s",
            trigger, result.lineage_count, result.occurrence_count,
            len(result.new_occurrences), len(result.failures),
            " [stale]" if result.stale else "",
        )

        for t in transitions:
            await self._publish_status(t.key, t.previous, t.status, t.rule.value)
        await self._publish(REDIS_CHANNEL_CYCLES, {"type": "cycle", **result.as_dict()})
        await self._notify_listeners(result)
        return result

    async def _notify_listeners(self, result: CycleResult) -> None:
        for listener in self._listeners:
            try:
                await listener(result)
            except Exception as exc:
                logger.error("Cycle listener error: %s", exc, exc_info=True)

    def _set_view_status(self, key: LineageKey, status: TriageStatus) -> None:
        view = self._views.get(key)
        if view is not None:
            self._views[key] = replace(view, status=status)

    # ------------------------------------------------------------------
    # Mirror + events
    # ------------------------------------------------------------------

    def _schedule_mirror(self, key: LineageKey, status: TriageStatus, comment: str) -> None:
        if not self.mirror_enabled or not is_relevant(status, comment):
            return
        view = self._views.get(key)
        if view is None:
            logger.debug("Mirror skipped: %s not in current lineages", key)
            return
        task = asyncio.create_task(
            self._mirror(view.representative, status, comment),
            name="triage_mirror_note",
        )
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _mirror(self, occurrence: OccurrenceRecord, status: TriageStatus, comment: str) -> None:
        try:
            sources = await self.registry.list_enabled()
            await self.mirror.notify(occurrence, status, comment, sources)
        except Exception as exc:
            logger.warning("Mirror dispatch failed: %s", exc)

    async def _publish_status(
        self,
        key: LineageKey,
        previous: TriageStatus | None,
        status: TriageStatus,
        reason: str,
    ) -> None:
        await self._publish(REDIS_CHANNEL_TRIAGE, {
            "type": "triage_status",
            "lineage": key.as_dict(),
            "previous": previous.value if previous else None,
            "status": status.value,
            "reason": reason,
        })

    async def _publish(self, channel: str, payload: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(channel, json.dumps(payload, default=str))
        except Exception as exc:
            logger.warning("Redis publish to %s failed: %s", channel, exc)
