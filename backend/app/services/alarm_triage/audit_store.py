"""Audit log store - per-lineage status, comment log and status-change log.

Logs are append-only: rows are inserted, never updated or deleted. Each
public call is one committed transaction, so a crash never leaves half of
an entry behind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.triage import TriageComment, TriageStatusChange, TriageStatusRecord
from services.alarm_triage.lineage import LineageKey
from services.alarm_triage.triage import StatusReason, TriageStatus

logger = logging.getLogger("triage.audit_store")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the audit tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class CommentEntry:
    timestamp: datetime
    text: str
    id: int = 0


@dataclass(frozen=True)
class StatusChangeEntry:
    timestamp: datetime
    status: TriageStatus
    reason: StatusReason
    id: int = 0


def _match(model, key: LineageKey):
    return and_(
        model.source_label == key.source,
        model.site_ref == key.site,
        model.point_ref == key.point,
    )


class AuditLogStore:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, key: LineageKey) -> TriageStatus | None:
        async with self.session_factory() as session:
            stmt = select(TriageStatusRecord.status).where(_match(TriageStatusRecord, key))
            raw = (await session.execute(stmt)).scalar_one_or_none()
        return TriageStatus(raw) if raw else None

    async def get_statuses(self, keys: list[LineageKey]) -> dict[LineageKey, TriageStatus]:
        """Bulk read of stored statuses; keys never set are absent."""
        if not keys:
            return {}
        wanted = set(keys)
        sources = {k.source for k in wanted}
        async with self.session_factory() as session:
            stmt = select(TriageStatusRecord).where(
                TriageStatusRecord.source_label.in_(sources)
            )
            rows = (await session.execute(stmt)).scalars().all()
        found = {}
        for row in rows:
            key = LineageKey(row.source_label, row.site_ref, row.point_ref)
            if key in wanted:
                found[key] = TriageStatus(row.status)
        return found

    async def set_status(
        self,
        key: LineageKey,
        status: TriageStatus,
        *,
        at: datetime | None = None,
        reason: StatusReason | None = None,
        comment: str | None = None,
    ) -> None:
        """Persist status; optionally append a status entry and a comment
        in the same transaction."""
        at = at or utcnow()
        async with self.session_factory() as session:
            await self._upsert_status(session, key, status, at)
            if reason is not None:
                session.add(self._status_row(key, status, reason, at))
            if comment:
                session.add(self._comment_row(key, comment, at))
            await session.commit()

    async def _upsert_status(
        self, session: AsyncSession, key: LineageKey, status: TriageStatus, at: datetime,
    ) -> None:
        stmt = select(TriageStatusRecord).where(_match(TriageStatusRecord, key))
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing:
            existing.status = status.value
            existing.updated_at = at
        else:
            session.add(TriageStatusRecord(
                source_label=key.source,
                site_ref=key.site,
                point_ref=key.point,
                status=status.value,
                updated_at=at,
            ))

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def append_comment(self, key: LineageKey, text: str, *, at: datetime | None = None) -> None:
        async with self.session_factory() as session:
            session.add(self._comment_row(key, text, at or utcnow()))
            await session.commit()

    async def append_status_change(
        self,
        key: LineageKey,
        status: TriageStatus,
        reason: StatusReason,
        *,
        at: datetime | None = None,
    ) -> None:
        async with self.session_factory() as session:
            session.add(self._status_row(key, status, reason, at or utcnow()))
            await session.commit()

    async def list_comments(self, key: LineageKey) -> list[CommentEntry]:
        async with self.session_factory() as session:
            stmt = (
                select(TriageComment)
                .where(_match(TriageComment, key))
                .order_by(TriageComment.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [CommentEntry(timestamp=r.created_at, text=r.body, id=r.id) for r in rows]

    async def list_status_changes(self, key: LineageKey) -> list[StatusChangeEntry]:
        async with self.session_factory() as session:
            stmt = (
                select(TriageStatusChange)
                .where(_match(TriageStatusChange, key))
                .order_by(TriageStatusChange.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [
            StatusChangeEntry(
                timestamp=r.created_at,
                status=TriageStatus(r.status),
                reason=StatusReason(r.reason),
                id=r.id,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------

    @staticmethod
    def _comment_row(key: LineageKey, text: str, at: datetime) -> TriageComment:
        return TriageComment(
            source_label=key.source,
            site_ref=key.site,
            point_ref=key.point,
            body=text,
            created_at=at,
        )

    @staticmethod
    def _status_row(
        key: LineageKey, status: TriageStatus, reason: StatusReason, at: datetime,
    ) -> TriageStatusChange:
        return TriageStatusChange(
            source_label=key.source,
            site_ref=key.site,
            point_ref=key.point,
            status=status.value,
            reason=reason.value,
            created_at=at,
        )
