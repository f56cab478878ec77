"""Mirror notifier - best-effort push of triage outcome to the sources.

Fire-and-forget: nothing here can change the local triage result, and a
failing source only produces a log line.
"""
from __future__ import annotations

import asyncio
import logging

from services.alarm_triage.client import AlarmSourceError
from services.alarm_triage.config import MIRROR_RELEVANT_STATUSES
from services.alarm_triage.ingestion import ClientFactory, default_client_factory
from services.alarm_triage.lineage import OccurrenceRecord
from services.alarm_triage.registry import SourceDescriptor
from services.alarm_triage.triage import TriageStatus

logger = logging.getLogger("triage.mirror")


def is_relevant(status: TriageStatus, comment: str) -> bool:
    return bool(comment.strip()) or status.value in MIRROR_RELEVANT_STATUSES


def build_note(occurrence: OccurrenceRecord, status: TriageStatus, comment: str) -> dict:
    return {
        "alarmId": occurrence.native_id,
        "server": occurrence.source_label,
        "itemReference": occurrence.site,
        "name": occurrence.point,
        "status": status.value,
        "statusLabel": status.label,
        "comment": comment,
        "creationTime": occurrence.created_at.isoformat(),
    }


class MirrorNotifier:

    def __init__(
        self,
        client_factory: ClientFactory = default_client_factory,
        timeout: float = 5.0,
    ):
        self.client_factory = client_factory
        self.timeout = timeout

    async def notify(
        self,
        occurrence: OccurrenceRecord,
        status: TriageStatus,
        comment: str,
        sources: list[SourceDescriptor],
    ) -> int:
        """Push the note to every enabled source. Returns how many accepted it."""
        comment = comment or ""
        if not is_relevant(status, comment):
            return 0
        enabled = [s for s in sources if s.enabled]
        if not enabled:
            return 0

        note = build_note(occurrence, status, comment)
        results = await asyncio.gather(*(self._push(s, note) for s in enabled))
        delivered = sum(1 for ok in results if ok)
        logger.debug(
            "Mirror note %s -> %d/%d sources", occurrence.id, delivered, len(enabled),
        )
        return delivered

    async def _push(self, source: SourceDescriptor, note: dict) -> bool:
        try:
            await asyncio.wait_for(self._send(source, note), timeout=self.timeout)
            return True
        except (AlarmSourceError, asyncio.TimeoutError) as exc:
            logger.warning("Mirror note to %s failed: %s", source.label, exc)
        except Exception as exc:
            logger.warning("Mirror note to %s failed unexpectedly: %s", source.label, exc)
        return False

    async def _send(self, source: SourceDescriptor, note: dict) -> None:
        async with self.client_factory(source) as client:
            token = await client.login()
            await client.push_note(token, note)
