"""Ingestion - per-source fetch + concurrent fan-out across all sources.

IngestionAdapter: login, fetch one page, map raw alarms to OccurrenceRecord.
FanOutCollector: run the adapter for every enabled source concurrently,
union the occurrences and collect failures keyed by source id.

All exceptions of one source stay inside that source's result - never
propagates errors outward.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from config import settings
from services.alarm_triage.client import AlarmSourceClient, AlarmSourceError
from services.alarm_triage.config import UNIT_DISPLAY_MAP
from services.alarm_triage.lineage import OccurrenceRecord
from services.alarm_triage.registry import SourceDescriptor

logger = logging.getLogger("triage.ingestion")

ClientFactory = Callable[[SourceDescriptor], AlarmSourceClient]


def default_client_factory(source: SourceDescriptor) -> AlarmSourceClient:
    return AlarmSourceClient(
        source.base_url,
        source.username,
        source.password,
        timeout=settings.SOURCE_TIMEOUT,
        verify=settings.SOURCE_VERIFY_TLS,
    )


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def map_unit(units: str | None) -> str:
    """Source unit enum -> display string; unknown units pass through."""
    if not units:
        return ""
    return UNIT_DISPLAY_MAP.get(units, units)


def normalize_value(value, units: str | None = None) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    unit = map_unit((units or "").strip())
    return f"{text} {unit}" if unit and text else text


def parse_timestamp(raw: str | None) -> datetime:
    """ISO-8601 -> aware UTC datetime. Naive values are taken as UTC."""
    if not raw:
        raise ValueError("missing creationTime")
    ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _as_priority(raw) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, (int, float)):
        return int(raw)
    try:
        return int(float(str(raw)))
    except (TypeError, ValueError):
        return 0


def to_occurrence(source: SourceDescriptor, raw: dict) -> OccurrenceRecord:
    """Map one raw alarm of `source` to the canonical occurrence record."""
    if not isinstance(raw, dict):
        raise TypeError(f"alarm item is {type(raw).__name__}, not an object")
    native_id = str(raw.get("id", ""))
    created_at = parse_timestamp(raw.get("creationTime"))
    trigger = raw.get("triggerValue") or {}
    if not isinstance(trigger, dict):
        raise TypeError("triggerValue is not an object")
    site = raw.get("itemReference") or ""

    return OccurrenceRecord(
        id=f"{source.id}_{native_id}",
        source_id=source.id,
        native_id=native_id,
        source_label=source.label,
        created_at=created_at,
        created_at_adjusted=created_at + timedelta(hours=source.offset_hours or 0),
        site=site,
        point=raw.get("name") or site,
        value=normalize_value(trigger.get("value"), trigger.get("units")),
        priority=_as_priority(raw.get("priority")),
        acknowledged=bool(raw.get("isAcknowledged")),
        discarded=bool(raw.get("isDiscarded")),
        message=raw.get("message") or None,
    )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class SourceResult:
    source: SourceDescriptor
    occurrences: list[OccurrenceRecord] = field(default_factory=list)
    total: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CollectionResult:
    occurrences: list[OccurrenceRecord] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    attempted: int = 0

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and len(self.failures) == self.attempted


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class IngestionAdapter:

    def __init__(
        self,
        client_factory: ClientFactory = default_client_factory,
        timeout: float | None = None,
    ):
        self.client_factory = client_factory
        self.timeout = timeout if timeout is not None else settings.SOURCE_TIMEOUT

    async def fetch(self, source: SourceDescriptor) -> SourceResult:
        try:
            return await asyncio.wait_for(self._fetch(source), timeout=self.timeout)
        except asyncio.TimeoutError:
            msg = f"[TIMEOUT] no answer within {self.timeout:g}s"
        except AlarmSourceError as exc:
            msg = str(exc)
        except Exception as exc:
            msg = f"[UNEXPECTED] {exc}"
        logger.warning("Source %s (id=%d) failed: %s", source.label, source.id, msg)
        return SourceResult(source=source, error=msg)

    async def _fetch(self, source: SourceDescriptor) -> SourceResult:
        async with self.client_factory(source) as client:
            token = await client.login()
            page = await client.list_alarms(token, source.page_size)

        occurrences = []
        skipped = 0
        for raw in page["items"]:
            try:
                occurrences.append(to_occurrence(source, raw))
            except (ValueError, TypeError, AttributeError) as exc:
                skipped += 1
                logger.debug("Source %s: skipping malformed alarm: %s", source.label, exc)
        if skipped:
            logger.warning("Source %s: skipped %d malformed alarms", source.label, skipped)

        logger.debug(
            "Source %s: %d occurrences (total upstream %s)",
            source.label, len(occurrences), page["total"],
        )
        return SourceResult(source=source, occurrences=occurrences, total=page["total"])


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class FanOutCollector:

    def __init__(self, adapter: IngestionAdapter):
        self.adapter = adapter

    async def collect(self, sources: list[SourceDescriptor]) -> CollectionResult:
        enabled = [s for s in sources if s.enabled]
        if not enabled:
            logger.debug("No enabled alarm sources - nothing to collect")
            return CollectionResult()

        results = await asyncio.gather(
            *(self.adapter.fetch(s) for s in enabled),
        )

        collection = CollectionResult(attempted=len(enabled))
        for res in results:
            if res.ok:
                collection.occurrences.extend(res.occurrences)
            else:
                collection.failures[res.source.id] = res.error
        return collection
