"""Alarm triage API - lineages, history, comments, status, refresh.

GET  /api/alarms             - current lineages (filters + sort)
GET  /api/alarms/stats       - ack/discard/ageing/status counts
GET  /api/alarms/refresh     - countdown + last cycle summary
POST /api/alarms/refresh     - manual refresh (queued behind a running cycle)
GET  /api/alarms/history     - merged comment/status timeline of one lineage
POST /api/alarms/comments    - user comment (promotes to handled)
PUT  /api/alarms/status      - explicit user status
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from services.alarm_triage import AlarmTriageEngine, LineageKey, LineageView, TriageStatus
from services.alarm_triage.filters import SORT_KEYS, LineageFilter, lineage_stats, sort_lineages

router = APIRouter(prefix="/api/alarms", tags=["alarms"])


def get_engine(request: Request) -> AlarmTriageEngine:
    return request.app.state.triage_engine


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class LineageKeyIn(BaseModel):
    source: str
    site: str
    point: str

    def to_key(self) -> LineageKey:
        return LineageKey(self.source, self.site, self.point)


class CommentIn(LineageKeyIn):
    text: str


class StatusIn(LineageKeyIn):
    status: TriageStatus


class OccurrenceOut(BaseModel):
    id: str
    server: str
    created_at: datetime
    created_at_adjusted: datetime
    site: str
    point: str
    value: str
    priority: int
    acknowledged: bool
    discarded: bool
    message: Optional[str] = None


class LineageOut(BaseModel):
    source: str
    site: str
    point: str
    status: TriageStatus
    count: int
    age_seconds: int
    representative: OccurrenceOut
    history: list[OccurrenceOut] = []


class HistoryEntryOut(BaseModel):
    timestamp: datetime
    kind: Literal["comment", "status"]
    text: str


class RefreshStateOut(BaseModel):
    seconds_left: int
    in_flight: bool
    failures: dict[str, str]
    last_cycle: Optional[dict] = None


class StatusOut(BaseModel):
    status: Optional[TriageStatus] = None


def _occurrence_out(occ) -> OccurrenceOut:
    return OccurrenceOut(
        id=occ.id,
        server=occ.source_label,
        created_at=occ.created_at,
        created_at_adjusted=occ.created_at_adjusted,
        site=occ.site,
        point=occ.point,
        value=occ.value,
        priority=occ.priority,
        acknowledged=occ.acknowledged,
        discarded=occ.discarded,
        message=occ.message,
    )


def _lineage_out(view: LineageView, now: datetime, with_history: bool) -> LineageOut:
    rep = view.representative
    return LineageOut(
        source=view.key.source,
        site=view.key.site,
        point=view.key.point,
        status=view.status,
        count=view.count,
        age_seconds=max(0, int((now - rep.created_at_adjusted).total_seconds())),
        representative=_occurrence_out(rep),
        history=[_occurrence_out(o) for o in view.lineage.history] if with_history else [],
    )


def _filter_from_query(
    site: str = Query(""),
    point: str = Query(""),
    value: str = Query(""),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    priority_min: int = Query(0, ge=0, le=255),
    priority_max: int = Query(255, ge=0, le=255),
    acknowledged: Optional[bool] = Query(None),
    discarded: Optional[bool] = Query(None),
    status: Optional[TriageStatus] = Query(None),
) -> LineageFilter:
    return LineageFilter(
        site=site, point=point, value=value,
        date_from=date_from, date_to=date_to,
        priority_min=priority_min, priority_max=priority_max,
        acknowledged=acknowledged, discarded=discarded,
        status=status,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=list[LineageOut])
async def list_lineages(
    flt: LineageFilter = Depends(_filter_from_query),
    sort: str = Query("date_time"),
    direction: Literal["asc", "desc"] = Query("desc"),
    with_history: bool = Query(False),
    engine: AlarmTriageEngine = Depends(get_engine),
) -> list[LineageOut]:
    """Return current lineages with their computed triage status."""
    if sort not in SORT_KEYS:
        raise HTTPException(422, f"sort must be one of: {', '.join(SORT_KEYS)}")
    now = datetime.now(timezone.utc)
    views = sort_lineages(engine.get_lineages(flt), sort, direction, now=now)
    return [_lineage_out(v, now, with_history) for v in views]


@router.get("/stats")
async def get_stats(
    flt: LineageFilter = Depends(_filter_from_query),
    engine: AlarmTriageEngine = Depends(get_engine),
) -> dict:
    return lineage_stats(engine.get_lineages(flt))


@router.get("/refresh", response_model=RefreshStateOut)
async def get_refresh_state(engine: AlarmTriageEngine = Depends(get_engine)):
    last = engine.last_result
    return RefreshStateOut(
        seconds_left=engine.get_countdown(),
        in_flight=engine.in_flight,
        failures={str(k): v for k, v in engine.failures.items()},
        last_cycle=last.as_dict() if last else None,
    )


@router.post("/refresh")
async def manual_refresh(engine: AlarmTriageEngine = Depends(get_engine)) -> dict:
    result = await engine.trigger_manual_refresh()
    return result.as_dict()


@router.get("/history", response_model=list[HistoryEntryOut])
async def get_history(
    source: str = Query(...),
    site: str = Query(...),
    point: str = Query(...),
    engine: AlarmTriageEngine = Depends(get_engine),
):
    entries = await engine.get_history(LineageKey(source, site, point))
    return [HistoryEntryOut(timestamp=e.timestamp, kind=e.kind, text=e.text) for e in entries]


@router.post("/comments", response_model=StatusOut, status_code=201)
async def submit_comment(data: CommentIn, engine: AlarmTriageEngine = Depends(get_engine)):
    if not data.text.strip():
        raise HTTPException(422, "Comment text is empty")
    status = await engine.submit_comment(data.to_key(), data.text)
    return StatusOut(status=status)


@router.put("/status", response_model=StatusOut)
async def set_status(data: StatusIn, engine: AlarmTriageEngine = Depends(get_engine)):
    status = await engine.set_status(data.to_key(), data.status)
    return StatusOut(status=status)
