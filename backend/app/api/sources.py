from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.alarms import get_engine
from services.alarm_triage import AlarmTriageEngine
from services.alarm_triage.registry import ConfigurationError, SourceDescriptor, SourceRegistry

router = APIRouter(prefix="/api/sources", tags=["sources"])


def get_registry(engine: AlarmTriageEngine = Depends(get_engine)) -> SourceRegistry:
    return engine.registry


# --- Schemas ---

class SourceCreate(BaseModel):
    label: str = ""
    base_url: str
    username: str
    password: str
    enabled: bool = True
    offset_hours: int = 0
    page_size: int = 100


class SourceUpdate(BaseModel):
    label: str | None = None
    base_url: str | None = None
    username: str | None = None
    password: str | None = None
    enabled: bool | None = None
    offset_hours: int | None = None
    page_size: int | None = None


class SourceOut(BaseModel):
    id: int
    label: str
    base_url: str
    username: str
    enabled: bool
    offset_hours: int
    page_size: int
    last_error: str | None = None


def _out(source: SourceDescriptor, failures: dict[int, str]) -> SourceOut:
    return SourceOut(
        id=source.id,
        label=source.label,
        base_url=source.base_url,
        username=source.username,
        enabled=source.enabled,
        offset_hours=source.offset_hours,
        page_size=source.page_size,
        last_error=failures.get(source.id),
    )


# --- Endpoints ---

@router.get("", response_model=list[SourceOut])
async def list_sources(
    registry: SourceRegistry = Depends(get_registry),
    engine: AlarmTriageEngine = Depends(get_engine),
):
    failures = engine.failures
    return [_out(s, failures) for s in await registry.list_sources()]


@router.get("/{source_id}", response_model=SourceOut)
async def get_source(
    source_id: int,
    registry: SourceRegistry = Depends(get_registry),
    engine: AlarmTriageEngine = Depends(get_engine),
):
    source = await registry.get(source_id)
    if not source:
        raise HTTPException(404, "Source not found")
    return _out(source, engine.failures)


@router.post("", response_model=SourceOut, status_code=201)
async def create_source(data: SourceCreate, registry: SourceRegistry = Depends(get_registry)):
    try:
        source = await registry.create(data.model_dump())
    except ConfigurationError as exc:
        raise HTTPException(422, str(exc))
    return _out(source, {})


@router.patch("/{source_id}", response_model=SourceOut)
async def update_source(
    source_id: int,
    data: SourceUpdate,
    registry: SourceRegistry = Depends(get_registry),
):
    try:
        source = await registry.update(source_id, data.model_dump(exclude_unset=True))
    except ConfigurationError as exc:
        raise HTTPException(422, str(exc))
    if not source:
        raise HTTPException(404, "Source not found")
    return _out(source, {})


@router.delete("/{source_id}", status_code=204)
async def delete_source(source_id: int, registry: SourceRegistry = Depends(get_registry)):
    if not await registry.remove(source_id):
        raise HTTPException(404, "Source not found")


@router.post("/{source_id}/test")
async def test_source(
    source_id: int,
    registry: SourceRegistry = Depends(get_registry),
    engine: AlarmTriageEngine = Depends(get_engine),
) -> dict:
    source = await registry.get(source_id)
    if not source:
        raise HTTPException(404, "Source not found")
    async with engine.client_factory(source) as client:
        return await client.test_connection()
