"""Source descriptor registry - configured alarm-source APIs.

The engine only calls list_enabled(); everything else is used by the
sources API. Descriptors handed to the engine are frozen snapshots, so a
concurrent edit never changes a cycle that is already running.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from models.alarm_source import AlarmSource
from services.alarm_triage.client import normalize_base_url
from services.alarm_triage.config import (
    OFFSET_HOURS_LIMIT, PAGE_SIZE_MIN, PAGE_SIZE_MAX,
)

logger = logging.getLogger("triage.registry")

_EDITABLE_FIELDS = (
    "label", "base_url", "username", "password",
    "enabled", "offset_hours", "page_size",
)


class ConfigurationError(Exception):
    """Missing or invalid source descriptor field."""
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


@dataclass(frozen=True)
class SourceDescriptor:
    id: int
    label: str
    base_url: str
    username: str
    password: str
    enabled: bool = True
    offset_hours: int = 0
    page_size: int = 100

    @classmethod
    def from_row(cls, row: AlarmSource) -> SourceDescriptor:
        return cls(
            id=row.id,
            label=row.label,
            base_url=row.base_url,
            username=row.username,
            password=row.password,
            enabled=row.enabled,
            offset_hours=row.offset_hours,
            page_size=row.page_size,
        )


def validate_source_fields(fields: dict) -> dict:
    """Normalize + validate a full set of descriptor fields."""
    cleaned = dict(fields)

    base_url = normalize_base_url(cleaned.get("base_url") or "")
    if not base_url:
        raise ConfigurationError("base_url", "base URL is required")
    cleaned["base_url"] = base_url

    for name in ("username", "password"):
        if not (cleaned.get(name) or "").strip():
            raise ConfigurationError(name, "value is required")

    # Label falls back to the endpoint, as the management form does
    cleaned["label"] = (cleaned.get("label") or "").strip() or base_url

    try:
        offset = int(cleaned.get("offset_hours") or 0)
    except (TypeError, ValueError):
        raise ConfigurationError("offset_hours", "must be an integer") from None
    if abs(offset) > OFFSET_HOURS_LIMIT:
        raise ConfigurationError(
            "offset_hours", f"must be within ±{OFFSET_HOURS_LIMIT}h",
        )
    cleaned["offset_hours"] = offset

    try:
        raw_size = cleaned.get("page_size")
        page_size = settings.SOURCE_DEFAULT_PAGE_SIZE if raw_size in (None, "") else int(raw_size)
    except (TypeError, ValueError):
        raise ConfigurationError("page_size", "must be an integer") from None
    if not PAGE_SIZE_MIN <= page_size <= PAGE_SIZE_MAX:
        raise ConfigurationError(
            "page_size", f"must be between {PAGE_SIZE_MIN} and {PAGE_SIZE_MAX}",
        )
    cleaned["page_size"] = page_size
    cleaned["enabled"] = bool(cleaned.get("enabled", True))

    return {k: cleaned[k] for k in _EDITABLE_FIELDS}


class SourceRegistry:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_sources(self) -> list[SourceDescriptor]:
        async with self.session_factory() as session:
            result = await session.execute(select(AlarmSource).order_by(AlarmSource.id))
            return [SourceDescriptor.from_row(r) for r in result.scalars().all()]

    async def list_enabled(self) -> list[SourceDescriptor]:
        async with self.session_factory() as session:
            stmt = (
                select(AlarmSource)
                .where(AlarmSource.enabled == True)  # noqa: E712
                .order_by(AlarmSource.id)
            )
            result = await session.execute(stmt)
            return [SourceDescriptor.from_row(r) for r in result.scalars().all()]

    async def get(self, source_id: int) -> SourceDescriptor | None:
        async with self.session_factory() as session:
            row = await session.get(AlarmSource, source_id)
            return SourceDescriptor.from_row(row) if row else None

    async def create(self, fields: dict) -> SourceDescriptor:
        cleaned = validate_source_fields(fields)
        async with self.session_factory() as session:
            row = AlarmSource(**cleaned)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.info("Source added: id=%d label=%s", row.id, row.label)
            return SourceDescriptor.from_row(row)

    async def update(self, source_id: int, changes: dict) -> SourceDescriptor | None:
        async with self.session_factory() as session:
            row = await session.get(AlarmSource, source_id)
            if not row:
                return None
            merged = {f: getattr(row, f) for f in _EDITABLE_FIELDS}
            merged.update({k: v for k, v in changes.items() if k in _EDITABLE_FIELDS})
            for field, value in validate_source_fields(merged).items():
                setattr(row, field, value)
            await session.commit()
            await session.refresh(row)
            logger.info("Source updated: id=%d label=%s", row.id, row.label)
            return SourceDescriptor.from_row(row)

    async def set_enabled(self, source_id: int, enabled: bool) -> SourceDescriptor | None:
        return await self.update(source_id, {"enabled": enabled})

    async def remove(self, source_id: int) -> bool:
        async with self.session_factory() as session:
            row = await session.get(AlarmSource, source_id)
            if not row:
                return False
            await session.delete(row)
            await session.commit()
            logger.info("Source removed: id=%d", source_id)
            return True

    async def seed(self, descriptors: list[dict]) -> int:
        """Insert seed descriptors only when the registry is empty."""
        if not descriptors:
            return 0
        async with self.session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(AlarmSource))
            if count:
                return 0
            for fields in descriptors:
                try:
                    session.add(AlarmSource(**validate_source_fields(fields)))
                except ConfigurationError as exc:
                    logger.warning("Skipping invalid seed source %s: %s", fields.get("label"), exc)
            await session.commit()
        seeded = await self.list_sources()
        logger.info("Seeded %d alarm sources", len(seeded))
        return len(seeded)
