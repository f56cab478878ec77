"""Configured alarm-source APIs (source descriptor registry).

Edited only through the sources API; the triage engine reads enabled rows
at the start of every poll cycle and never writes them.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class AlarmSource(TimestampMixin, Base):
    __tablename__ = "alarm_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    label: Mapped[str] = mapped_column(String(100))             # "ROC", "BRPRA"
    base_url: Mapped[str] = mapped_column(String(300))          # "https://10.2.1.100/api/v3"
    username: Mapped[str] = mapped_column(String(100))
    password: Mapped[str] = mapped_column(String(200))
    enabled: Mapped[bool] = mapped_column(default=True)
    offset_hours: Mapped[int] = mapped_column(default=0)        # -24..24, applied to creationTime
    page_size: Mapped[int] = mapped_column(default=100)

    def __repr__(self) -> str:
        return f"<AlarmSource {self.label} @ {self.base_url}>"
