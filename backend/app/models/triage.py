"""Triage persistence: current status per lineage + two append-only logs.

A lineage is identified by (source_label, site_ref, point_ref), stored as
three columns so no delimiter can collide with site or point names.
Comment and status-change rows are only ever inserted.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class TriageStatusRecord(Base):
    __tablename__ = "triage_statuses"

    __table_args__ = (
        UniqueConstraint("source_label", "site_ref", "point_ref", name="uq_triage_statuses_lineage"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    source_label: Mapped[str] = mapped_column(String(100))
    site_ref: Mapped[str] = mapped_column(String(300))
    point_ref: Mapped[str] = mapped_column(String(300))
    status: Mapped[str] = mapped_column(String(20))         # not_handled | handled | completed | opportunity
    updated_at: Mapped[datetime] = mapped_column()


class TriageComment(Base):
    __tablename__ = "triage_comments"

    __table_args__ = (
        Index("ix_triage_comments_lineage", "source_label", "site_ref", "point_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    source_label: Mapped[str] = mapped_column(String(100))
    site_ref: Mapped[str] = mapped_column(String(300))
    point_ref: Mapped[str] = mapped_column(String(300))
    body: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column()


class TriageStatusChange(Base):
    __tablename__ = "triage_status_changes"

    __table_args__ = (
        Index("ix_triage_status_changes_lineage", "source_label", "site_ref", "point_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    source_label: Mapped[str] = mapped_column(String(100))
    site_ref: Mapped[str] = mapped_column(String(300))
    point_ref: Mapped[str] = mapped_column(String(300))
    status: Mapped[str] = mapped_column(String(20))
    reason: Mapped[str] = mapped_column(String(30))         # user | auto_new_occurrence
    created_at: Mapped[datetime] = mapped_column()
