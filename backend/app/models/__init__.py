from models.base import Base, async_session, engine, ensure_tables
from models.alarm_source import AlarmSource
from models.triage import TriageComment, TriageStatusChange, TriageStatusRecord

__all__ = [
    "Base",
    "async_session",
    "engine",
    "ensure_tables",
    "AlarmSource",
    "TriageStatusRecord",
    "TriageComment",
    "TriageStatusChange",
]
