"""
Operation history for managed programs.

Uses Peewee ORM with SQLite. Records one event per start, stop and failure
so operators can see what happened to a program and when. This is separate
from the captured stdout/stderr of the children, which stays in raw files.
"""

import logging
from datetime import datetime
from pathlib import Path

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    Model,
    SqliteDatabase,
    TextField,
)

logger = logging.getLogger(__name__)

database = DatabaseProxy()

LEVEL_INFO = "INFO"
LEVEL_WARNING = "WARNING"
LEVEL_ERROR = "ERROR"


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class ProgramEvent(BaseModel):
    """Something that happened to a program."""

    id = AutoField()
    program_id = CharField(index=True)
    program_name = CharField(default="")
    level = CharField(default=LEVEL_INFO)
    message = TextField()
    details = TextField(default="")
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "program_events"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "program_id": self.program_id,
            "program_name": self.program_name or "Unknown Program",
            "level": self.level,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class EventLog:
    """Append-only event log backed by SQLite."""

    def __init__(self, db_path: Path):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = SqliteDatabase(
            str(db_path),
            pragmas={
                "journal_mode": "wal",
                "busy_timeout": 5000,
            },
        )
        database.initialize(db)
        database.create_tables([ProgramEvent], safe=True)

    def record(self, program_id: str, program_name: str, message: str, level: str = LEVEL_INFO, details: str = ""):
        try:
            with database.connection_context():
                ProgramEvent.create(
                    program_id=program_id,
                    program_name=program_name or "",
                    level=level,
                    message=message[:2000],
                    details=(details or "")[:4000],
                )
        except Exception as e:
            # History is advisory; a failed insert must not fail the operation
            logger.error(f"Failed to record event for {program_id}: {e}")

    def started(self, program_id: str, program_name: str, command: str, pid: int):
        self.record(program_id, program_name, f"Program '{program_name}' started", details=f"command: {command}, pid: {pid}")

    def stopped(self, program_id: str, program_name: str, reason: str = ""):
        self.record(program_id, program_name, f"Program '{program_name}' stopped", details=reason)

    def error(self, program_id: str, program_name: str, error: str):
        self.record(program_id, program_name, f"Program '{program_name}' failed", LEVEL_ERROR, error)

    def warning(self, program_id: str, program_name: str, warning: str):
        self.record(program_id, program_name, f"Program '{program_name}' warning", LEVEL_WARNING, warning)

    def for_program(self, program_id: str, limit: int = 50) -> list[dict]:
        """Events for one program, newest first."""
        with database.connection_context():
            query = (
                ProgramEvent.select()
                .where(ProgramEvent.program_id == program_id)
                .order_by(ProgramEvent.timestamp.desc(), ProgramEvent.id.desc())
                .limit(limit)
            )
            return [event.to_dict() for event in query]

    def all(self, limit: int = 100) -> list[dict]:
        with database.connection_context():
            query = ProgramEvent.select().order_by(ProgramEvent.timestamp.desc(), ProgramEvent.id.desc()).limit(limit)
            return [event.to_dict() for event in query]

    def clear(self, program_id: str) -> int:
        with database.connection_context():
            return ProgramEvent.delete().where(ProgramEvent.program_id == program_id).execute()

    def clear_all(self) -> int:
        with database.connection_context():
            return ProgramEvent.delete().execute()

    def close(self):
        if not database.is_closed():
            database.close()
