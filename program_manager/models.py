"""
Catalog data model.

A Program is a plain record describing one managed command; the Catalog is
the full set of programs as persisted in programs.json. Both are value
objects: the store hands out fresh copies on every load.
"""

import secrets
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Optional

CATALOG_VERSION = "1.0"

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"

NO_PORT = -1


def now() -> datetime:
    return datetime.now()


def generate_program_id() -> str:
    """Timestamp-prefixed id with a short random suffix."""
    return f"{datetime.now():%Y%m%d%H%M%S}{secrets.token_hex(2)}"


def normalize_port(port: Optional[int]) -> int:
    if port is None or port == 0:
        return NO_PORT
    return int(port)


def _parse_time(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    # Older catalogs may carry a trailing "Z"
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Program:
    """A managed program definition and its last reconciled run state."""

    id: str
    name: str
    command: str
    working_dir: str = ""
    description: str = ""
    port: int = NO_PORT
    status: str = STATUS_STOPPED
    pid: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    auto_start: bool = False
    restart_policy: str = ""

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def touch(self):
        """Bump updated_at, keeping it strictly increasing for this record."""
        stamp = now()
        if self.updated_at is not None and stamp <= self.updated_at:
            stamp = self.updated_at + timedelta(microseconds=1)
        self.updated_at = stamp

    def mark_running(self, pid: int):
        self.status = STATUS_RUNNING
        self.pid = pid
        self.touch()

    def mark_stopped(self):
        self.status = STATUS_STOPPED
        self.pid = 0
        self.touch()

    def copy(self) -> "Program":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "working_dir": self.working_dir,
            "description": self.description,
            "port": self.port,
            "status": self.status,
            "pid": self.pid,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "auto_start": self.auto_start,
            "restart_policy": self.restart_policy,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Program":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["created_at"] = _parse_time(values.get("created_at"))
        values["updated_at"] = _parse_time(values.get("updated_at"))
        values["working_dir"] = values.get("working_dir") or ""
        values["description"] = values.get("description") or ""
        values["restart_policy"] = values.get("restart_policy") or ""
        values["auto_start"] = bool(values.get("auto_start", False))
        values["port"] = normalize_port(values.get("port"))
        values["pid"] = int(values.get("pid") or 0)
        values["status"] = values.get("status") or STATUS_STOPPED
        return cls(**values)


@dataclass
class Catalog:
    """The complete set of programs, keyed by id."""

    version: str = CATALOG_VERSION
    programs: dict[str, Program] = field(default_factory=dict)

    def get(self, program_id: str) -> Optional[Program]:
        return self.programs.get(program_id)

    def find_by_name(self, name: str, exclude_id: str = None) -> Optional[Program]:
        for program in self.programs.values():
            if program.name == name and program.id != exclude_id:
                return program
        return None

    def add(self, program: Program):
        self.programs[program.id] = program

    def remove(self, program_id: str) -> bool:
        return self.programs.pop(program_id, None) is not None

    def all(self) -> list[Program]:
        return list(self.programs.values())

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "programs": {pid: p.to_dict() for pid, p in self.programs.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Catalog":
        if not isinstance(data, dict):
            raise ValueError("catalog must be a JSON object")
        raw = data.get("programs") or {}
        if not isinstance(raw, dict):
            raise ValueError("catalog programs must be a JSON object")
        programs = {}
        for key, value in raw.items():
            program = Program.from_dict({"id": key, **value})
            programs[program.id] = program
        return cls(version=data.get("version") or CATALOG_VERSION, programs=programs)
