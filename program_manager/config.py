"""
Configuration for the program manager service.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.program-manager/ unless
PROGRAM_MANAGER_DATA_DIR points elsewhere.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _default_data_dir() -> Path:
    env = os.environ.get("PROGRAM_MANAGER_DATA_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".program-manager"


@dataclass
class Config:
    """Program manager configuration."""

    # Paths
    data_dir: Path = field(default_factory=_default_data_dir)
    data_file: Path = None
    logs_dir: Path = None
    history_db: Path = None
    supervisor_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    log_level: str = os.environ.get("LOG_LEVEL", "INFO")

    # Server
    host: str = os.environ.get("PROGRAM_MANAGER_HOST", "127.0.0.1")
    port: int = int(os.environ.get("PROGRAM_MANAGER_PORT", "8081"))

    # Process management
    start_grace: float = float(os.environ.get("START_GRACE_SECONDS", "0.5"))
    stop_term_timeout: float = float(os.environ.get("STOP_TERM_TIMEOUT", "6"))
    stop_kill_timeout: float = float(os.environ.get("STOP_KILL_TIMEOUT", "4"))

    def __post_init__(self):
        """Initialize derived paths."""
        self.data_dir = Path(self.data_dir)
        if self.data_file is None:
            self.data_file = self.data_dir / "programs.json"
        if self.logs_dir is None:
            self.logs_dir = self.data_dir / "logs"
        if self.history_db is None:
            self.history_db = self.data_dir / "history.db"
        if self.supervisor_log is None:
            self.supervisor_log = self.data_dir / "supervisor.log"

    def ensure_directories(self):
        """Create the data and log directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
