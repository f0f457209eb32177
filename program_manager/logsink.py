"""
Capture files for child process output.

Each launch gets a fresh pair of files, <id>_<unix_ts>.log for stdout and
<id>_<unix_ts>.log.err for stderr. The child inherits the descriptors; the
sink only keeps the parent's handles open until the supervisor observes the
process gone. Output is never copied, buffered, rotated or parsed here.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger(__name__)

STDOUT_SUFFIX = ".log"
STDERR_SUFFIX = ".log.err"


@dataclass
class SinkFiles:
    """The stdout/stderr pair opened for one launch."""

    program_id: str
    stdout_path: Path
    stderr_path: Path
    stdout: IO[bytes]
    stderr: IO[bytes]

    def close(self):
        for handle in (self.stdout, self.stderr):
            try:
                handle.close()
            except OSError as e:
                logger.warning(f"Error closing log file for {self.program_id}: {e}")


class LogSink:
    """Opens and tracks per-program capture files."""

    def __init__(self, logs_dir: Path):
        self.logs_dir = Path(logs_dir)
        self._open: dict[str, SinkFiles] = {}
        self._lock = threading.Lock()

    def open(self, program_id: str) -> SinkFiles:
        """Create (truncating) the capture files for a new launch."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        base = f"{program_id}_{int(time.time())}"
        stdout_path = self.logs_dir / (base + STDOUT_SUFFIX)
        stderr_path = self.logs_dir / (base + STDERR_SUFFIX)

        stdout = open(stdout_path, "wb")
        try:
            stderr = open(stderr_path, "wb")
        except OSError:
            stdout.close()
            raise

        files = SinkFiles(program_id, stdout_path, stderr_path, stdout, stderr)
        with self._lock:
            previous = self._open.pop(program_id, None)
            self._open[program_id] = files
        if previous:
            previous.close()

        logger.debug(f"Opened capture files for {program_id}: {stdout_path}")
        return files

    def close(self, program_id: str):
        """Close the handles for a program whose process is gone."""
        with self._lock:
            files = self._open.pop(program_id, None)
        if files:
            files.close()
            logger.debug(f"Closed capture files for {program_id}")

    def discard(self, files: SinkFiles):
        """Close a pair whose launch failed."""
        with self._lock:
            if self._open.get(files.program_id) is files:
                del self._open[files.program_id]
        files.close()

    def is_open(self, program_id: str) -> bool:
        with self._lock:
            return program_id in self._open

    def close_all(self):
        with self._lock:
            pending = list(self._open.values())
            self._open.clear()
        for files in pending:
            files.close()

    def captures(self, program_id: str) -> list[Path]:
        """All stdout capture files for a program, oldest first."""
        if not self.logs_dir.exists():
            return []
        paths = self.logs_dir.glob(f"{program_id}_*{STDOUT_SUFFIX}")
        return sorted(paths, key=lambda p: (_launch_time(p), p.name))

    def latest(self, program_id: str) -> Optional[tuple[Path, Path]]:
        """The newest (stdout, stderr) capture pair, if any."""
        captures = self.captures(program_id)
        if not captures:
            return None
        stdout_path = captures[-1]
        return stdout_path, stdout_path.with_name(stdout_path.name[: -len(STDOUT_SUFFIX)] + STDERR_SUFFIX)

    def tail(self, path: Path, lines: int = 100) -> list[str]:
        """Last lines of a capture file, decoded leniently."""
        try:
            with open(path, "rb") as f:
                last = deque(f, maxlen=lines)
        except FileNotFoundError:
            return []
        return [line.decode("utf-8", errors="replace").rstrip("\n") for line in last]


def _launch_time(path: Path) -> int:
    stem = path.name[: -len(STDOUT_SUFFIX)]
    _, _, ts = stem.rpartition("_")
    try:
        return int(ts)
    except ValueError:
        return 0
