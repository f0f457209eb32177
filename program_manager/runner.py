"""
Low-level process control for managed programs.

Spawns children detached in their own process group, signals them with an
escalation ladder, and answers liveness, command-line and memory questions
about arbitrary pids. Knows nothing about the catalog.

Probes go through psutil. Resident memory on Linux is read from
/proc/<pid>/status (VmRSS) with /proc/<pid>/statm as the fallback.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from .errors import BadWorkingDir, EmptyCommand, ProbeFailed, StartFailed, StopTimeout
from .logsink import SinkFiles

logger = logging.getLogger(__name__)

PROC = Path("/proc")
POLL_INTERVAL = 0.2

_HAS_PROCESS_GROUPS = hasattr(os, "killpg")
_LINUX = sys.platform.startswith("linux")


@dataclass
class SystemMemory:
    """System-wide memory totals in bytes."""

    total: int
    available: int
    used: int
    used_percent: float


def tokenize(command: str) -> list[str]:
    """Split a command on whitespace. There are no quoting rules."""
    return (command or "").split()


class ProcessRunner:
    """Spawns, signals and inspects OS processes."""

    def __init__(
        self,
        start_grace: float = 0.5,
        term_timeout: float = 6.0,
        kill_timeout: float = 4.0,
    ):
        self.start_grace = start_grace
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout
        # Children we spawned and have not reaped yet
        self._spawned: set[int] = set()
        self._lock = threading.Lock()

    # Launch

    def start(self, command: str, working_dir: str, sink: SinkFiles) -> int:
        """Launch a command and return its pid once it survived the grace period."""
        argv = tokenize(command)
        if not argv:
            raise EmptyCommand()

        if working_dir and not os.path.isdir(working_dir):
            raise BadWorkingDir(f"working directory does not exist: {working_dir}")

        kwargs = {}
        if _HAS_PROCESS_GROUPS:
            # Leader of a new session and process group, pgid == pid
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=sink.stdout,
                stderr=sink.stderr,
                cwd=working_dir or None,
                env=os.environ.copy(),
                **kwargs,
            )
        except OSError as e:
            raise StartFailed("failed to start process", reason=str(e)) from e

        with self._lock:
            self._spawned.add(process.pid)
        logger.info(f"Spawned {argv[0]} with PID {process.pid}")

        time.sleep(self.start_grace)

        exit_code = process.poll()
        if exit_code is not None:
            self._forget(process.pid)
        if exit_code is not None or not self.is_alive(process.pid):
            reason = _read_tail(sink.stderr_path)
            raise StartFailed(
                "process started but failed to remain running"
                + (f" (exit code {exit_code})" if exit_code is not None else ""),
                exit_code=exit_code,
                reason=reason,
            )

        return process.pid

    # Termination

    def stop(self, pid: int):
        """Terminate a process and its group, escalating to SIGKILL.

        Raises StopTimeout if the process is still alive at the end.
        """
        if pid <= 0 or not self.is_alive(pid):
            return

        if _HAS_PROCESS_GROUPS:
            self._stop_group(pid)
        else:
            self._stop_single(pid)

    def _stop_group(self, pid: int):
        pgid = self._process_group(pid)
        # Only signal groups our launches created; never our own
        if pgid is None or pgid != pid or pgid == os.getpgrp():
            self._stop_single(pid)
            return

        logger.info(f"Sending SIGTERM to process group {pgid}")
        if not self._signal_group(pgid, signal.SIGTERM):
            self._stop_single(pid)
            return
        if self._wait_gone(pid, self.term_timeout):
            return

        logger.warning(f"Process {pid} did not stop gracefully, forcing kill")
        self._signal_group(pgid, signal.SIGKILL)
        if self._wait_gone(pid, self.kill_timeout):
            return

        for child in self.children(pid):
            logger.warning(f"Killing child {child} of {pid}")
            self._signal(child, signal.SIGKILL)
        self._signal_group(pgid, signal.SIGKILL)
        if self._wait_gone(pid, self.kill_timeout):
            return

        raise StopTimeout(pid)

    def _stop_single(self, pid: int):
        logger.info(f"Terminating process {pid}")
        if not self._signal(pid, signal.SIGTERM):
            return
        if self._wait_gone(pid, self.term_timeout):
            return

        logger.warning(f"Process {pid} did not stop gracefully, forcing kill")
        self._signal(pid, _SIGKILL)
        if self._wait_gone(pid, self.kill_timeout):
            return

        for child in self.children(pid):
            self._signal(child, _SIGKILL)
        self._signal(pid, _SIGKILL)
        if self._wait_gone(pid, self.kill_timeout):
            return

        raise StopTimeout(pid)

    def _process_group(self, pid: int) -> Optional[int]:
        try:
            return os.getpgid(pid)
        except (ProcessLookupError, PermissionError):
            return None

    def _signal_group(self, pgid: int, sig) -> bool:
        try:
            os.killpg(pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"Cannot signal process group {pgid}: {e}")
            return False

    def _signal(self, pid: int, sig) -> bool:
        try:
            proc = psutil.Process(pid)
            if sig == signal.SIGTERM:
                proc.terminate()
            elif sig == _SIGKILL:
                proc.kill()
            else:
                proc.send_signal(sig)
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot signal process {pid}: {e}")
            return False

    def _reap(self, pid: int):
        """Collect the exit status of a child this runner spawned."""
        if not hasattr(os, "WNOHANG"):
            return
        with self._lock:
            if pid not in self._spawned:
                return
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            # Already collected elsewhere, e.g. by its Popen object
            reaped = pid
        if reaped == pid:
            self._forget(pid)

    def _forget(self, pid: int):
        with self._lock:
            self._spawned.discard(pid)

    def _wait_gone(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            self._reap(pid)
            if not self.is_alive(pid):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)

    # Probes

    def is_alive(self, pid: int) -> bool:
        """True if pid names a live process. Zombies count as dead."""
        if pid <= 0:
            return False
        try:
            status = psutil.Process(pid).status()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True
        return status not in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD)

    def verify(self, pid: int, command: str) -> bool:
        """True if the process was launched from the command's executable.

        Guards against a recorded pid having been reused by an unrelated
        process since the launch. The executable may show up as argv[1]
        when the kernel ran it through a #! interpreter.
        """
        expected = tokenize(command)
        if pid <= 0 or not expected:
            return False
        argv = self.cmdline(pid)
        if not argv:
            return False
        executable = expected[0]
        name = os.path.basename(executable)
        return any(arg == executable or os.path.basename(arg) == name for arg in argv[:2])

    def cmdline(self, pid: int) -> list[str]:
        """The argv of a process, or [] if unreadable."""
        try:
            return psutil.Process(pid).cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return []

    def children(self, pid: int) -> list[int]:
        """Pids of the direct children of a process."""
        try:
            return [child.pid for child in psutil.Process(pid).children(recursive=False)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def memory(self, pid: int) -> tuple[int, float]:
        """Resident set size as (kilobytes, megabytes); (0, 0.0) if unavailable."""
        if pid <= 0:
            return 0, 0.0
        if _LINUX:
            kb = _vmrss_kb(pid)
            if kb is None:
                kb = _statm_kb(pid)
            if kb is None:
                return 0, 0.0
            return kb, kb / 1024.0
        try:
            rss = psutil.Process(pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return 0, 0.0
        return rss // 1024, rss / (1024 * 1024)

    def system_memory(self) -> SystemMemory:
        """System-wide memory with available = free + buffers + cached."""
        try:
            vm = psutil.virtual_memory()
        except (OSError, RuntimeError) as e:
            raise ProbeFailed(f"failed to get system memory: {e}") from e
        if not vm.total:
            raise ProbeFailed("failed to parse memory information")
        buffers = getattr(vm, "buffers", 0)
        cached = getattr(vm, "cached", 0)
        available = vm.free + buffers + cached if (buffers or cached) else vm.available
        used = vm.total - available
        return SystemMemory(vm.total, available, used, used / vm.total * 100.0)


_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def _read_status(pid: int) -> Optional[str]:
    try:
        return (PROC / str(pid) / "status").read_text()
    except OSError:
        return None


def _vmrss_kb(pid: int) -> Optional[int]:
    status = _read_status(pid)
    if status is None:
        return None
    for line in status.splitlines():
        if line.startswith("VmRSS:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                kb = int(parts[1])
                return kb or None
            return None
    return None


def _statm_kb(pid: int) -> Optional[int]:
    try:
        fields = (PROC / str(pid) / "statm").read_text().split()
    except OSError:
        return None
    if len(fields) < 2 or not fields[1].isdigit():
        return None
    page_size = os.sysconf("SC_PAGE_SIZE") if hasattr(os, "sysconf") else 4096
    return int(fields[1]) * page_size // 1024


def _read_tail(path: Path, limit: int = 500) -> str:
    try:
        data = Path(path).read_bytes()
    except OSError:
        return ""
    return data[-limit:].decode("utf-8", errors="replace").strip()
