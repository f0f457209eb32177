"""
Program supervisor.

Coordinates the catalog store, the process runner, the command validator
and the log sink. Every mutation is a single load -> mutate -> save under
the store's write lock, so operations on one program are totally ordered.

Recorded state is only trusted after reconciliation: a stored pid may be
dead, reused by an unrelated process, or still ours. Reads that report
status reconcile first and persist any correction.
"""

import logging
from typing import Iterable, Optional

from . import validator
from .errors import (
    AlreadyRunning,
    DuplicateId,
    DuplicateName,
    NotFound,
    NotRunning,
    ProbeFailed,
    ProgramManagerError,
    StartFailed,
    StopTimeout,
    ValidationFailed,
)
from .history import EventLog
from .logsink import LogSink
from .models import (
    STATUS_RUNNING,
    STATUS_STOPPED,
    Catalog,
    Program,
    generate_program_id,
    normalize_port,
    now,
)
from .runner import ProcessRunner
from .store import CatalogStore

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PORT_MIN = -1
PORT_MAX = 65535

GB = 1024 * 1024 * 1024


def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("program name is required")
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationFailed(f"program name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters")
    return name


def validate_port(port: Optional[int]) -> int:
    port = normalize_port(port)
    if not PORT_MIN <= port <= PORT_MAX:
        raise ValidationFailed(f"port must be between {PORT_MIN} and {PORT_MAX}")
    return port


class Supervisor:
    """Starts, stops and reconciles the programs in a catalog."""

    def __init__(
        self,
        store: CatalogStore,
        runner: ProcessRunner,
        sink: LogSink,
        events: EventLog = None,
    ):
        self.store = store
        self.runner = runner
        self.sink = sink
        self.events = events

    # Queries

    def get_all(self) -> list[Program]:
        return self.store.load().all()

    def get(self, program_id: str) -> Program:
        program = self.store.load().get(program_id)
        if program is None:
            raise NotFound(program_id)
        return program

    # Catalog mutations

    def add(self, program: Program) -> Program:
        """Validate and insert a new program in the stopped state."""
        program = program.copy()
        program.name = validate_name(program.name)
        program.command = validator.validate_command(validator.sanitize_command(program.command))
        program.working_dir = validator.validate_working_dir(program.working_dir)
        program.description = (program.description or "").strip()
        program.port = validate_port(program.port)
        program.status = STATUS_STOPPED
        program.pid = 0

        with self.store.transaction() as catalog:
            if program.id:
                if program.id in catalog.programs:
                    raise DuplicateId(program.id)
            else:
                program.id = self._new_id(catalog)

            if catalog.find_by_name(program.name):
                raise DuplicateName(program.name)

            stamp = now()
            program.created_at = stamp
            program.updated_at = stamp
            catalog.add(program)

        logger.info(f"Added program {program.name} ({program.id})")
        return program.copy()

    def update(
        self,
        program_id: str,
        name: str,
        command: str,
        working_dir: str = "",
        description: str = "",
        port: Optional[int] = None,
    ) -> Program:
        """Replace the editable fields of a program.

        Status, pid and creation time are kept from the stored record.
        """
        name = validate_name(name)
        command = validator.validate_command(validator.sanitize_command(command))
        working_dir = validator.validate_working_dir(working_dir)
        if port is not None:
            port = validate_port(port)

        with self.store.transaction() as catalog:
            program = catalog.get(program_id)
            if program is None:
                raise NotFound(program_id)
            if catalog.find_by_name(name, exclude_id=program_id):
                raise DuplicateName(name)

            program.name = name
            program.command = command
            program.working_dir = working_dir
            program.description = (description or "").strip()
            if port is not None:
                program.port = port
            program.touch()

        logger.info(f"Updated program {program.name} ({program_id})")
        return program.copy()

    def delete(self, program_id: str):
        """Remove a program, stopping it first if it is running."""
        # One write-locked section, so no start can slip in between stop and remove
        with self.store.lock.writing():
            program = self.get(program_id)
            if program.is_running:
                self.stop(program_id)

            with self.store.transaction() as catalog:
                if not catalog.remove(program_id):
                    raise NotFound(program_id)

            self.sink.close(program_id)
        logger.info(f"Deleted program {program.name} ({program_id})")

    # Lifecycle

    def start(self, program_id: str) -> Program:
        """Launch a program that is not already running."""
        with self.store.transaction() as catalog:
            program = catalog.get(program_id)
            if program is None:
                raise NotFound(program_id)

            if program.is_running and self._is_ours(program):
                raise AlreadyRunning(program_id, program.pid)

            if program.pid:
                logger.info(f"Discarding stale pid {program.pid} for {program.name}")
            self.sink.close(program_id)

            files = self.sink.open(program_id)
            try:
                pid = self.runner.start(program.command, program.working_dir, files)
            except ProgramManagerError as e:
                self.sink.discard(files)
                logger.error(f"Failed to start program {program.name}: {e}")
                self._event("error", program, str(e))
                if program.is_running or program.pid:
                    # Persist the stale-pid cleanup along with the failure
                    program.mark_stopped()
                    self.store.save(catalog)
                raise

            program.mark_running(pid)

        logger.info(f"Started program {program.name} with PID {pid}")
        self._event("started", program, program.command, pid)
        return program.copy()

    def stop(self, program_id: str, strict: bool = False) -> Program:
        """Stop a program and record it as stopped.

        Stopping an already stopped program succeeds and only normalizes the
        record, unless strict is set, in which case NotRunning is raised. A
        record still marked running whose process already exited is
        normalized without error either way.
        """
        was_running = False
        with self.store.locked() as catalog:
            program = catalog.get(program_id)
            if program is None:
                raise NotFound(program_id)
            recorded_running = program.is_running

            live = program.is_running and program.pid > 0 and self._alive(program.pid)
            if live and not self._is_ours(program):
                # Reused by an unrelated process; only the record is corrected
                logger.warning(f"PID {program.pid} no longer belongs to {program.name}, not signalling it")
                live = False

            if live:
                was_running = True
                try:
                    self.runner.stop(program.pid)
                except StopTimeout as e:
                    logger.error(f"Failed to stop program {program.name}: {e}")
                    self._event("error", program, str(e))
                    if not self._alive(program.pid):
                        self._settle_stopped(catalog, program)
                    raise

            changed = program.status != STATUS_STOPPED or program.pid != 0
            if was_running or changed:
                self._settle_stopped(catalog, program)
            else:
                self.sink.close(program_id)

        if was_running:
            logger.info(f"Stopped program {program.name}")
            self._event("stopped", program)
        elif strict and not recorded_running:
            raise NotRunning(program_id)
        return program.copy()

    def _settle_stopped(self, catalog: Catalog, program: Program):
        program.mark_stopped()
        self.store.save(catalog)
        self.sink.close(program.id)

    def batch_start(self, ids: Iterable[str]) -> dict:
        return self._batch(ids, self.start, "started")

    def batch_stop(self, ids: Iterable[str]) -> dict:
        return self._batch(ids, self.stop, "stopped")

    def _batch(self, ids: Iterable[str], operation, verb: str) -> dict:
        ids = list(ids)
        results = {}
        success = 0
        errors = 0
        for program_id in ids:
            try:
                operation(program_id)
            except ProgramManagerError as e:
                results[program_id] = {"error": str(e)}
                errors += 1
            else:
                results[program_id] = {"status": verb}
                success += 1
        return {
            "results": results,
            "summary": {"total": len(ids), "success": success, "errors": errors},
        }

    # Reconciliation

    def desired_state(self, program: Program) -> tuple[str, int]:
        """The (status, pid) the OS currently supports for a record."""
        if program.pid <= 0:
            return STATUS_STOPPED, 0
        try:
            if self.runner.is_alive(program.pid) and self.runner.verify(program.pid, program.command):
                return STATUS_RUNNING, program.pid
        except ProbeFailed as e:
            logger.warning(f"Probe failed for {program.name} (pid {program.pid}): {e}")
        return STATUS_STOPPED, 0

    def reconcile(self, program_id: str) -> Program:
        program = self.get(program_id)
        reconciled = self._reconcile_many([program])
        if not reconciled:
            raise NotFound(program_id)
        return reconciled[0]

    def reconcile_all(self) -> list[Program]:
        return self._reconcile_many(self.get_all())

    refresh_all = reconcile_all

    def _reconcile_many(self, programs: list[Program]) -> list[Program]:
        corrections = {}
        for program in programs:
            desired = self.desired_state(program)
            if desired != (program.status, program.pid):
                corrections[program.id] = (program.status, program.pid)

        if not corrections:
            return programs

        with self.store.locked() as catalog:
            dirty = False
            for program_id, observed in corrections.items():
                current = catalog.get(program_id)
                # Someone else changed it since our read; their write wins
                if current is None or (current.status, current.pid) != observed:
                    continue
                status, pid = self.desired_state(current)
                if (status, pid) == observed:
                    continue
                old_pid = current.pid
                current.status = status
                current.pid = pid
                current.touch()
                dirty = True
                if status == STATUS_STOPPED:
                    self.sink.close(program_id)
                    logger.info(f"Program {current.name} is no longer running (pid {old_pid})")
                    self._event("stopped", current, f"process {old_pid} exited")
            if dirty:
                self.store.save(catalog)
            latest = {p.id: p for p in catalog.all()}

        result = []
        for program in programs:
            if program.id in latest:
                result.append(latest[program.id].copy())
            elif program.id not in corrections:
                result.append(program)
        return result

    # Status projections

    def get_status(self, program_id: str) -> Program:
        return self.reconcile(program_id)

    def get_running(self) -> list[Program]:
        return [p for p in self.reconcile_all() if p.status == STATUS_RUNNING]

    def get_stopped(self) -> list[Program]:
        return [p for p in self.reconcile_all() if p.status == STATUS_STOPPED]

    def get_with_memory(self) -> list[dict]:
        """Reconciled programs with the resident memory of running ones."""
        result = []
        for program in self.reconcile_all():
            info = {
                "id": program.id,
                "name": program.name,
                "command": program.command,
                "status": program.status,
                "pid": program.pid,
                "port": program.port,
                "memoryUsage": "0 KB",
                "memory_kb": 0,
                "memory_mb": 0.0,
            }
            if program.is_running and program.pid > 0:
                kb, mb = self.runner.memory(program.pid)
                if kb > 0:
                    info["memoryUsage"] = f"{mb:.2f} MB"
                    info["memory_kb"] = kb
                    info["memory_mb"] = round(mb, 2)
            result.append(info)
        return result

    def process_info(self, pid: int) -> dict:
        running = self.runner.is_alive(pid)
        info = {"pid": pid, "running": running, "status": STATUS_RUNNING if running else STATUS_STOPPED}
        kb, mb = self.runner.memory(pid) if running else (0, 0.0)
        info["memoryKB"] = kb
        info["memoryMB"] = round(mb, 2)
        info["memoryDisplay"] = f"{mb:.2f} MB" if kb else "N/A"
        return info

    def system_memory(self) -> dict:
        mem = self.runner.system_memory()
        return {
            "totalPhysical": mem.total,
            "totalPhysicalGB": mem.total / GB,
            "available": mem.available,
            "availableGB": mem.available / GB,
            "used": mem.used,
            "usedGB": mem.used / GB,
            "usedPercent": mem.used_percent,
            "usedPercentDisplay": f"{mem.used_percent:.1f}%",
            "totalPhysicalDisplay": f"{mem.total / GB:.2f} GB",
            "availableDisplay": f"{mem.available / GB:.2f} GB",
            "usedDisplay": f"{mem.used / GB:.2f} GB",
        }

    def output(self, program_id: str, lines: int = 100) -> dict:
        """Tail of the newest captured stdout/stderr for a program."""
        self.get(program_id)
        latest = self.sink.latest(program_id)
        if latest is None:
            return {"stdout": [], "stderr": [], "files": {}}
        stdout_path, stderr_path = latest
        return {
            "stdout": self.sink.tail(stdout_path, lines),
            "stderr": self.sink.tail(stderr_path, lines),
            "files": {"stdout": str(stdout_path), "stderr": str(stderr_path)},
        }

    def shutdown(self):
        """Release log handles. Children are left running, detached."""
        self.sink.close_all()
        if self.events:
            self.events.close()

    # Helpers

    def _new_id(self, catalog: Catalog) -> str:
        program_id = generate_program_id()
        while program_id in catalog.programs:
            program_id = generate_program_id()
        return program_id

    def _alive(self, pid: int) -> bool:
        try:
            return self.runner.is_alive(pid)
        except ProbeFailed:
            return False

    def _is_ours(self, program: Program) -> bool:
        return self.desired_state(program) == (STATUS_RUNNING, program.pid)

    def _event(self, kind: str, program: Program, *args):
        if self.events is None:
            return
        if kind == "started":
            self.events.started(program.id, program.name, *args)
        elif kind == "stopped":
            self.events.stopped(program.id, program.name, *args)
        elif kind == "error":
            self.events.error(program.id, program.name, *args)
        else:
            self.events.warning(program.id, program.name, *args)
