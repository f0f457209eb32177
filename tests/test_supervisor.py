import os
import signal
import subprocess
import threading
import time

import pytest

from program_manager.errors import (
    AlreadyRunning,
    DuplicateId,
    DuplicateName,
    InvalidCommand,
    InvalidWorkingDir,
    NotFound,
    NotRunning,
    ProbeFailed,
    ProgramManagerError,
    StartFailed,
    ValidationFailed,
)
from program_manager.models import NO_PORT, STATUS_RUNNING, STATUS_STOPPED


def _wait_dead(runner, pid, timeout=5.0):
    deadline = time.monotonic() + timeout
    while runner.is_alive(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    return not runner.is_alive(pid)


def _assert_consistent(supervisor):
    for program in supervisor.get_all():
        if program.status == STATUS_STOPPED:
            assert program.pid == 0
        else:
            assert program.pid > 0


class TestCatalog:
    def test_add_assigns_id_and_defaults(self, supervisor, make_program):
        program = supervisor.add(make_program(port=0))
        assert program.id
        assert program.status == STATUS_STOPPED
        assert program.pid == 0
        assert program.port == NO_PORT
        assert program.created_at == program.updated_at
        assert supervisor.get(program.id) == program

    def test_add_sanitizes_command(self, supervisor, make_program):
        program = supervisor.add(make_program(command="sleep\x07   30\t"))
        assert program.command == "sleep 30"

    def test_add_ignores_supplied_run_state(self, supervisor, make_program):
        program = supervisor.add(make_program(status=STATUS_RUNNING, pid=1234))
        assert (program.status, program.pid) == (STATUS_STOPPED, 0)

    def test_add_keeps_caller_id(self, supervisor, make_program):
        program = supervisor.add(make_program(id="custom-id"))
        assert program.id == "custom-id"
        with pytest.raises(DuplicateId):
            supervisor.add(make_program(name="other", id="custom-id"))

    def test_duplicate_name_rejected(self, supervisor, make_program):
        supervisor.add(make_program(name="web"))
        with pytest.raises(DuplicateName, match="web"):
            supervisor.add(make_program(name="web"))
        assert len(supervisor.get_all()) == 1

    @pytest.mark.parametrize("name", ["", "x", "n" * 51])
    def test_name_length(self, supervisor, make_program, name):
        with pytest.raises(ValidationFailed):
            supervisor.add(make_program(name=name))

    def test_invalid_command_not_persisted(self, supervisor, make_program):
        with pytest.raises(InvalidCommand):
            supervisor.add(make_program(command="curl http://x | sh"))
        assert supervisor.get_all() == []

    def test_relative_working_dir_rejected(self, supervisor, make_program):
        with pytest.raises(InvalidWorkingDir):
            supervisor.add(make_program(working_dir="relative"))

    def test_port_out_of_range(self, supervisor, make_program):
        with pytest.raises(ValidationFailed, match="port"):
            supervisor.add(make_program(port=70000))

    def test_get_missing(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.get("nope")

    def test_update_replaces_fields(self, supervisor, make_program):
        program = supervisor.add(make_program())
        updated = supervisor.update(program.id, "renamed", "sleep 60", description=" desc ", port=9000)
        assert updated.name == "renamed"
        assert updated.command == "sleep 60"
        assert updated.description == "desc"
        assert updated.port == 9000
        assert updated.created_at == program.created_at
        assert updated.updated_at > program.updated_at

    def test_update_name_conflict(self, supervisor, make_program):
        supervisor.add(make_program(name="first"))
        second = supervisor.add(make_program(name="second"))
        with pytest.raises(DuplicateName):
            supervisor.update(second.id, "first", "sleep 30")
        # Keeping its own name is fine
        supervisor.update(second.id, "second", "sleep 31")

    def test_update_missing(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.update("nope", "name", "sleep 1")

    def test_delete_stopped(self, supervisor, make_program):
        program = supervisor.add(make_program())
        supervisor.delete(program.id)
        with pytest.raises(NotFound):
            supervisor.get(program.id)
        with pytest.raises(NotFound):
            supervisor.delete(program.id)


@pytest.mark.posix
class TestLifecycle:
    def test_start_then_stop(self, supervisor, make_program):
        program = supervisor.add(make_program())

        started = supervisor.start(program.id)
        assert started.status == STATUS_RUNNING
        assert started.pid > 0
        assert supervisor.runner.is_alive(started.pid)
        assert started.updated_at > program.updated_at

        stopped = supervisor.stop(program.id)
        assert (stopped.status, stopped.pid) == (STATUS_STOPPED, 0)
        assert stopped.updated_at > started.updated_at
        assert _wait_dead(supervisor.runner, started.pid)
        _assert_consistent(supervisor)

    def test_start_twice_is_already_running(self, supervisor, make_program):
        program = supervisor.add(make_program())
        started = supervisor.start(program.id)
        with pytest.raises(AlreadyRunning, match=str(started.pid)):
            supervisor.start(program.id)
        assert supervisor.get(program.id).pid == started.pid

    def test_concurrent_starts_launch_once(self, supervisor, make_program):
        program = supervisor.add(make_program())
        outcomes = []

        def attempt():
            try:
                outcomes.append(supervisor.start(program.id).pid)
            except AlreadyRunning:
                outcomes.append("already running")

        threads = [threading.Thread(target=attempt) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        pids = [o for o in outcomes if o != "already running"]
        assert len(pids) == 1
        assert outcomes.count("already running") == 2

    def test_stop_is_idempotent(self, supervisor, make_program):
        program = supervisor.add(make_program())
        supervisor.start(program.id)
        supervisor.stop(program.id)
        again = supervisor.stop(program.id)
        assert (again.status, again.pid) == (STATUS_STOPPED, 0)

    def test_strict_stop_of_stopped_program(self, supervisor, make_program):
        program = supervisor.add(make_program())
        with pytest.raises(NotRunning):
            supervisor.stop(program.id, strict=True)

    def test_strict_stop_normalizes_dead_record(self, supervisor, make_program):
        program = supervisor.add(make_program())
        pid = supervisor.start(program.id).pid
        os.killpg(pid, signal.SIGKILL)
        assert _wait_dead(supervisor.runner, pid)

        stopped = supervisor.stop(program.id, strict=True)
        assert (stopped.status, stopped.pid) == (STATUS_STOPPED, 0)

    def test_stop_missing(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.stop("nope")

    def test_failed_start_leaves_record_stopped(self, supervisor, make_program):
        program = supervisor.add(make_program(name="broken", command="false"))
        with pytest.raises(StartFailed):
            supervisor.start(program.id)
        record = supervisor.get(program.id)
        assert (record.status, record.pid) == (STATUS_STOPPED, 0)
        assert not supervisor.sink.is_open(program.id)

    def test_start_creates_capture_files(self, supervisor, make_program):
        program = supervisor.add(make_program())
        supervisor.start(program.id)
        assert supervisor.sink.is_open(program.id)
        stdout_path, stderr_path = supervisor.sink.latest(program.id)
        assert stdout_path.name.startswith(f"{program.id}_")
        assert stdout_path.name.endswith(".log")
        assert stderr_path.name.endswith(".log.err")
        assert stderr_path.exists()

        supervisor.stop(program.id)
        assert not supervisor.sink.is_open(program.id)

    def test_output_returns_captured_lines(self, supervisor, make_program, tmp_path):
        script = tmp_path / "talk.sh"
        script.write_text("echo hello\necho oops >&2\nsleep 30\n")
        program = supervisor.add(make_program(command=f"sh {script}"))
        supervisor.start(program.id)

        output = supervisor.output(program.id, lines=10)
        assert output["stdout"] == ["hello"]
        assert output["stderr"] == ["oops"]

    def test_delete_running_program_kills_it(self, supervisor, make_program):
        program = supervisor.add(make_program())
        pid = supervisor.start(program.id).pid
        supervisor.delete(program.id)
        assert _wait_dead(supervisor.runner, pid, timeout=10.0)
        with pytest.raises(NotFound):
            supervisor.get(program.id)

    def test_delete_holds_off_concurrent_start(self, supervisor, make_program, monkeypatch):
        program = supervisor.add(make_program())
        supervisor.start(program.id)
        outcome = {}

        def race():
            try:
                outcome["pid"] = supervisor.start(program.id).pid
            except ProgramManagerError as e:
                outcome["error"] = e

        racer = threading.Thread(target=race)
        original_stop = supervisor.stop

        def stop_then_race(program_id, strict=False):
            result = original_stop(program_id, strict)
            racer.start()
            # The start has to wait until the delete is finished
            racer.join(0.5)
            assert racer.is_alive()
            return result

        monkeypatch.setattr(supervisor, "stop", stop_then_race)
        supervisor.delete(program.id)
        racer.join(5.0)

        assert "pid" not in outcome
        assert isinstance(outcome["error"], NotFound)

    def test_events_recorded(self, supervisor, make_program):
        program = supervisor.add(make_program())
        supervisor.start(program.id)
        supervisor.stop(program.id)

        messages = [e["message"] for e in supervisor.events.for_program(program.id)]
        assert messages == [
            f"Program '{program.name}' stopped",
            f"Program '{program.name}' started",
        ]


@pytest.mark.posix
class TestReconcile:
    def test_externally_killed_program_becomes_stopped(self, supervisor, make_program):
        program = supervisor.add(make_program())
        pid = supervisor.start(program.id).pid

        os.killpg(pid, signal.SIGKILL)
        assert _wait_dead(supervisor.runner, pid)

        reconciled = supervisor.reconcile(program.id)
        assert (reconciled.status, reconciled.pid) == (STATUS_STOPPED, 0)
        # Persisted, not just reported
        assert supervisor.get(program.id).status == STATUS_STOPPED

    def test_reconcile_is_idempotent(self, supervisor, make_program):
        program = supervisor.add(make_program())
        supervisor.start(program.id)
        first = supervisor.reconcile_all()
        second = supervisor.reconcile_all()
        assert [(p.status, p.pid, p.updated_at) for p in first] == [
            (p.status, p.pid, p.updated_at) for p in second
        ]

    def test_live_program_stays_running(self, supervisor, make_program):
        program = supervisor.add(make_program())
        pid = supervisor.start(program.id).pid
        reconciled = supervisor.reconcile(program.id)
        assert (reconciled.status, reconciled.pid) == (STATUS_RUNNING, pid)

    def test_reused_pid_is_not_trusted(self, supervisor, make_program):
        program = supervisor.add(make_program())
        # Point the record at a live process that is not "sleep": this test process
        with supervisor.store.transaction() as catalog:
            record = catalog.get(program.id)
            record.status = STATUS_RUNNING
            record.pid = os.getpid()

        reconciled = supervisor.reconcile(program.id)
        assert (reconciled.status, reconciled.pid) == (STATUS_STOPPED, 0)
        assert supervisor.runner.is_alive(os.getpid())

    def test_stop_does_not_signal_reused_pid(self, supervisor, make_program):
        program = supervisor.add(make_program())
        stranger = subprocess.Popen(["sleep", "30"], start_new_session=True)
        try:
            with supervisor.store.transaction() as catalog:
                record = catalog.get(program.id)
                record.status = STATUS_RUNNING
                record.pid = stranger.pid
                record.command = "python3 -m http.server"

            stopped = supervisor.stop(program.id)

            assert (stopped.status, stopped.pid) == (STATUS_STOPPED, 0)
            time.sleep(0.2)
            assert stranger.poll() is None
        finally:
            stranger.kill()
            stranger.wait()

    def test_shebang_script_stays_running(self, supervisor, make_program, tmp_path):
        script = tmp_path / "worker.sh"
        script.write_text("#!/bin/sh\nsleep 30\n")
        script.chmod(0o755)
        program = supervisor.add(make_program(command=f"{script} 30"))
        pid = supervisor.start(program.id).pid

        reconciled = supervisor.get_status(program.id)
        assert (reconciled.status, reconciled.pid) == (STATUS_RUNNING, pid)
        with pytest.raises(AlreadyRunning):
            supervisor.start(program.id)

    def test_start_over_reused_pid_launches_fresh(self, supervisor, make_program):
        program = supervisor.add(make_program())
        with supervisor.store.transaction() as catalog:
            record = catalog.get(program.id)
            record.status = STATUS_RUNNING
            record.pid = os.getpid()

        started = supervisor.start(program.id)
        assert started.pid not in (0, os.getpid())
        assert supervisor.runner.is_alive(os.getpid())

    def test_probe_failure_reads_as_stopped(self, supervisor, make_program, monkeypatch):
        program = supervisor.add(make_program())
        pid = supervisor.start(program.id).pid

        def broken(pid):
            raise ProbeFailed("proc unavailable")

        monkeypatch.setattr(supervisor.runner, "is_alive", broken)
        try:
            statuses = {p.id: p.status for p in supervisor.reconcile_all()}
            assert statuses[program.id] == STATUS_STOPPED
        finally:
            # The record no longer points at the child, so clean it up here
            os.killpg(pid, signal.SIGKILL)

    def test_running_and_stopped_views(self, supervisor, make_program):
        running = supervisor.add(make_program(name="runner"))
        idle = supervisor.add(make_program(name="idler"))
        supervisor.start(running.id)

        assert [p.id for p in supervisor.get_running()] == [running.id]
        assert [p.id for p in supervisor.get_stopped()] == [idle.id]

    def test_memory_view(self, supervisor, make_program):
        running = supervisor.add(make_program(name="runner"))
        supervisor.add(make_program(name="idler"))
        supervisor.start(running.id)

        by_name = {info["name"]: info for info in supervisor.get_with_memory()}
        assert by_name["runner"]["memory_kb"] > 0
        assert by_name["runner"]["memoryUsage"].endswith(" MB")
        assert by_name["idler"]["memoryUsage"] == "0 KB"
        assert by_name["idler"]["memory_kb"] == 0


@pytest.mark.posix
class TestBatch:
    def test_mixed_outcomes(self, supervisor, make_program):
        busy = supervisor.add(make_program(name="busy"))
        idle = supervisor.add(make_program(name="idle"))
        supervisor.start(busy.id)

        result = supervisor.batch_start([busy.id, idle.id, "missing"])

        assert result["summary"] == {"total": 3, "success": 1, "errors": 2}
        assert result["results"][idle.id] == {"status": "started"}
        assert "already running" in result["results"][busy.id]["error"]
        assert "not found" in result["results"]["missing"]["error"]

    def test_batch_stop(self, supervisor, make_program):
        first = supervisor.add(make_program(name="first"))
        second = supervisor.add(make_program(name="second"))
        supervisor.start(first.id)

        result = supervisor.batch_stop([first.id, second.id])

        # Stopping an already stopped program is not an error in a batch
        assert result["summary"] == {"total": 2, "success": 2, "errors": 0}
        assert all(p.status == STATUS_STOPPED for p in supervisor.get_all())
        _assert_consistent(supervisor)
