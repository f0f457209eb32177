"""
Pytest configuration and shared fixtures for program manager tests.

Every test gets its own data directory, so catalogs, capture files and the
history database never leak between tests. Runner timings are shortened to
keep process tests quick.
"""

import sys

import pytest

from program_manager.config import Config
from program_manager.main import build_supervisor, create_app
from program_manager.models import Program
from program_manager.runner import ProcessRunner


def pytest_collection_modifyitems(config, items):
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="needs POSIX processes and signals")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary data directory."""
    cfg = Config(
        data_dir=tmp_path / "data",
        start_grace=0.3,
        stop_term_timeout=2.0,
        stop_kill_timeout=2.0,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def runner():
    return ProcessRunner(start_grace=0.3, term_timeout=1.0, kill_timeout=2.0)


@pytest.fixture
def supervisor(config):
    sup = build_supervisor(config)
    yield sup
    _stop_everything(sup)
    sup.shutdown()


@pytest.fixture
def client(config):
    from fastapi.testclient import TestClient

    app = create_app(config)
    with TestClient(app) as test_client:
        yield test_client
    _stop_everything(app.state.supervisor)


@pytest.fixture
def make_program():
    """Build an unsaved Program with sensible defaults."""

    def factory(name="sleeper", command="sleep 30", **kwargs):
        return Program(id=kwargs.pop("id", ""), name=name, command=command, **kwargs)

    return factory


def _stop_everything(sup):
    for program in sup.store.load().all():
        if program.pid > 0 and sup.runner.is_alive(program.pid):
            try:
                sup.runner.stop(program.pid)
            except Exception:
                pass
