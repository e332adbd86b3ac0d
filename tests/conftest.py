"""Shared fixtures for devspin tests."""

import logging
import os
import socket
import subprocess
import tempfile

# Keep the database and logs of the test run away from ~/.devspin.
# Set before devspin.config is imported.
os.environ.setdefault("DEVSPIN_HOME", tempfile.mkdtemp(prefix="devspin-tests-"))

import pytest

from devspin.models import initialize_db
from devspin.project import Project, Service
from devspin.registry import ProcessRegistry
from devspin.store import ProcessStore


@pytest.fixture(autouse=True)
def restore_logging():
    # cli.main() reconfigures the root logger with force=True.
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def store(tmp_path):
    db = initialize_db(tmp_path / "devspin.db")
    yield ProcessStore()
    db.close()


@pytest.fixture
def registry(store):
    with ProcessRegistry(store=store, stop_timeout=2) as registry:
        yield registry


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def make_project(tmp_path):
    """Build a Project rooted at tmp_path from (name, command, deps) tuples or dicts."""

    def factory(services, name="demo", **kwargs):
        built = []
        for spec in services:
            if isinstance(spec, dict):
                built.append(Service(**spec))
            else:
                service_name, command, deps = spec
                built.append(Service(name=service_name, command=command, dependencies=deps))
        return Project(name=name, base_dir=tmp_path, services=built, **kwargs)

    return factory


@pytest.fixture
def sleeper():
    """Spawn long-running processes in their own session; killed at teardown."""
    spawned = []

    def spawn(seconds=30):
        proc = subprocess.Popen(f"sleep {seconds}", shell=True, start_new_session=True)
        spawned.append(proc)
        return proc

    yield spawn

    for proc in spawned:
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass
