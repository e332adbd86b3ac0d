"""Tests for start orchestration."""

import asyncio
import shlex
import sys
import time

import pytest
import pytest_asyncio

from devspin.config import config
from devspin.errors import ConfigurationError, DependencyTimeout, HealthCheckTimeout, ProcessError
from devspin.health import HealthProber
from devspin.jobs import JobStatus
from devspin.orchestrator import Orchestrator, ServiceFilter
from devspin.project import Hooks
from devspin.registry import ProcessStatus

SLEEP = "sleep 30"


@pytest_asyncio.fixture
async def orchestrator(registry, store):
    orchestrator = Orchestrator(
        registry,
        prober=HealthProber(poll_interval=0.1, timeout=2, host="127.0.0.1"),
        store=store,
        dependency_timeout=0.5,
        poll_interval=0.1,
        monitor_interval=0.05,
    )
    yield orchestrator
    await orchestrator.aclose()


def started_services(registry, result):
    return [registry.get(pid).service_name for pid in result.started]


@pytest.fixture
def chain(make_project):
    # Declared backwards on purpose.
    return make_project([("C", SLEEP, ["B"]), ("B", SLEEP, ["A"]), ("A", SLEEP, [])])


@pytest.mark.asyncio
async def test_starts_in_dependency_order(orchestrator, registry, chain):
    result = await orchestrator.start(chain)

    assert started_services(registry, result) == ["A", "B", "C"]
    assert result.skipped == [] and result.failed == []
    assert all(registry.is_running("demo", name) for name in "ABC")
    assert registry.count() == 3


@pytest.mark.asyncio
async def test_only_filter_starts_just_the_named_service(orchestrator, registry, chain):
    result = await orchestrator.start(chain, ServiceFilter(only=["A"]))

    assert started_services(registry, result) == ["A"]
    assert result.skipped == ["B", "C"]
    assert result.failed == []
    assert registry.count() == 1


@pytest.mark.asyncio
async def test_skip_filter(orchestrator, registry, chain):
    result = await orchestrator.start(chain, ServiceFilter(skip=["C"]))

    assert started_services(registry, result) == ["A", "B"]
    assert result.skipped == ["C"]


@pytest.mark.asyncio
async def test_only_and_skip_together_fail_before_spawning(orchestrator, registry, chain):
    with pytest.raises(ConfigurationError, match="both --only and --skip"):
        await orchestrator.start(chain, ServiceFilter(only=["A"], skip=["B"]))
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_blank_filter_entry_is_rejected(orchestrator, chain):
    with pytest.raises(ConfigurationError, match="Empty service name in --skip"):
        await orchestrator.start(chain, ServiceFilter(skip=["A", " "]))


@pytest.mark.asyncio
async def test_cycle_fails_before_spawning(orchestrator, registry, make_project):
    project = make_project([("a", SLEEP, ["b"]), ("b", SLEEP, ["a"])])
    with pytest.raises(ConfigurationError, match="cycle"):
        await orchestrator.start(project)
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_dry_run_spawns_nothing(orchestrator, registry, make_project, tmp_path):
    project = make_project(
        [
            {"name": "web", "command": "npm run dev", "working_dir": "frontend", "dependencies": ["api"]},
            {"name": "api", "command": "uvicorn app:app", "health_check": {"type": "port", "port": 8000}},
        ],
        environment={"DEBUG": "1"},
    )

    result = await orchestrator.start(project, ServiceFilter(skip=["web"]), dry_run=True)

    assert registry.count() == 0
    assert result.started == []
    assert result.skipped == ["web"]
    plan = result.plan
    assert [e.name for e in plan.entries] == ["api", "web"]
    assert plan.entries[1].working_dir == tmp_path / "frontend"
    assert plan.entries[0].health_check == "port 8000"

    text = plan.render(verbose=True)
    assert "DRY RUN - Would start project: demo" in text
    assert "Status: SKIPPED (filtered out)" in text
    assert "DEBUG=1" in text
    assert '"included": false' in plan.to_json()


@pytest.mark.asyncio
async def test_spawn_failure_aborts_foreground_sequence(orchestrator, registry, make_project):
    project = make_project(
        [
            {"name": "A", "command": SLEEP},
            {"name": "B", "command": SLEEP, "working_dir": "missing", "dependencies": ["A"]},
            {"name": "C", "command": SLEEP, "dependencies": ["B"]},
        ]
    )

    with pytest.raises(ProcessError, match="Service B failed: working directory does not exist"):
        await orchestrator.start(project)

    # Already-started services are left running.
    assert registry.is_running("demo", "A")
    assert not registry.is_running("demo", "C")
    assert registry.count() == 1


@pytest.mark.asyncio
async def test_background_returns_immediately_and_continues_past_failures(
    orchestrator, registry, make_project
):
    project = make_project(
        [
            {"name": "A", "command": SLEEP},
            {"name": "B", "command": SLEEP, "working_dir": "missing"},
            {"name": "C", "command": SLEEP},
        ]
    )

    result = await orchestrator.start(project, background=True)
    assert result.job is not None
    assert result.started == []

    final = await result.job.wait()

    assert result.job.status is JobStatus.COMPLETED
    assert final.failed == ["B"]
    assert started_services(registry, final) == ["A", "C"]


@pytest.mark.asyncio
async def test_monitor_records_exit_outcomes(orchestrator, registry, make_project):
    project = make_project([("ok", "true", []), ("broken", "exit 3", [])])

    result = await orchestrator.start(project)
    await asyncio.wait_for(orchestrator.wait(), timeout=5)

    ok, broken = (registry.get(pid) for pid in result.started)
    assert ok.status is ProcessStatus.STOPPED
    assert broken.status is ProcessStatus.FAILED
    assert broken.reason.endswith("exited with code 3")


@pytest.mark.asyncio
async def test_environment_and_working_directory(orchestrator, make_project, tmp_path, monkeypatch):
    (tmp_path / "sub").mkdir()
    monkeypatch.setenv("DEVSPIN_FROM_PROCESS", "outer")
    project = make_project(
        [{"name": "writer", "command": 'echo "$GREETING $DEVSPIN_FROM_PROCESS" > out.txt', "working_dir": "sub"}],
        environment={"GREETING": "hello"},
    )

    await orchestrator.start(project)
    await asyncio.wait_for(orchestrator.wait(), timeout=5)

    assert (tmp_path / "sub" / "out.txt").read_text().strip() == "hello outer"


@pytest.mark.asyncio
async def test_health_timeout_is_a_warning_by_default(orchestrator, registry, make_project, free_port):
    project = make_project(
        [
            {"name": "api", "command": SLEEP, "health_check": {"type": "port", "port": free_port, "timeout": 0.3}},
            {"name": "web", "command": SLEEP, "dependencies": ["api"]},
        ]
    )

    result = await orchestrator.start(project)

    assert started_services(registry, result) == ["api", "web"]
    assert any("not ready" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_health_timeout_can_be_escalated(registry, store, make_project, free_port):
    orchestrator = Orchestrator(
        registry,
        prober=HealthProber(poll_interval=0.1, host="127.0.0.1"),
        store=store,
        fail_on_health_timeout=True,
        monitor_interval=0.05,
    )
    project = make_project(
        [
            {"name": "api", "command": SLEEP, "health_check": {"type": "port", "port": free_port, "timeout": 0.3}},
            {"name": "web", "command": SLEEP},
        ]
    )
    try:
        with pytest.raises(HealthCheckTimeout):
            await orchestrator.start(project)
        assert not registry.is_running("demo", "web")
    finally:
        await orchestrator.aclose()


@pytest.mark.asyncio
async def test_health_check_waits_for_port(orchestrator, registry, make_project, free_port):
    server = (
        f"{shlex.quote(sys.executable)} -c \"import socket,time; time.sleep(0.5); s=socket.socket(); "
        f"s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1); "
        f"s.bind(('127.0.0.1', {free_port})); s.listen(); time.sleep(30)\""
    )
    project = make_project([{"name": "api", "command": server, "health_check": {"type": "port", "port": free_port}}])

    result = await orchestrator.start(project)

    assert result.warnings == []
    assert registry.is_running("demo", "api")


def crashing_db_project(make_project, port):
    # The health check gives the monitor time to see db exit before api is reached.
    return make_project(
        [
            {"name": "db", "command": "exit 1", "health_check": {"type": "port", "port": port, "timeout": 0.3}},
            {"name": "api", "command": SLEEP, "dependencies": ["db"]},
        ]
    )


@pytest.mark.asyncio
async def test_dependency_wait_is_bounded(orchestrator, registry, make_project, free_port):
    project = crashing_db_project(make_project, free_port)

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await asyncio.wait_for(orchestrator.start(project), timeout=5)

    assert loop.time() - started >= 0.5
    assert registry.is_running("demo", "api")
    assert any("gave up waiting 0.5s for dependency db" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_dependency_timeout_can_be_escalated(registry, store, make_project, free_port):
    orchestrator = Orchestrator(
        registry,
        prober=HealthProber(poll_interval=0.1, host="127.0.0.1"),
        store=store,
        dependency_timeout=0.3,
        poll_interval=0.1,
        monitor_interval=0.05,
        fail_on_dependency_timeout=True,
    )
    project = crashing_db_project(make_project, free_port)
    try:
        with pytest.raises(DependencyTimeout) as excinfo:
            await orchestrator.start(project)
        assert excinfo.value.dependency == "db"
        assert not registry.is_running("demo", "api")
    finally:
        await orchestrator.aclose()


@pytest.mark.asyncio
async def test_filtered_out_dependency_is_not_waited_on(orchestrator, registry, chain):
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await orchestrator.start(chain, ServiceFilter(only=["B"]))

    assert started_services(registry, result) == ["B"]
    assert loop.time() - started < 0.5


@pytest.mark.asyncio
async def test_hooks_run_around_start(orchestrator, make_project, tmp_path):
    project = make_project(
        [("A", "true", [])],
        hooks=Hooks(pre_start="echo pre >> hooks.log", post_start="echo post >> hooks.log"),
    )

    await orchestrator.start(project)

    assert (tmp_path / "hooks.log").read_text().split() == ["pre", "post"]


@pytest.mark.asyncio
async def test_records_reach_the_store(orchestrator, store, chain):
    result = await orchestrator.start(chain, ServiceFilter(only=["A"]))

    [entry] = store.list("demo")
    assert entry.pid == result.started[0]
    assert entry.service == "A"
    assert entry.status == "running"


@pytest.mark.asyncio
async def test_unwritable_log_directory_is_a_service_failure(
    orchestrator, registry, make_project, tmp_path, monkeypatch
):
    monkeypatch.setattr(config, "project_log_dir", lambda name: tmp_path / "no-such-dir" / name)
    project = make_project([("A", SLEEP, []), ("B", SLEEP, [])])

    result = await orchestrator.start(project, background=True)
    final = await result.job.wait()

    assert result.job.status is JobStatus.COMPLETED
    assert final.failed == ["A", "B"]
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_store_work_does_not_block_the_event_loop(orchestrator, store, chain, monkeypatch):
    real_prune = store.prune

    def slow_prune(project):
        time.sleep(0.3)
        return real_prune(project)

    monkeypatch.setattr(store, "prune", slow_prune)
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.02)

    task = asyncio.create_task(ticker())
    try:
        await orchestrator.start(chain, ServiceFilter(only=["A"]))
    finally:
        task.cancel()

    assert ticks >= 5
