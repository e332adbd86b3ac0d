"""
Service start orchestration.

Turns a project's service graph into running processes: resolve a
dependency-safe order, then for every included service wait for its
dependencies, spawn the shell command, register the process, attach an exit
monitor and probe readiness. Foreground starts run the sequence in the
caller's task; background starts run it as a tracked detached job.
"""

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import config
from .control import is_alive
from .errors import ConfigurationError, DependencyTimeout, HealthCheckTimeout, ProcessError
from .health import HealthProber
from .hooks import run_hook_async
from .jobs import Job, JobManager
from .project import Project, Service
from .registry import ProcessRegistry, ProcessStatus
from .resolver import resolve_order

logger = logging.getLogger(__name__)


@dataclass
class ServiceFilter:
    """Inclusion (only) or exclusion (skip) list of service names."""

    only: Optional[list[str]] = None
    skip: Optional[list[str]] = None

    def validate(self, project: Optional[Project] = None):
        if self.only is not None and self.skip is not None:
            raise ConfigurationError("Cannot use both --only and --skip filters simultaneously")

        for flag, names in (("--only", self.only), ("--skip", self.skip)):
            for name in names or []:
                if not name or not name.strip():
                    raise ConfigurationError(f"Empty service name in {flag} filter")
            if project is not None:
                known = set(project.service_names())
                for name in names or []:
                    if name.strip() not in known:
                        logger.warning(f"Service '{name}' in {flag} filter is not declared in {project.name}")

    def includes(self, name: str) -> bool:
        if self.only is not None:
            return name in {n.strip() for n in self.only}
        if self.skip is not None:
            return name not in {n.strip() for n in self.skip}
        return True

    def describe(self) -> str:
        if self.only is not None:
            return f"only={','.join(self.only)}"
        if self.skip is not None:
            return f"skip={','.join(self.skip)}"
        return "none"


@dataclass
class PlanEntry:
    position: int
    name: str
    kind: str
    command: str
    working_dir: Path
    health_check: str
    dependencies: list[str]
    included: bool

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "name": self.name,
            "kind": self.kind,
            "command": self.command,
            "working_dir": str(self.working_dir),
            "health_check": self.health_check,
            "dependencies": self.dependencies,
            "included": self.included,
        }


@dataclass
class Plan:
    """Fully resolved start plan, produced by a dry run."""

    project: Project
    entries: list[PlanEntry]
    service_filter: ServiceFilter
    background: bool = False

    @property
    def included(self) -> list[str]:
        return [e.name for e in self.entries if e.included]

    @property
    def skipped(self) -> list[str]:
        return [e.name for e in self.entries if not e.included]

    def to_dict(self) -> dict:
        return {
            "project": self.project.name,
            "description": self.project.description,
            "base_dir": str(self.project.base_dir),
            "mode": "background" if self.background else "foreground",
            "filter": self.service_filter.describe(),
            "environment": self.project.environment,
            "hooks": self.project.hooks.model_dump() if self.project.hooks else None,
            "services": [e.to_dict() for e in self.entries],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def render(self, verbose: bool = False) -> str:
        project = self.project
        lines = [f"DRY RUN - Would start project: {project.name}"]

        if verbose:
            lines.append("  CONFIGURATION DETAILS:")
            lines.append(f"    Base directory: {project.base_dir}")
            if project.description:
                lines.append(f"    Description: {project.description}")
            lines.append(f"    Service filter: {self.service_filter.describe()}")
            if project.environment:
                lines.append(f"    Environment variables ({len(project.environment)}):")
                for key, value in sorted(project.environment.items()):
                    lines.append(f"      - {key}={value}")
            if project.hooks:
                lines.append("    Hooks:")
                for name, command in project.hooks.model_dump().items():
                    if command:
                        lines.append(f"      - {name}: {command}")

        lines.append("Mode: Background (detached)" if self.background else "Mode: Foreground (attached)")
        lines.append("")
        lines.append("  SERVICES (start order):")

        for entry in self.entries:
            marker = "+" if entry.included else "-"
            if not verbose:
                detail = entry.command if entry.included else "(skipped)"
                lines.append(f"  {entry.position}. [{marker}] {entry.name}: {detail}")
                continue

            lines.append(f"  {entry.position}. [{marker}] {entry.name}:")
            lines.append(f"       Type: {entry.kind}")
            lines.append(f"       Command: {entry.command}")
            lines.append(f"       Working directory: {entry.working_dir}")
            lines.append(f"       Dependencies: {', '.join(entry.dependencies) or 'none'}")
            lines.append(f"       Health check: {entry.health_check}")
            if not entry.included:
                lines.append("       Status: SKIPPED (filtered out)")

        if verbose:
            lines.append("---")
            lines.append(f"Total services: {len(self.entries)} ({len(self.skipped)} skipped)")
        return "\n".join(lines)


@dataclass
class StartResult:
    """Outcome of Orchestrator.start."""

    project: str
    started: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    plan: Optional[Plan] = None
    job: Optional[Job] = None


class Orchestrator:
    """Starts project services in dependency order."""

    def __init__(
        self,
        registry: ProcessRegistry,
        prober: HealthProber = None,
        jobs: JobManager = None,
        store=None,
        dependency_timeout: float = None,
        poll_interval: float = None,
        monitor_interval: float = None,
        fail_on_health_timeout: bool = None,
        fail_on_dependency_timeout: bool = None,
        allow_cycles: bool = None,
    ):
        self.registry = registry
        self.prober = prober or HealthProber()
        self.jobs = jobs or JobManager()
        self.store = store
        self.dependency_timeout = dependency_timeout if dependency_timeout is not None else config.dependency_timeout
        self.poll_interval = poll_interval if poll_interval is not None else config.health_poll_interval
        self.monitor_interval = monitor_interval if monitor_interval is not None else config.monitor_interval
        self.fail_on_health_timeout = (
            fail_on_health_timeout if fail_on_health_timeout is not None else config.fail_on_health_timeout
        )
        self.fail_on_dependency_timeout = (
            fail_on_dependency_timeout
            if fail_on_dependency_timeout is not None
            else config.fail_on_dependency_timeout
        )
        self.allow_cycles = allow_cycles if allow_cycles is not None else config.allow_dependency_cycles
        self._monitors: list[asyncio.Task] = []

    def plan(self, project: Project, service_filter: ServiceFilter = None, background: bool = False) -> Plan:
        """Resolve order, working directories and filters without side effects."""
        service_filter = service_filter or ServiceFilter()
        service_filter.validate(project)
        order = resolve_order(project.services, allow_cycles=self.allow_cycles)

        entries = [
            PlanEntry(
                position=i,
                name=service.name,
                kind=service.kind,
                command=service.command,
                working_dir=project.resolve_working_dir(service),
                health_check=service.health_check.describe() if service.health_check else "none",
                dependencies=list(service.dependencies),
                included=service_filter.includes(service.name),
            )
            for i, service in enumerate(order, start=1)
        ]
        return Plan(project=project, entries=entries, service_filter=service_filter, background=background)

    async def start(
        self,
        project: Project,
        service_filter: ServiceFilter = None,
        dry_run: bool = False,
        background: bool = False,
    ) -> StartResult:
        """Start the project's services.

        Configuration problems raise ConfigurationError before anything is
        spawned. In foreground mode a spawn failure raises ProcessError and
        aborts the rest of the sequence; in background mode this returns as
        soon as the detached job is scheduled.
        """
        plan = self.plan(project, service_filter, background)

        if dry_run:
            return StartResult(project=project.name, skipped=plan.skipped, plan=plan)

        if background:
            logger.info(f"Starting project '{project.name}' in background mode...")
            job = self.jobs.run_async_in_background(
                f"start {project.name}", self._run_sequence, plan, True
            )
            return StartResult(project=project.name, plan=plan, job=job)

        return await self._run_sequence(plan, False)

    async def wait(self):
        """Wait until every monitored process has exited."""
        while True:
            pending = [t for t in self._monitors if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self):
        """Cancel exit monitors and unfinished background jobs."""
        await self.jobs.cancel_all()
        for task in self._monitors:
            task.cancel()
        if self._monitors:
            await asyncio.gather(*self._monitors, return_exceptions=True)
        self._monitors.clear()

    async def _run_sequence(self, plan: Plan, background: bool) -> StartResult:
        project = plan.project
        result = StartResult(project=project.name, plan=plan)
        scheduled = set(plan.included)

        if self.store is not None:
            await asyncio.to_thread(self.store.prune, project.name)

        await run_hook_async(project, "pre_start")
        logger.info(f"Starting services for {project.name}...")

        for entry in plan.entries:
            if not entry.included:
                logger.info(f"Skipping service: {entry.name} (filtered out)")
                result.skipped.append(entry.name)
                continue

            service = project.get_service(entry.name)
            try:
                await self._start_service(project, service, scheduled, result, background)
            except (ProcessError, HealthCheckTimeout, DependencyTimeout) as e:
                result.failed.append(service.name)
                if not background:
                    logger.error(str(e))
                    raise
                logger.error(f"{e}; continuing with remaining services")

        await run_hook_async(project, "post_start")

        if result.failed:
            logger.warning(
                f"Project '{project.name}' started with failures: {', '.join(result.failed)}"
            )
        else:
            logger.info(f"All services started successfully for {project.name}")
        logger.info(f"Tracking {self.registry.count()} processes")
        return result

    async def _start_service(
        self, project: Project, service: Service, scheduled: set, result: StartResult, background: bool
    ):
        try:
            await self._wait_for_dependencies(project, service, scheduled)
        except DependencyTimeout as e:
            if self.fail_on_dependency_timeout:
                raise
            logger.warning(str(e))
            result.warnings.append(str(e))

        working_dir = project.resolve_working_dir(service)
        handle = self._spawn(project, service, working_dir, capture=background)
        pid = await asyncio.to_thread(
            self.registry.register, handle, service.name, project.name, service.command
        )
        result.started.append(pid)
        logger.info(f"Started service: {service.name} (PID {pid}) in directory: {working_dir}")

        self._monitors.append(asyncio.create_task(self._monitor(pid, service.name)))

        if service.health_check is None:
            return
        try:
            await self.prober.wait_until_ready(service.name, service.health_check)
        except HealthCheckTimeout as e:
            if self.fail_on_health_timeout:
                raise
            logger.warning(str(e))
            result.warnings.append(str(e))

    async def _wait_for_dependencies(self, project: Project, service: Service, scheduled: set):
        known = set(project.service_names())

        for dep_name in service.dependencies:
            if dep_name not in known:
                logger.debug(f"Ignoring unknown dependency {dep_name} of {service.name}")
                continue

            if dep_name not in scheduled:
                if await asyncio.to_thread(self._running_elsewhere, project.name, dep_name):
                    logger.debug(f"Dependency {dep_name} of {service.name} is running from an earlier start")
                else:
                    logger.warning(f"Dependency {dep_name} of {service.name} is filtered out and not running")
                continue

            if self.registry.is_running(project.name, dep_name):
                continue

            logger.info(f"Waiting for dependency: {service.name} -> {dep_name}")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.dependency_timeout
            while not self.registry.is_running(project.name, dep_name):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise DependencyTimeout(service.name, dep_name, self.dependency_timeout)
                await asyncio.sleep(min(self.poll_interval, remaining))

    def _running_elsewhere(self, project_name: str, service_name: str) -> bool:
        if self.store is None:
            return False
        return any(
            e.service == service_name and e.status == ProcessStatus.RUNNING.value and is_alive(e)
            for e in self.store.list(project_name)
        )

    def _spawn(self, project: Project, service: Service, working_dir: Path, capture: bool) -> subprocess.Popen:
        if not working_dir.is_dir():
            raise ProcessError(service.name, f"working directory does not exist: {working_dir}")

        log_file = None
        try:
            if capture:
                log_path = config.project_log_dir(project.name) / f"{service.name}.log"
                log_file = open(log_path, "a")

            return subprocess.Popen(
                service.command,
                shell=True,
                cwd=working_dir,
                env=project.merged_environment(),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT if log_file else None,
                start_new_session=True,  # Own process group, for clean teardown
            )
        except OSError as e:
            raise ProcessError(service.name, str(e)) from e
        finally:
            if log_file is not None:
                log_file.close()

    async def _monitor(self, pid: int, service_name: str):
        """Poll a registered process until it exits and record the outcome."""
        while True:
            try:
                returncode = self.registry.poll(pid)
            except KeyError:
                return  # stopped or torn down elsewhere
            if returncode is not None:
                break
            await asyncio.sleep(self.monitor_interval)

        if returncode == 0:
            status, reason = ProcessStatus.STOPPED, None
            logger.info(f"Service {service_name} (PID {pid}) exited")
        elif returncode < 0:
            status, reason = ProcessStatus.STOPPED, f"terminated by signal {-returncode}"
            logger.info(f"Service {service_name} (PID {pid}) {reason}")
        else:
            error = ProcessError(service_name, f"PID {pid} exited with code {returncode}")
            status, reason = ProcessStatus.FAILED, error.reason
            logger.error(str(error))

        await asyncio.to_thread(self.registry.mark_exited, pid, status, reason)
