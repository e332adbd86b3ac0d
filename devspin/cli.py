"""
Command line interface for devspin.

    devspin start PROJECT [--only a,b | --skip c] [--env FILE] [--dry-run] [--background]
    devspin status [PROJECT]
    devspin stop PROJECT
    devspin serve

A foreground start supervises the services until they all exit or the user
interrupts it, then tears them down. A background start re-launches devspin
as a detached worker process and returns at once; status and stop read the
persistent process store, so they work from any later invocation.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import __version__
from .config import config
from .control import project_status, stop_project
from .errors import ConfigurationError, DependencyTimeout, DevspinError, HealthCheckTimeout, ProcessError
from .hooks import run_hook, run_hook_async
from .models import initialize_db
from .orchestrator import Orchestrator, ServiceFilter
from .project import Project, find_project_file, load_env_file, load_project
from .registry import ProcessRegistry
from .store import ProcessStore

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False):
    """Rotating file log plus console output."""
    config.ensure_dirs()
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[file_handler, console_handler],
        force=True,
    )


def _names(value: str) -> list[str]:
    return [part.strip() for part in value.split(",")]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devspin", description="Development environment manager")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a development project")
    start.add_argument("project", help="Project name, directory, or path to devspin.yaml")
    start.add_argument("--env", help="Environment file loaded before services are spawned")
    start.add_argument("--verbose", action="store_true", help="Show detailed output")
    start.add_argument("--background", action="store_true", help="Run in background")
    start.add_argument("--dry-run", action="store_true", help="Show what would start without starting it")
    start.add_argument("--json", action="store_true", help="Print the dry-run plan as JSON")
    start.add_argument("--only", type=_names, action="extend", help="Only start these services (comma separated)")
    start.add_argument("--skip", type=_names, action="extend", help="Skip these services (comma separated)")
    start.add_argument("--detached-worker", action="store_true", help=argparse.SUPPRESS)
    start.set_defaults(handler=cmd_start)

    status = subparsers.add_parser("status", help="Show processes started by devspin")
    status.add_argument("project", nargs="?", help="Limit to one project")
    status.add_argument("--json", action="store_true", help="Print JSON")
    status.add_argument("--verbose", action="store_true", help="Show detailed output")
    status.set_defaults(handler=cmd_status)

    stop = subparsers.add_parser("stop", help="Stop a running project")
    stop.add_argument("project", help="Project name or path to its devspin.yaml")
    stop.add_argument("--timeout", type=float, default=None, help="Seconds to wait before killing")
    stop.add_argument("--verbose", action="store_true", help="Show detailed output")
    stop.set_defaults(handler=cmd_stop)

    serve = subparsers.add_parser("serve", help="Run the status API")
    serve.add_argument("--host", default=config.host)
    serve.add_argument("--port", type=int, default=config.port)
    serve.add_argument("--verbose", action="store_true", help="Show detailed output")
    serve.set_defaults(handler=cmd_serve)

    return parser


def cmd_start(args) -> int:
    print(f"Starting project: {args.project}")
    service_filter = ServiceFilter(only=args.only, skip=args.skip)
    # Filters are checked before the project file is even read.
    service_filter.validate()
    project = load_project(args.project)

    if args.env:
        print(f"Loading environment from: {args.env}")
        load_env_file(args.env)

    # Cycles and filter typos surface here, before anything is spawned or detached.
    plan = Orchestrator(ProcessRegistry()).plan(project, service_filter, background=args.background)

    if args.dry_run:
        print(plan.to_json() if args.json else plan.render(verbose=args.verbose))
        return 0

    if args.only:
        print(f"Starting only: {', '.join(args.only)}")
    if args.skip:
        print(f"Skipping: {', '.join(args.skip)}")

    if args.background and not args.detached_worker:
        return launch_detached(args, project)

    initialize_db()
    return asyncio.run(supervise(project, service_filter, ProcessStore(), background=args.detached_worker))


def launch_detached(args, project: Project) -> int:
    """Re-run this start as a detached worker process and return immediately."""
    cmd = [
        sys.executable, "-m", "devspin", "start",
        str(find_project_file(args.project).resolve()),
        "--detached-worker",
    ]
    if args.only:
        cmd += ["--only", ",".join(args.only)]
    if args.skip:
        cmd += ["--skip", ",".join(args.skip)]
    if args.env:
        cmd += ["--env", str(Path(args.env).resolve())]
    if args.verbose:
        cmd.append("--verbose")

    log_path = config.project_log_dir(project.name) / "devspin.log"
    with open(log_path, "a") as log_file:
        worker = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            cwd=os.getcwd(),
            start_new_session=True,
        )

    print(f"Project '{project.name}' starting in background (worker PID {worker.pid})")
    print(f"Log: {log_path}")
    print(f"Check status: devspin status {project.name}")
    print(f"Stop services: devspin stop {project.name}")
    return 0


async def supervise(project: Project, service_filter: ServiceFilter, store: ProcessStore, background: bool) -> int:
    """Start the project, then watch its processes until they exit or we are stopped."""
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_requested.set)

    registry = ProcessRegistry(store=store)
    orchestrator = Orchestrator(registry, store=store)
    exit_code = 0

    try:
        try:
            result = await orchestrator.start(project, service_filter, background=background)
            if result.job is not None:
                result = await result.job.wait() or result
        except (ProcessError, HealthCheckTimeout, DependencyTimeout) as e:
            print(f"Error: {e}", file=sys.stderr)
            exit_code = 1
        else:
            for name in result.skipped:
                print(f"Skipped: {name}")
            for name in result.failed:
                print(f"Failed: {name}", file=sys.stderr)

        running = registry.running()
        if not running:
            return exit_code

        print(f"Tracking {registry.count()} processes; press Ctrl+C to stop")
        waiter = asyncio.create_task(orchestrator.wait())
        stopper = asyncio.create_task(stop_requested.wait())
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in (waiter, stopper):
            task.cancel()

        if stop_requested.is_set():
            print(f"Stopping project: {project.name}")
            await run_hook_async(project, "pre_stop")
        return exit_code

    finally:
        await orchestrator.aclose()
        live = len(registry.running())
        await asyncio.to_thread(registry.close)
        if stop_requested.is_set() and live:
            await run_hook_async(project, "post_stop")
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def cmd_status(args) -> int:
    initialize_db()
    snapshots = project_status(ProcessStore(), args.project)

    if args.json:
        print(json.dumps([s.to_dict() for s in snapshots], indent=2))
        return 0

    if not snapshots:
        print(f"No processes recorded for {args.project}" if args.project else "No processes recorded")
        return 0

    header = f"{'PROJECT':<16} {'SERVICE':<16} {'PID':>7} {'STATUS':<8} {'CPU%':>5} {'MEM MB':>7} {'UPTIME':>8}  COMMAND"
    print(header)
    for s in snapshots:
        uptime = f"{int(s.uptime_seconds)}s" if s.alive else "-"
        print(
            f"{s.project:<16} {s.service:<16} {s.pid:>7} {s.status:<8} "
            f"{s.cpu_percent:>5.1f} {s.memory_mb:>7.1f} {uptime:>8}  {s.command}"
        )
        if s.reason:
            print(f"{'':<16} {'':<16} {'':>7} reason: {s.reason}")
    return 0


def cmd_stop(args) -> int:
    initialize_db()
    project = None
    name = args.project
    try:
        project = load_project(args.project)
        name = project.name
    except ConfigurationError:
        logger.debug(f"No project file for {args.project}, stopping by name without hooks")

    if project is not None:
        run_hook(project, "pre_stop")

    stopped = stop_project(ProcessStore(), name, timeout=args.timeout)

    if project is not None:
        run_hook(project, "post_stop")

    if stopped:
        print(f"Stopped {len(stopped)} processes for {name}: {', '.join(str(p) for p in stopped)}")
    else:
        print(f"No running processes for {name}")
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("devspin.api:app", host=args.host, port=args.port, reload=False)
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(getattr(args, "verbose", False))

    try:
        return args.handler(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except DevspinError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
