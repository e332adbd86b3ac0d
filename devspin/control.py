"""
Cross-invocation status and stop for started projects.

Reads the persistent process store and inspects the recorded pids with
psutil: liveness (guarded against pid reuse), CPU and memory usage including
child processes, and termination of whole process trees.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import psutil

from .config import config
from .models import ProcessEntry
from .store import ProcessStore

logger = logging.getLogger(__name__)

# Allowed gap between the recorded start time and the OS process create time.
PID_REUSE_TOLERANCE = 5.0


def _process_for(entry: ProcessEntry) -> Optional[psutil.Process]:
    """Live psutil process for entry, or None if it is gone or the pid was reused."""
    try:
        proc = psutil.Process(entry.pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        created = datetime.fromtimestamp(proc.create_time())
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        logger.warning(f"Access denied for PID {entry.pid}")
        return None

    if entry.started_at and abs((created - entry.started_at).total_seconds()) > PID_REUSE_TOLERANCE:
        logger.debug(f"PID {entry.pid} now belongs to another process")
        return None
    return proc


def is_alive(entry: ProcessEntry) -> bool:
    return _process_for(entry) is not None


@dataclass
class ProcessSnapshot:
    """Point-in-time view of a recorded process."""

    pid: int
    project: str
    service: str
    command: str
    status: str
    reason: Optional[str]
    started_at: datetime
    alive: bool
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    child_processes: int = 0
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "project": self.project,
            "service": self.service,
            "command": self.command,
            "status": self.status,
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "alive": self.alive,
            "cpu_percent": self.cpu_percent,
            "memory_mb": self.memory_mb,
            "child_processes": self.child_processes,
            "uptime_seconds": self.uptime_seconds,
        }


def _snapshot(store: ProcessStore, entry: ProcessEntry, sample_interval: Optional[float]) -> ProcessSnapshot:
    snapshot = ProcessSnapshot(
        pid=entry.pid,
        project=entry.project,
        service=entry.service,
        command=entry.command,
        status=entry.status,
        reason=entry.reason,
        started_at=entry.started_at,
        alive=False,
    )

    proc = _process_for(entry)
    if proc is None:
        if entry.status == "running":
            # Exited without anyone recording it (owner killed, machine slept...).
            store.update_status(entry.pid, "stopped", "process no longer exists")
            snapshot.status = "stopped"
            snapshot.reason = "process no longer exists"
        return snapshot

    snapshot.alive = True
    try:
        cpu_percent = proc.cpu_percent(interval=sample_interval)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        # Include children
        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=None)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        snapshot.cpu_percent = round(cpu_percent, 1)
        snapshot.memory_mb = round(memory_mb, 1)
        snapshot.child_processes = child_count
        snapshot.uptime_seconds = round(
            (datetime.now() - datetime.fromtimestamp(proc.create_time())).total_seconds(), 1
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug(f"Could not sample PID {entry.pid}: {e}")

    return snapshot


def project_status(
    store: ProcessStore, project: Optional[str] = None, sample_interval: Optional[float] = 0.1
) -> list[ProcessSnapshot]:
    """Snapshots of every recorded process, optionally for one project."""
    return [_snapshot(store, entry, sample_interval) for entry in store.list(project)]


def terminate_tree(pid: int, timeout: float) -> bool:
    """Terminate a process and its descendants. Returns False if it was already gone."""
    try:
        proc = psutil.Process(pid)
        procs = proc.children(recursive=True) + [proc]
    except psutil.NoSuchProcess:
        return False

    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning(f"PID {pid}: {len(alive)} processes did not stop gracefully, forcing kill")
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=5)
    return True


def stop_project(store: ProcessStore, project: str, timeout: float = None) -> list[int]:
    """Stop every live process recorded for project and forget its records."""
    timeout = timeout if timeout is not None else config.stop_timeout
    stopped = []

    for entry in store.list(project):
        proc = _process_for(entry)
        if proc is not None:
            logger.info(f"Stopping {entry.project}/{entry.service} (PID {entry.pid})")
            if terminate_tree(entry.pid, timeout):
                stopped.append(entry.pid)
        store.delete(entry.pid)

    if stopped:
        logger.info(f"Stopped {len(stopped)} processes for {project}")
    return stopped
