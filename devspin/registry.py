"""
Process registry for spawned services.

Owns the OS process handle of every service a devspin run has started,
answers "is this service running" for dependency waits, and mirrors every
change into the persistent store. All map access is serialized by one lock
that is never held across a spawn, a wait or a database write.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from peewee import PeeweeException

from .config import config

logger = logging.getLogger(__name__)


class ProcessStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ProcessRecord:
    """Information about a spawned service process."""

    pid: int
    service_name: str
    project_name: str
    command: str
    started_at: datetime = field(default_factory=datetime.now)
    status: ProcessStatus = ProcessStatus.RUNNING
    reason: Optional[str] = None
    _handle: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    def take_handle(self) -> Optional[subprocess.Popen]:
        """Move the process handle out of the record."""
        handle, self._handle = self._handle, None
        return handle

    def snapshot(self) -> "ProcessRecord":
        """Copy of the record without the process handle."""
        return replace(self, _handle=None)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "service": self.service_name,
            "project": self.project_name,
            "command": self.command,
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "reason": self.reason,
        }


def terminate_process(handle: subprocess.Popen, timeout: float) -> Optional[int]:
    """Stop a process group: SIGTERM, wait, then SIGKILL. Returns the exit code."""
    if handle.poll() is not None:
        return handle.returncode

    try:
        os.killpg(os.getpgid(handle.pid), signal.SIGTERM)
    except ProcessLookupError:
        pass

    try:
        return handle.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {handle.pid} did not stop gracefully, forcing kill")
        try:
            os.killpg(os.getpgid(handle.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        try:
            return handle.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {handle.pid} could not be reaped")
            return None


class ProcessRegistry:
    """Thread-safe store of running-process records."""

    def __init__(self, store=None, stop_timeout: float = None):
        self._records: dict[int, ProcessRecord] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._store = store
        self._stop_timeout = stop_timeout if stop_timeout is not None else config.stop_timeout

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def register(
        self,
        handle: subprocess.Popen,
        service_name: str,
        project_name: str,
        command: str,
    ) -> int:
        """Take ownership of a just-spawned process and return its pid."""
        record = ProcessRecord(
            pid=handle.pid,
            service_name=service_name,
            project_name=project_name,
            command=command,
            _handle=handle,
        )

        with self._lock:
            if self._closed:
                closed = True
            else:
                closed = False
                existing = self._records.get(handle.pid)
                if existing is not None and existing._handle is not None:
                    raise ValueError(f"Process {handle.pid} is already registered")
                self._records[handle.pid] = record

        if closed:
            terminate_process(handle, self._stop_timeout)
            raise RuntimeError(f"Registry is closed, {service_name} (PID {handle.pid}) was terminated")

        self._persist("save", record.snapshot())
        logger.debug(f"Registered {project_name}/{service_name} with PID {handle.pid}")
        return handle.pid

    def is_running(self, project_name: str, service_name: str) -> bool:
        """Check if a service of a project has a running process."""
        with self._lock:
            return any(
                r.project_name == project_name and r.service_name == service_name and r.is_running
                for r in self._records.values()
            )

    def get(self, pid: int) -> Optional[ProcessRecord]:
        with self._lock:
            record = self._records.get(pid)
            return record.snapshot() if record else None

    def list(self, project_name: str) -> List[ProcessRecord]:
        """Snapshot of the records belonging to a project."""
        with self._lock:
            records = [r.snapshot() for r in self._records.values() if r.project_name == project_name]
        return sorted(records, key=lambda r: r.started_at)

    def list_all(self) -> List[ProcessRecord]:
        with self._lock:
            records = [r.snapshot() for r in self._records.values()]
        return sorted(records, key=lambda r: r.started_at)

    def running(self) -> List[ProcessRecord]:
        return [r for r in self.list_all() if r.is_running]

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def poll(self, pid: int) -> Optional[int]:
        """Exit code of a registered process, or None while it runs.

        Raises KeyError when the pid is not registered or its handle has
        been taken away by a stop or teardown.
        """
        with self._lock:
            record = self._records.get(pid)
            handle = record._handle if record else None
        if handle is None:
            raise KeyError(pid)
        return handle.poll()

    def mark_exited(self, pid: int, status: ProcessStatus, reason: Optional[str] = None) -> bool:
        """Transition a running record to Stopped or Failed."""
        if status is ProcessStatus.RUNNING:
            raise ValueError("mark_exited needs a terminal status")

        with self._lock:
            record = self._records.get(pid)
            if record is None or not record.is_running:
                return False
            record.status = status
            record.reason = reason
            # Reap; the process has already exited.
            handle = record.take_handle()

        if handle is not None:
            handle.poll()
        self._persist("update_status", pid, status.value, reason)
        return True

    def remove(self, pid: int) -> Optional[subprocess.Popen]:
        """Deregister a process. Unknown pids are ignored.

        Ownership of a still-held handle passes to the caller.
        """
        with self._lock:
            record = self._records.pop(pid, None)
        if record is None:
            return None

        self._persist("delete", pid)
        return record.take_handle()

    def stop(self, pid: int, timeout: float = None) -> bool:
        """Deregister a process and terminate it if it is still alive."""
        handle = self.remove(pid)
        if handle is None:
            return False
        terminate_process(handle, timeout if timeout is not None else self._stop_timeout)
        logger.info(f"Stopped process {pid}")
        return True

    def close(self):
        """Terminate and reap every process still owned by the registry.

        Runs once; later or concurrent calls return immediately.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            owned = [(r, r.take_handle()) for r in self._records.values()]

        live = [(r, h) for r, h in owned if h is not None and h.poll() is None]
        if live:
            logger.warning(f"{len(live)} processes still running, terminating them")

        for record, handle in owned:
            if handle is None:
                continue
            returncode = terminate_process(handle, self._stop_timeout)
            with self._lock:
                was_running = record.is_running
                if was_running:
                    record.status = ProcessStatus.STOPPED
                    record.reason = "terminated at shutdown" if returncode is not None else "not reaped"
            if was_running:
                self._persist("update_status", record.pid, record.status.value, record.reason)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def _persist(self, operation: str, *args):
        if self._store is None:
            return
        try:
            getattr(self._store, operation)(*args)
        except PeeweeException as e:
            logger.error(f"Failed to {operation.replace('_', ' ')} process record: {e}")
