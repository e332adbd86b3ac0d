"""
Detached start sequences.

A background start hands its service sequence to the JobManager, which runs
it as an asyncio task on the current loop. The caller gets a Job back at
once and can inspect or await the outcome later.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    """One detached start sequence."""

    id: str
    name: str
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in FINISHED

    @property
    def duration(self) -> Optional[float]:
        if not self.started_at:
            return None
        return ((self.finished_at or datetime.now()) - self.started_at).total_seconds()

    async def wait(self) -> Any:
        """Wait for the sequence to finish and return its result.

        Cancelling the waiter does not cancel the job itself.
        """
        if self.task is not None and not self.task.done():
            await asyncio.shield(self.task)
        return self.result

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration,
        }


class JobManager:
    """Keeps track of detached start sequences scheduled on the event loop."""

    def __init__(self, history: int = 100):
        self._jobs: dict[str, Job] = {}
        self._history = history

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        """Newest first, optionally only those in one status."""
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def run_async_in_background(
        self, name: str, coro_func: Callable[..., Awaitable], *args, **kwargs
    ) -> Job:
        """Schedule ``coro_func(*args, **kwargs)`` and return its Job immediately.

        Must be called from a running event loop.
        """
        job = Job(id=uuid.uuid4().hex[:8], name=name)
        self._jobs[job.id] = job
        self._forget_finished()

        job.task = asyncio.get_running_loop().create_task(self._execute(job, coro_func, args, kwargs))
        logger.debug(f"Scheduled job {job.id}: {name}")
        return job

    async def cancel_all(self):
        """Cancel unfinished jobs and wait for them to unwind."""
        tasks = [j.task for j in self._jobs.values() if j.task is not None and not j.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            if job.status is JobStatus.PENDING and job.task is not None and job.task.cancelled():
                job.status = JobStatus.CANCELLED
                job.finished_at = datetime.now()

    async def _execute(self, job: Job, coro_func: Callable[..., Awaitable], args: tuple, kwargs: dict):
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        logger.info(f"Job {job.id} running: {job.name}")
        try:
            job.result = await coro_func(*args, **kwargs)
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            logger.info(f"Job {job.id} cancelled: {job.name}")
            raise
        except Exception as e:
            job.error = str(e)
            job.status = JobStatus.FAILED
            logger.error(f"Job {job.id} failed: {job.name} - {e}")
        else:
            job.status = JobStatus.COMPLETED
            logger.info(f"Job {job.id} finished: {job.name} ({job.duration:.1f}s)")
        finally:
            job.finished_at = datetime.now()

    def _forget_finished(self):
        finished = sorted(
            (j for j in self._jobs.values() if j.done),
            key=lambda j: j.finished_at or datetime.min,
        )
        for job in finished[: max(0, len(finished) - self._history)]:
            del self._jobs[job.id]
