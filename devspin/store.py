"""
Persistent record of spawned processes, partitioned by project name.

The in-memory registry only lives as long as the devspin process that
started the services. Every registration, exit and removal is mirrored here
so that a separate `status` or `stop` invocation can find them.
"""

import logging
import os
from datetime import datetime
from typing import List, Optional

from .models import ProcessEntry, database

logger = logging.getLogger(__name__)


class ProcessStore:
    """Reads and writes ProcessEntry rows."""

    def save(self, record) -> ProcessEntry:
        """Insert or replace the row for a freshly registered process."""
        with database.atomic():
            ProcessEntry.delete().where(ProcessEntry.pid == record.pid).execute()
            return ProcessEntry.create(
                pid=record.pid,
                project=record.project_name,
                service=record.service_name,
                command=record.command,
                status=record.status.value,
                reason=record.reason,
                owner_pid=os.getpid(),
                started_at=record.started_at,
            )

    def update_status(self, pid: int, status: str, reason: Optional[str] = None) -> bool:
        """Record a status transition. Returns False if the pid is unknown."""
        updated = (
            ProcessEntry.update(status=status, reason=reason, updated_at=datetime.now())
            .where(ProcessEntry.pid == pid)
            .execute()
        )
        return bool(updated)

    def delete(self, pid: int) -> bool:
        return bool(ProcessEntry.delete().where(ProcessEntry.pid == pid).execute())

    def get(self, pid: int) -> Optional[ProcessEntry]:
        return ProcessEntry.get_or_none(ProcessEntry.pid == pid)

    def list(self, project: Optional[str] = None) -> List[ProcessEntry]:
        query = ProcessEntry.select().order_by(ProcessEntry.started_at, ProcessEntry.pid)
        if project is not None:
            query = query.where(ProcessEntry.project == project)
        return list(query)

    def projects(self) -> List[str]:
        query = ProcessEntry.select(ProcessEntry.project).distinct().order_by(ProcessEntry.project)
        return [row.project for row in query]

    def prune(self, project: str) -> int:
        """Drop rows for processes of project that are no longer running."""
        deleted = (
            ProcessEntry.delete()
            .where((ProcessEntry.project == project) & (ProcessEntry.status != "running"))
            .execute()
        )
        if deleted:
            logger.debug(f"Pruned {deleted} finished process records for {project}")
        return deleted
