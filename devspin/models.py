"""
Database models for devspin.

Uses Peewee ORM with SQLite. Stores one row per spawned service process so
that later invocations (status, stop, the status API) can see what an
earlier start left running.
"""

import os
from datetime import datetime
from pathlib import Path

from peewee import (
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(db_path: Path = None):
    """Initialize database connection and create tables."""
    db_path = Path(db_path or config.db_path)
    os.makedirs(db_path.parent, exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "cache_size": -16 * 1000,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([ProcessEntry], safe=True)
    return db


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class ProcessEntry(BaseModel):
    """A service process started by devspin."""

    pid = IntegerField(primary_key=True)
    project = CharField(index=True)
    service = CharField()
    command = TextField()
    status = CharField(default="running")  # running, stopped, failed
    reason = TextField(null=True)
    owner_pid = IntegerField(null=True)  # devspin process that spawned it
    started_at = DateTimeField(default=datetime.now)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "processes"

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "project": self.project,
            "service": self.service,
            "command": self.command,
            "status": self.status,
            "reason": self.reason,
            "owner_pid": self.owner_pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
