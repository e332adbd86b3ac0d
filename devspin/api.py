"""
Devspin status API.

Small FastAPI application over the persistent process store: list projects,
inspect the processes a project left running, and stop them. It never
spawns anything itself.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .control import project_status, stop_project
from .models import initialize_db
from .store import ProcessStore

logger = logging.getLogger(__name__)

store = ProcessStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting devspin status API...")
    initialize_db()
    yield
    logger.info("Shutting down devspin status API...")


app = FastAPI(
    title="Devspin",
    description="Status and control for locally orchestrated development services",
    version=__version__,
    lifespan=lifespan,
)


class ProcessResponse(BaseModel):
    pid: int
    project: str
    service: str
    command: str
    status: str
    reason: Optional[str] = None
    started_at: Optional[str] = None
    alive: bool
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    child_processes: int = 0
    uptime_seconds: float = 0.0


class ProjectSummary(BaseModel):
    name: str
    processes: int = Field(..., description="Recorded processes")
    running: int = Field(..., description="Processes currently alive")


class StopResponse(BaseModel):
    project: str
    stopped: list[int]


@app.get("/api/health")
async def health():
    """Liveness of the API itself."""
    return {"status": "ok", "version": __version__}


@app.get("/api/projects", response_model=list[ProjectSummary])
async def list_projects():
    """List every project with recorded processes."""
    summaries = []
    for name in store.projects():
        snapshots = project_status(store, name, sample_interval=None)
        summaries.append(
            ProjectSummary(
                name=name,
                processes=len(snapshots),
                running=sum(1 for s in snapshots if s.alive),
            )
        )
    return summaries


@app.get("/api/projects/{name}/processes", response_model=list[ProcessResponse])
async def list_processes(name: str, running: bool = Query(False, description="Only live processes")):
    """Processes recorded for a project."""
    if name not in store.projects():
        raise HTTPException(status_code=404, detail=f"Project '{name}' has no recorded processes")

    snapshots = project_status(store, name, sample_interval=None)
    if running:
        snapshots = [s for s in snapshots if s.alive]
    return [ProcessResponse(**s.to_dict()) for s in snapshots]


@app.post("/api/projects/{name}/stop", response_model=StopResponse)
def stop(name: str, timeout: float = Query(10.0, gt=0)):
    """Stop every live process of a project."""
    if name not in store.projects():
        raise HTTPException(status_code=404, detail=f"Project '{name}' has no recorded processes")

    stopped = stop_project(store, name, timeout=timeout)
    return StopResponse(project=name, stopped=stopped)
