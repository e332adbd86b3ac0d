"""Project lifecycle hooks (pre/post start and stop)."""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Optional

from .config import config
from .project import Project

logger = logging.getLogger(__name__)

HOOK_NAMES = ("pre_start", "post_start", "pre_stop", "post_stop")


def run_hook(project: Project, name: str, timeout: float = None) -> Optional[bool]:
    """Run a project hook in the base directory.

    Returns None if the hook is not declared, otherwise whether it succeeded.
    Hook failures are logged, never raised.
    """
    if name not in HOOK_NAMES:
        raise ValueError(f"Unknown hook '{name}'")

    command = getattr(project.hooks, name, None) if project.hooks else None
    if not command:
        return None

    timeout = timeout if timeout is not None else config.hook_timeout
    logger.info(f"Running {name} hook for {project.name}: {command}")
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=Path(project.base_dir),
            env=project.merged_environment(),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Hook {name} for {project.name} timed out after {timeout:g}s")
        return False
    except OSError as e:
        logger.warning(f"Hook {name} for {project.name} could not run: {e}")
        return False

    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip().splitlines()
        logger.warning(
            f"Hook {name} for {project.name} exited with code {result.returncode}"
            + (f": {detail[-1]}" if detail else "")
        )
        return False
    return True


async def run_hook_async(project: Project, name: str, timeout: float = None) -> Optional[bool]:
    return await asyncio.to_thread(run_hook, project, name, timeout)
