"""
Configuration for devspin.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.devspin/ (override with DEVSPIN_HOME).
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass
class Config:
    """Devspin configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("DEVSPIN_HOME", str(Path.home() / ".devspin")))
    db_path: Path = None
    logs_dir: Path = None
    log_file: Path = None

    # Project files
    config_filename: str = os.environ.get("DEVSPIN_CONFIG_FILE", "devspin.yaml")

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Status API server
    host: str = os.environ.get("DEVSPIN_HOST", "127.0.0.1")
    port: int = int(os.environ.get("DEVSPIN_PORT", "9901"))

    # Readiness
    health_host: str = os.environ.get("HEALTH_HOST", "localhost")
    health_poll_interval: float = float(os.environ.get("HEALTH_POLL_INTERVAL", "0.5"))
    health_timeout: float = float(os.environ.get("HEALTH_TIMEOUT", "30"))
    dependency_timeout: float = float(os.environ.get("DEPENDENCY_TIMEOUT", "10"))

    # Escalation of degraded readiness into hard failures
    fail_on_health_timeout: bool = _flag("FAIL_ON_HEALTH_TIMEOUT")
    fail_on_dependency_timeout: bool = _flag("FAIL_ON_DEPENDENCY_TIMEOUT")
    allow_dependency_cycles: bool = _flag("ALLOW_DEPENDENCY_CYCLES")

    # Process management
    monitor_interval: float = float(os.environ.get("MONITOR_INTERVAL", "0.5"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "10"))
    hook_timeout: float = float(os.environ.get("HOOK_TIMEOUT", "60"))

    def __post_init__(self):
        """Initialize derived paths."""
        self.data_dir = Path(self.data_dir)
        self.db_path = self.data_dir / "devspin.db"
        self.logs_dir = self.data_dir / "logs"
        self.log_file = self.data_dir / "devspin.log"

    def ensure_dirs(self):
        """Create the data and log directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def project_log_dir(self, project_name: str) -> Path:
        """Directory holding captured output for a project's services."""
        path = self.logs_dir / project_name
        path.mkdir(parents=True, exist_ok=True)
        return path


config = Config()
