"""
Project configuration model.

A project file (devspin.yaml) declares named services, their shell commands,
startup dependencies and readiness checks. The file is parsed with PyYAML and
validated with pydantic; anything wrong with it surfaces as a
ConfigurationError before a single process is spawned.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from dotenv import dotenv_values
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .config import config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class HealthCheckKind(str, Enum):
    NONE = "none"
    PORT = "port"
    HTTP = "http"


class HealthCheck(BaseModel):
    """Readiness probe for a service."""

    model_config = ConfigDict(populate_by_name=True)

    kind: HealthCheckKind = Field(
        HealthCheckKind.NONE,
        validation_alias=AliasChoices("kind", "type", "type_entry"),
        description="none, port or http",
    )
    port: Optional[int] = Field(None, ge=1, le=65535, description="Port to connect to on localhost")
    url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("url", "http_target"),
        description="URL that must answer with a success status",
    )
    timeout: Optional[float] = Field(None, gt=0, description="Seconds to wait before giving up")

    @field_validator("kind", mode="before")
    @classmethod
    def _known_kind(cls, value):
        if value is None or value == "":
            return HealthCheckKind.NONE
        if isinstance(value, HealthCheckKind):
            return value
        try:
            return HealthCheckKind(str(value).lower())
        except ValueError:
            logger.warning(f"Unrecognized health check type '{value}', no check will be performed")
            return HealthCheckKind.NONE

    @field_validator("url", mode="before")
    @classmethod
    def _blank_url(cls, value):
        return value or None

    @model_validator(mode="after")
    def _target_present(self):
        if self.kind is HealthCheckKind.PORT and self.port is None:
            raise ValueError("port health check requires 'port'")
        if self.kind is HealthCheckKind.HTTP and not self.url:
            raise ValueError("http health check requires 'url'")
        return self

    def describe(self) -> str:
        if self.kind is HealthCheckKind.PORT:
            return f"port {self.port}"
        if self.kind is HealthCheckKind.HTTP:
            return f"http {self.url}"
        return "none"


class Service(BaseModel):
    """A named unit of work declared inside a project."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="Unique service identifier")
    kind: str = Field(
        "service",
        validation_alias=AliasChoices("kind", "type", "service_type"),
        description="Descriptive tag (web, api, database, cache, ...)",
    )
    command: str = Field(..., min_length=1, description="Shell command that runs the service")
    working_dir: Optional[str] = Field(None, description="Working directory, relative to the project file")
    health_check: Optional[HealthCheck] = None
    dependencies: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dependencies", "depends_on"),
    )

    @field_validator("dependencies", mode="before")
    @classmethod
    def _null_dependencies(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class Hooks(BaseModel):
    """Shell commands fired around start and stop."""

    pre_start: Optional[str] = None
    post_start: Optional[str] = None
    pre_stop: Optional[str] = None
    post_stop: Optional[str] = None


class Project(BaseModel):
    """A parsed project file."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict)
    hooks: Optional[Hooks] = None
    services: list[Service] = Field(default_factory=list)
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("environment must be a mapping")
        return {str(k): "" if v is None else str(v) for k, v in value.items()}

    @field_validator("services", mode="before")
    @classmethod
    def _null_services(cls, value):
        return value or []

    @model_validator(mode="after")
    def _unique_service_names(self):
        seen = set()
        for service in self.services:
            if service.name in seen:
                raise ValueError(f"duplicate service name '{service.name}'")
            seen.add(service.name)
        return self

    def service_names(self) -> list[str]:
        return [s.name for s in self.services]

    def get_service(self, name: str) -> Optional[Service]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def resolve_working_dir(self, service: Service) -> Path:
        """Service working directory joined to the project base directory."""
        if service.working_dir:
            return self.base_dir / service.working_dir
        return self.base_dir

    def merged_environment(self) -> dict[str, str]:
        """Process environment with the project environment laid over it."""
        env = os.environ.copy()
        env.update(self.environment)
        return env


def find_project_file(ref: str) -> Path:
    """Locate a project file from a file path, a directory, or a project name."""
    path = Path(ref).expanduser()
    if path.is_file():
        return path
    candidate = path / config.config_filename
    if candidate.is_file():
        return candidate
    raise ConfigurationError(f"Project '{ref}' not found at: {candidate}")


def parse_project(text: str, base_dir: Path, source: str = "<string>") -> Project:
    """Parse project YAML text into a validated Project."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Project file {source} must contain a mapping")

    try:
        return Project.model_validate({**data, "base_dir": base_dir})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'project'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid project file {source}: {problems}") from e


def load_project(ref: str) -> Project:
    """Load and validate the project identified by ref."""
    path = find_project_file(ref)
    logger.debug(f"Loading project from: {path}")
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Failed to read project file {path}: {e}") from e

    project = parse_project(text, path.parent.resolve(), source=str(path))
    logger.info(f"Loaded project: {project.name}")
    return project


def load_env_file(path: str) -> dict[str, str]:
    """Load KEY=VALUE pairs from an env file into the process environment."""
    env_path = Path(path).expanduser()
    if not env_path.is_file():
        raise ConfigurationError(f"Failed to load env file {path}: file not found")

    try:
        values = dotenv_values(env_path)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to load env file {path}: {e}") from e

    loaded = {k: v for k, v in values.items() if v is not None}
    os.environ.update(loaded)
    logger.info(f"Loaded {len(loaded)} variables from {path}")
    return loaded
