"""
Error taxonomy for devspin.

Every error renders as a single descriptive line naming the service (where
there is one) and the reason.
"""


class DevspinError(Exception):
    """Base class for all devspin errors."""


class ConfigurationError(DevspinError):
    """Bad or missing project file, conflicting filters, bad env file."""


class ProcessError(DevspinError):
    """A service failed to spawn, or its process exited with an error."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"Service {service} failed: {reason}")


class HealthCheckTimeout(DevspinError):
    """A service did not become ready within its deadline."""

    def __init__(self, service: str, target: str, timeout: float):
        self.service = service
        self.target = target
        self.timeout = timeout
        super().__init__(
            f"Service {service} not ready after {timeout:g}s ({target})"
        )


class DependencyTimeout(DevspinError):
    """A dependency never became Running within its deadline."""

    def __init__(self, service: str, dependency: str, timeout: float):
        self.service = service
        self.dependency = dependency
        self.timeout = timeout
        super().__init__(
            f"Service {service} gave up waiting {timeout:g}s for dependency {dependency}"
        )
