"""
Readiness probing for spawned services.

Polls a TCP port or an HTTP endpoint at a fixed interval until it answers or
the deadline passes. Every wait is an asyncio suspension point, so probing
one service never blocks the event loop.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .config import config
from .errors import HealthCheckTimeout
from .project import HealthCheck, HealthCheckKind

logger = logging.getLogger(__name__)


class HealthProber:
    """Waits for services to become ready."""

    def __init__(
        self,
        poll_interval: float = None,
        timeout: float = None,
        host: str = None,
    ):
        self.poll_interval = poll_interval if poll_interval is not None else config.health_poll_interval
        self.timeout = timeout if timeout is not None else config.health_timeout
        self.host = host or config.health_host

    async def wait_until_ready(
        self, service_name: str, check: HealthCheck, timeout: Optional[float] = None
    ) -> float:
        """Block the calling task until the check passes.

        Returns the seconds spent waiting. Raises HealthCheckTimeout when the
        deadline passes first.
        """
        if timeout is None:
            timeout = check.timeout if check.timeout is not None else self.timeout

        if check.kind is HealthCheckKind.PORT:
            probe = self._port_open
        elif check.kind is HealthCheckKind.HTTP:
            probe = self._http_ok
        elif check.kind is HealthCheckKind.NONE:
            logger.info(f"No health check performed for {service_name}")
            return 0.0
        else:
            raise AssertionError(f"unhandled health check kind {check.kind!r}")

        logger.info(f"Waiting for health check: {service_name} ({check.describe()})")
        elapsed = await self._poll(probe, check, timeout)
        if elapsed is None:
            raise HealthCheckTimeout(service_name, check.describe(), timeout)

        logger.info(f"Health check passed: {service_name} after {elapsed:.1f}s")
        return elapsed

    async def _poll(self, probe, check: HealthCheck, timeout: float) -> Optional[float]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        attempts = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            attempts += 1
            if await probe(check, remaining):
                return loop.time() - started

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.debug(f"Health check {check.describe()} failed after {attempts} attempts")
        return None

    async def _port_open(self, check: HealthCheck, remaining: float) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, check.port),
                timeout=min(remaining, max(self.poll_interval, 0.1)),
            )
        except (OSError, asyncio.TimeoutError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _http_ok(self, check: HealthCheck, remaining: float) -> bool:
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(check.url, timeout=min(remaining, 5.0))
        except httpx.HTTPError as e:
            logger.debug(f"HTTP check {check.url} not ready: {e}")
            return False
        return response.is_success
