"""Tests for readiness probing."""

import asyncio
import time

import pytest

from devspin.errors import HealthCheckTimeout
from devspin.health import HealthProber
from devspin.project import HealthCheck


async def _serve_after(delay, port, handler):
    await asyncio.sleep(delay)
    return await asyncio.start_server(handler, "127.0.0.1", port)


async def _close_immediately(reader, writer):
    writer.close()


def _http_handler(status_line):
    async def handler(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(
            f"HTTP/1.1 {status_line}\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok".encode()
        )
        await writer.drain()
        writer.close()

    return handler


@pytest.mark.asyncio
async def test_port_that_opens_late_succeeds_early(free_port):
    prober = HealthProber(poll_interval=0.5, host="127.0.0.1")
    server_task = asyncio.create_task(_serve_after(1.0, free_port, _close_immediately))

    started = time.monotonic()
    try:
        await prober.wait_until_ready("db", HealthCheck(kind="port", port=free_port), timeout=5)
        elapsed = time.monotonic() - started
    finally:
        server = await server_task
        server.close()
        await server.wait_closed()

    assert 0.9 <= elapsed <= 1.8


@pytest.mark.asyncio
async def test_port_that_never_opens_times_out_at_deadline(free_port):
    prober = HealthProber(poll_interval=0.5, host="127.0.0.1")

    started = time.monotonic()
    with pytest.raises(HealthCheckTimeout) as excinfo:
        await prober.wait_until_ready("db", HealthCheck(kind="port", port=free_port), timeout=2)
    elapsed = time.monotonic() - started

    assert 1.9 <= elapsed <= 2.6
    assert excinfo.value.service == "db"
    assert f"port {free_port}" in str(excinfo.value)


@pytest.mark.asyncio
async def test_http_success(free_port):
    server = await asyncio.start_server(_http_handler("200 OK"), "127.0.0.1", free_port)
    prober = HealthProber(poll_interval=0.1)
    try:
        check = HealthCheck(kind="http", url=f"http://127.0.0.1:{free_port}/health")
        elapsed = await prober.wait_until_ready("api", check, timeout=3)
    finally:
        server.close()
        await server.wait_closed()

    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_http_error_status_is_not_ready(free_port):
    server = await asyncio.start_server(_http_handler("503 Service Unavailable"), "127.0.0.1", free_port)
    prober = HealthProber(poll_interval=0.1)
    try:
        check = HealthCheck(kind="http", url=f"http://127.0.0.1:{free_port}/health")
        with pytest.raises(HealthCheckTimeout):
            await prober.wait_until_ready("api", check, timeout=0.6)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_http_connection_refused_keeps_polling(free_port):
    prober = HealthProber(poll_interval=0.1)
    check = HealthCheck(kind="http", url=f"http://127.0.0.1:{free_port}/")

    started = time.monotonic()
    with pytest.raises(HealthCheckTimeout):
        await prober.wait_until_ready("api", check, timeout=0.5)
    assert time.monotonic() - started >= 0.45


@pytest.mark.asyncio
async def test_check_timeout_overrides_default(free_port):
    prober = HealthProber(poll_interval=0.1, timeout=60, host="127.0.0.1")
    check = HealthCheck(kind="port", port=free_port, timeout=0.3)

    started = time.monotonic()
    with pytest.raises(HealthCheckTimeout):
        await prober.wait_until_ready("db", check)
    assert time.monotonic() - started < 1.0


@pytest.mark.asyncio
async def test_no_check_succeeds_immediately():
    assert await HealthProber().wait_until_ready("worker", HealthCheck(kind="none")) == 0.0
