#!/usr/bin/env python3
"""
Tests for HealthPoller against real local aiohttp servers.

Time is driven by a fake clock so budget expiry is checked without waiting
thirty real seconds.
"""

import logging
import socket
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp import test_utils

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from health_poller import HealthCheckResult, HealthPoller, get
from scenario_report import ScenarioReport


class FakeClock:
    """Monotonic clock that only moves when the poller sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@asynccontextmanager
async def serving(*statuses):
    """
    Serve GET / answering with `statuses` in order, repeating the last one.
    Yields (url, peers) where peers lists each request's client address.
    """
    remaining = list(statuses)
    peers = []

    async def handler(request):
        peers.append(request.transport.get_extra_info("peername"))
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return web.Response(status=status)

    app = web.Application()
    app.router.add_get("/", handler)
    server = test_utils.TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield str(server.make_url("/")), peers
    finally:
        await server.close()


def unused_url() -> str:
    """A URL on a local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}/"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(clock):
    return HealthPoller(interval=1.0, timeout=30.0, request_timeout=5.0,
                        clock=clock, sleep=clock.sleep)


@pytest.fixture
def report():
    return ScenarioReport("poll")


class TestHealthCheckResult:

    def test_ok_only_for_200(self):
        assert HealthCheckResult(url="u", status=200).ok
        assert not HealthCheckResult(url="u", status=202).ok
        assert not HealthCheckResult(url="u", status=503).ok
        assert not HealthCheckResult(url="u", error="refused").ok


class TestProbe:

    @pytest.mark.asyncio
    async def test_get_returns_status(self):
        async with serving(404) as (url, _):
            assert await get(url) == 404

    @pytest.mark.asyncio
    async def test_each_probe_uses_a_new_connection(self, poller):
        async with serving(200) as (url, peers):
            await poller.check_once(url)
            await poller.check_once(url)

        assert len(peers) == 2
        assert peers[0] != peers[1]

    @pytest.mark.asyncio
    async def test_redirect_is_followed_to_final_status(self, poller):
        async def moved(request):
            raise web.HTTPFound("/ok")

        async def ok(request):
            return web.Response(status=200)

        app = web.Application()
        app.router.add_get("/", moved)
        app.router.add_get("/ok", ok)
        server = test_utils.TestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            result = await poller.check_once(str(server.make_url("/")))
        finally:
            await server.close()

        assert result.status == 200
        assert result.ok

    @pytest.mark.asyncio
    async def test_check_once_reports_transport_error(self, poller):
        result = await poller.check_once(unused_url())

        assert result.status is None
        assert result.error
        assert not result.ok

    @pytest.mark.asyncio
    async def test_check_once_reports_status(self, poller):
        async with serving(503) as (url, _):
            result = await poller.check_once(url)

        assert result == HealthCheckResult(url=url, status=503)


class TestPoll:

    @pytest.mark.asyncio
    async def test_ready_immediately(self, poller, clock, report, caplog):
        caplog.set_level(logging.INFO)
        async with serving(200) as (url, _):
            assert await poller.poll(url, report) is True

        assert clock.sleeps == []
        assert not report.failed
        assert f"{url}: SUCCESS" in caplog.text

    @pytest.mark.asyncio
    async def test_retries_until_200(self, poller, clock, report):
        async with serving(503, 503, 200) as (url, peers):
            assert await poller.poll(url, report) is True

        assert len(peers) == 3
        assert clock.sleeps == [1.0, 1.0]
        assert not report.failed

    @pytest.mark.asyncio
    async def test_times_out_when_never_ready(self, poller, clock, report):
        async with serving(503) as (url, _):
            assert await poller.poll(url, report) is False

        assert report.errors == ["time has expired"]
        # Bounded by the budget plus the one interval that crossed it
        assert poller.timeout < clock.now <= poller.timeout + poller.interval

    @pytest.mark.asyncio
    async def test_transport_errors_are_logged_and_retried(self, clock, report, caplog):
        poller = HealthPoller(interval=1.0, timeout=3.0, request_timeout=5.0,
                              clock=clock, sleep=clock.sleep)
        url = unused_url()

        assert await poller.poll(url, report) is False

        assert len(clock.sleeps) == 4
        assert report.errors == ["time has expired"]
        assert url in caplog.text

    @pytest.mark.asyncio
    async def test_gives_up_when_already_failed(self, poller, clock, report):
        report.error("daemon exited with status 1")

        async with serving(503) as (url, peers):
            assert await poller.poll(url, report) is False

        assert len(peers) == 1
        assert clock.sleeps == []
        assert report.errors[-1] == "giving up because we have already failed"

    @pytest.mark.asyncio
    async def test_success_still_counts_after_earlier_failure(self, poller, report):
        report.error("unrelated")

        async with serving(200) as (url, _):
            assert await poller.poll(url, report) is True

        assert report.errors == ["unrelated"]

    @pytest.mark.asyncio
    async def test_non_200_success_codes_are_not_ready(self, poller, clock, report):
        async with serving(202, 202, 200) as (url, _):
            assert await poller.poll(url, report) is True

        assert clock.sleeps == [1.0, 1.0]

    def test_from_config(self):
        from harness_config import HarnessConfig
        config = HarnessConfig(poll_interval=0.5, poll_timeout=12.0, request_timeout=2.0)

        poller = HealthPoller.from_config(config)

        assert (poller.interval, poller.timeout, poller.request_timeout) == (0.5, 12.0, 2.0)
