#!/usr/bin/env python3
"""
Health Poller - bounded readiness probing of the daemon's HTTP endpoint
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import aiohttp

from scenario_report import ScenarioReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one probe. Never persisted."""
    url: str
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == 200


async def get(url: str, timeout: float = 10.0) -> int:
    """
    GET url and return the status code.

    Each call gets its own session with force_close set, so no idle pooled
    connection from an earlier probe can answer for the daemon.
    """
    connector = aiohttp.TCPConnector(force_close=True)
    async with aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as session:
        async with session.get(url) as resp:
            await resp.read()
            return resp.status


class HealthPoller:
    """
    Polls a URL until it answers 200, the budget runs out, or the scenario
    has already failed.
    """

    def __init__(
        self,
        interval: float = 1.0,
        timeout: float = 30.0,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval = interval
        self.timeout = timeout
        self.request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config) -> 'HealthPoller':
        return cls(
            interval=config.poll_interval,
            timeout=config.poll_timeout,
            request_timeout=config.request_timeout,
        )

    async def check_once(self, url: str) -> HealthCheckResult:
        """Probe url once; transport errors come back in the result."""
        try:
            status = await get(url, timeout=self.request_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return HealthCheckResult(url=url, error=str(e) or type(e).__name__)
        return HealthCheckResult(url=url, status=status)

    async def poll(self, url: str, report: ScenarioReport) -> bool:
        """
        Poll url until it returns 200.

        Returns False after recording a failure on report if the budget
        expires or if report had already failed before readiness.
        """
        start = self._clock()
        while True:
            result = await self.check_once(url)
            if result.ok:
                logger.info(f"{url}: SUCCESS")
                return True
            if result.error is not None:
                logger.warning(f"{url}: {result.error}")
            else:
                logger.debug(f"{url}: status {result.status}")

            if report.failed:
                report.error("giving up because we have already failed")
                return False

            await self._sleep(self.interval)

            if self._clock() - start > self.timeout:
                report.error("time has expired")
                return False
