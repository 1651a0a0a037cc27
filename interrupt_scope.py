#!/usr/bin/env python3
"""
Interrupt Scope - start a daemon, run a body, always interrupt and reap it

    async with interrupt_scope(handle, report):
        await poller.poll(url, report)

When the block is left, normally or through an exception, the daemon has
been sent SIGINT and its exit has been observed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, TypeVar

from privileged_process import PrivilegedProcessHandle, surviving
from scenario_report import (
    AbnormalExitError,
    HandleStateError,
    ScenarioReport,
    SignalError,
    SpawnError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SHUTDOWN_TIMEOUT = 60.0


async def _observe_exit(handle: PrivilegedProcessHandle, report: ScenarioReport, exited: asyncio.Event):
    """Background task owning the blocking wait; sets `exited` exactly once."""
    try:
        await handle.wait()
    except AbnormalExitError as e:
        report.error(str(e))
    finally:
        exited.set()


@asynccontextmanager
async def interrupt_scope(
    handle: PrivilegedProcessHandle,
    report: ScenarioReport,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
):
    try:
        await handle.start()
    except SpawnError as e:
        report.error(str(e))
        raise

    exited = asyncio.Event()
    waiter = asyncio.create_task(_observe_exit(handle, report, exited))

    try:
        yield handle
    finally:
        tracked = handle.descendants()

        try:
            handle.send_interrupt()
        except (SignalError, HandleStateError) as e:
            report.error(str(e))

        try:
            await asyncio.wait_for(exited.wait(), timeout=shutdown_timeout)
        except asyncio.TimeoutError:
            report.error(f"{handle.name} did not exit within {shutdown_timeout}s after interrupt")
            try:
                handle.kill()
            except SignalError as e:
                report.error(str(e))
            try:
                await asyncio.wait_for(exited.wait(), timeout=shutdown_timeout)
            except asyncio.TimeoutError:
                report.error(f"{handle.name} still running {shutdown_timeout}s after kill")
                waiter.cancel()

        if exited.is_set():
            # Surfaces anything unexpected raised inside the waiter
            await waiter
        else:
            await asyncio.gather(waiter, return_exceptions=True)

        leaked = surviving(tracked)
        if leaked:
            report.error(f"{handle.name} left processes running after exit: {leaked}")


async def run_scoped(
    handle: PrivilegedProcessHandle,
    body: Callable[[], Awaitable[T]],
    report: ScenarioReport,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> T:
    """Function form of interrupt_scope: run `await body()` inside the scope."""
    async with interrupt_scope(handle, report, shutdown_timeout=shutdown_timeout):
        return await body()
