#!/usr/bin/env python3
"""
Scenarios - end-to-end checks of a running teleproxy

smoke_scenario: the daemon comes up and routes traffic to the health URL.

singleton_invariant_scenario: while one daemon is healthy, launching a
second one against the same cluster must not take the first one down.
"""

import asyncio

from health_poller import HealthPoller
from interrupt_scope import DEFAULT_SHUTDOWN_TIMEOUT, interrupt_scope
from privileged_process import PrivilegedProcessHandle
from scenario_report import (
    AbnormalExitError,
    HandleStateError,
    ScenarioReport,
    SignalError,
    SpawnError,
)


async def smoke_scenario(
    handle: PrivilegedProcessHandle,
    poller: HealthPoller,
    report: ScenarioReport,
    url: str,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> bool:
    """Start the daemon, wait for readiness, then interrupt it."""
    async with interrupt_scope(handle, report, shutdown_timeout=shutdown_timeout):
        return await poller.poll(url, report)


async def _reap_duplicate(duplicate: PrivilegedProcessHandle, report: ScenarioReport, timeout: float):
    """Interrupt a duplicate that overstayed, escalating to kill."""
    try:
        duplicate.send_interrupt()
    except (SignalError, HandleStateError) as e:
        report.error(str(e))

    try:
        return await asyncio.wait_for(duplicate.wait(), timeout=timeout)
    except (AbnormalExitError, HandleStateError) as e:
        # HandleStateError: the timeout cancelled start() before a process existed
        return e
    except asyncio.TimeoutError:
        report.error(f"duplicate {duplicate.name} did not exit within {timeout}s after interrupt")

    try:
        duplicate.kill()
    except SignalError as e:
        report.error(str(e))
        return e

    try:
        return await asyncio.wait_for(duplicate.wait(), timeout=timeout)
    except AbnormalExitError as e:
        return e
    except asyncio.TimeoutError as e:
        report.error(f"duplicate {duplicate.name} still running {timeout}s after kill")
        return e


async def run_duplicate(
    duplicate: PrivilegedProcessHandle,
    report: ScenarioReport,
    timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
):
    """
    Run a second daemon to completion and return how it ended.

    The outcome is only logged; no exit status is required of the duplicate.
    A duplicate that is still running after `timeout` is a failure and gets
    interrupted, then killed if it ignores the interrupt, so it cannot outlive
    the scenario.
    """
    try:
        outcome = await asyncio.wait_for(duplicate.run(), timeout=timeout)
    except (SpawnError, AbnormalExitError) as e:
        outcome = e
    except asyncio.TimeoutError:
        report.error(f"duplicate {duplicate.name} still running after {timeout}s")
        outcome = await _reap_duplicate(duplicate, report, timeout)
    report.duplicate_outcome = outcome
    report.log(f"duplicate {duplicate.name} finished: {outcome!r}")
    return outcome


async def singleton_invariant_scenario(
    primary: PrivilegedProcessHandle,
    duplicate: PrivilegedProcessHandle,
    poller: HealthPoller,
    report: ScenarioReport,
    url: str,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> bool:
    """
    Check that a duplicate launch leaves a healthy primary healthy.

    Returns True when the primary still answered 200 after the duplicate
    ran; every failure is recorded on report.
    """
    async with interrupt_scope(primary, report, shutdown_timeout=shutdown_timeout):
        if not await poller.poll(url, report):
            return False

        await run_duplicate(duplicate, report, timeout=shutdown_timeout)

        result = await poller.check_once(url)
        if result.error is not None:
            report.error(f"duplicate {primary.name} killed the first one: {result.error}")
            return False
        if not result.ok:
            report.error(f"duplicate {primary.name} degraded the first one: {result.status}")
            return False
        return True
