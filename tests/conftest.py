"""
Shared helpers for the harness unit tests.

`daemon_argv` builds a small Python stand-in for teleproxy: it touches a
ready file once its SIGINT handler is installed, then sleeps until
interrupted and exits with the requested status.
"""

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from privileged_process import ProcessState
from scenario_report import AbnormalExitError, HandleStateError, SignalError


DAEMON_SCRIPT = textwrap.dedent("""
    import signal, sys, time
    from pathlib import Path

    ready, on_interrupt = sys.argv[1], sys.argv[2]
    if on_interrupt == "ignore":
        signal.signal(signal.SIGINT, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGINT, lambda *a: sys.exit(int(on_interrupt)))
    Path(ready).touch()
    time.sleep(30)
""")


@pytest.fixture
def daemon_argv(tmp_path):
    """Return (argv, ready_file) for a stand-in daemon."""
    def build(on_interrupt="0"):
        ready = tmp_path / f"ready-{on_interrupt}"
        return [sys.executable, "-c", DAEMON_SCRIPT, str(ready), on_interrupt], ready
    return build


async def _wait_for_file(path: Path, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists():
        if loop.time() > deadline:
            raise AssertionError(f"{path} never appeared")
        await asyncio.sleep(0.02)


class FakeHandle:
    """
    In-memory stand-in for PrivilegedProcessHandle.

    The fake "process" exits when interrupted (with `exit_code`), unless
    `ignore_interrupt` is set, in which case only kill() stops it. With
    `kill_error` set, kill() raises it and the process keeps running.
    """

    def __init__(self, name="teleproxy", exit_code=0, spawn_error=None,
                 signal_error=None, ignore_interrupt=False, kill_error=None,
                 events=None):
        self.name = name
        self.exit_code = exit_code
        self.spawn_error = spawn_error
        self.signal_error = signal_error
        self.ignore_interrupt = ignore_interrupt
        self.kill_error = kill_error
        self.events = events if events is not None else []
        self.state = ProcessState.NOT_STARTED
        self.returncode = None
        self._exited = None

    async def start(self):
        if self.state is not ProcessState.NOT_STARTED:
            raise HandleStateError(f"{self.name} already started")
        if self.spawn_error:
            self.state = ProcessState.EXITED
            raise self.spawn_error
        self._exited = asyncio.Event()
        self.state = ProcessState.RUNNING
        self.events.append(f"{self.name}:start")

    async def wait(self):
        if self._exited is None:
            raise HandleStateError(f"{self.name} was never started")
        await self._exited.wait()
        if self.returncode != 0:
            raise AbnormalExitError(f"{self.name} exited with status {self.returncode}",
                                    returncode=self.returncode)
        return 0

    async def run(self):
        await self.start()
        return await self.wait()

    def exit(self, code):
        self.returncode = code
        self.state = ProcessState.EXITED
        self.events.append(f"{self.name}:exited")
        self._exited.set()

    def send_interrupt(self):
        self.events.append(f"{self.name}:interrupt")
        if self.signal_error:
            # Delivery failed, but the process goes away on its own
            asyncio.get_running_loop().call_soon(self.exit, self.exit_code)
            raise self.signal_error
        self.state = ProcessState.SIGNAL_SENT
        if not self.ignore_interrupt:
            asyncio.get_running_loop().call_soon(self.exit, self.exit_code)

    def kill(self):
        self.events.append(f"{self.name}:kill")
        if self.kill_error:
            raise self.kill_error
        asyncio.get_running_loop().call_soon(self.exit, -9)

    def descendants(self):
        return []


@pytest.fixture
def fake_handle():
    return FakeHandle


@pytest.fixture
def wait_for_file():
    return _wait_for_file


@pytest.fixture
def signal_failure():
    return SignalError("could not interrupt teleproxy: No such process")
