#!/usr/bin/env python3
"""
Privileged Process - single-use handles for elevated daemon instances

A handle wraps one daemon launch: the argument vector (including the
cluster credentials it is pointed at), its lifecycle state, and the
underlying asyncio subprocess. Handles move forward through
NOT_STARTED -> RUNNING -> SIGNAL_SENT -> EXITED and are never restarted.
"""

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import List, Optional, Sequence

import psutil

from harness_config import HarnessConfig
from scenario_report import (
    AbnormalExitError,
    HandleStateError,
    SignalError,
    SpawnError,
)

logger = logging.getLogger(__name__)


class ProcessState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    EXITED = "exited"


_ORDER = [ProcessState.NOT_STARTED, ProcessState.RUNNING,
          ProcessState.SIGNAL_SENT, ProcessState.EXITED]


def elevation_prefix(elevate: Sequence[str]) -> List[str]:
    """The privilege prefix to use, or nothing when already root."""
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return []
    return list(elevate)


class PrivilegedProcessHandle:
    """
    One elevated daemon process.

    The process is started in its own session so an interrupt sent by the
    harness reaches sudo from outside the command's process group and is
    relayed to the daemon.
    """

    def __init__(self, argv: Sequence[str], elevate: Sequence[str] = (), name: Optional[str] = None):
        if not argv:
            raise ValueError("argv must name a binary")
        self.argv = list(argv)
        self.command = elevation_prefix(elevate) + self.argv
        self.name = name or os.path.basename(self.argv[0])
        self.state = ProcessState.NOT_STARTED
        self.returncode: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None

    def __repr__(self):
        pid = self.pid if self._process else None
        return f"<PrivilegedProcessHandle {self.name} state={self.state.value} pid={pid}>"

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _advance(self, new_state: ProcessState) -> None:
        if _ORDER.index(new_state) < _ORDER.index(self.state):
            raise HandleStateError(f"{self.name}: cannot go from {self.state.value} to {new_state.value}")
        self.state = new_state

    async def start(self) -> None:
        """Spawn the process. Raises SpawnError if it cannot be started."""
        if self.state is not ProcessState.NOT_STARTED:
            raise HandleStateError(f"{self.name} already started ({self.state.value})")

        logger.info(f"Starting {self.name}: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                start_new_session=True,
            )
        except OSError as e:
            # The handle is spent either way
            self.state = ProcessState.EXITED
            raise SpawnError(f"could not start {self.name}: {e}", argv=self.command) from e

        self._advance(ProcessState.RUNNING)
        logger.info(f"{self.name} running with PID {self._process.pid}")

    async def wait(self) -> int:
        """
        Block until the process exits.

        Raises AbnormalExitError on a non-zero exit status.
        """
        if self._process is None:
            raise HandleStateError(f"{self.name} was never started")

        if self.returncode is None:
            returncode = await self._process.wait()
            self.returncode = returncode
            self._advance(ProcessState.EXITED)
            logger.info(f"{self.name} (PID {self._process.pid}) exited with status {returncode}")

        if self.returncode != 0:
            raise AbnormalExitError(
                f"{self.name} exited with status {self.returncode}",
                returncode=self.returncode,
            )
        return self.returncode

    async def run(self) -> int:
        """Start the process and wait for it to finish."""
        await self.start()
        return await self.wait()

    def send_interrupt(self) -> None:
        """Ask the daemon to shut down gracefully with SIGINT."""
        if self._process is None:
            raise HandleStateError(f"{self.name} was never started")
        if self.state is ProcessState.EXITED:
            raise SignalError(f"{self.name} already exited with status {self.returncode}")

        try:
            self._process.send_signal(signal.SIGINT)
        except (ProcessLookupError, PermissionError) as e:
            raise SignalError(f"could not interrupt {self.name} (PID {self.pid}): {e}") from e

        self._advance(ProcessState.SIGNAL_SENT)
        logger.info(f"Sent SIGINT to {self.name} (PID {self.pid})")

    def descendants(self) -> List[psutil.Process]:
        """Processes spawned under this handle (the daemon behind sudo, etc)."""
        if self._process is None or self.state is ProcessState.EXITED:
            return []
        try:
            return psutil.Process(self._process.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def kill(self) -> None:
        """Force kill. Only used when an interrupt was not honoured."""
        if self._process is None or self.state is ProcessState.EXITED:
            return
        logger.warning(f"Force killing {self.name} (PID {self.pid})")
        try:
            self._process.kill()
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise SignalError(f"could not kill {self.name} (PID {self.pid}): {e}") from e


def make_sudo(config: HarnessConfig, name: Optional[str] = None) -> PrivilegedProcessHandle:
    """Build a handle that runs the daemon against the configured cluster."""
    argv = [config.daemon_binary, config.kubeconfig_arg()]
    return PrivilegedProcessHandle(argv, elevate=config.elevate_command, name=name)


def surviving(processes: Sequence[psutil.Process]) -> List[int]:
    """PIDs from a descendants() snapshot that are still running."""
    alive = []
    for proc in processes:
        try:
            if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                alive.append(proc.pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return alive


def find_leftover_daemons(binary: str, exclude_pids: Sequence[int] = ()) -> List[int]:
    """
    Find daemon processes still alive after teardown.

    Matches on the process name or the basename of argv[0].
    """
    target = os.path.basename(binary)
    leftovers = []

    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        try:
            pid = proc.info['pid']
            if pid in exclude_pids:
                continue
            cmdline = proc.info.get('cmdline') or []
            names = {proc.info.get('name') or ''}
            if cmdline:
                names.add(os.path.basename(cmdline[0]))
            if target in names:
                leftovers.append(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    return leftovers
