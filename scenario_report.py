#!/usr/bin/env python3
"""
Scenario Report - failure recording for harness scenarios

Collects non-fatal errors raised while a daemon scenario runs so that
cleanup can keep going and every problem still reaches the test result.
Also defines the harness exception hierarchy.
"""

import logging
from threading import Lock
from typing import Any, List, Optional

logger = logging.getLogger(__name__)


class HarnessError(Exception):
    """Base class for harness errors."""


class SpawnError(HarnessError):
    """The daemon process could not be started."""
    def __init__(self, message: str, argv: Optional[List[str]] = None):
        super().__init__(message)
        self.argv = argv or []


class AbnormalExitError(HarnessError):
    """The daemon process exited with a non-zero status."""
    def __init__(self, message: str, returncode: int = 0):
        super().__init__(message)
        self.returncode = returncode


class SignalError(HarnessError):
    """An interrupt could not be delivered to the daemon process."""


class HandleStateError(HarnessError):
    """A process handle was used out of order (e.g. started twice)."""


class LockError(HarnessError):
    """The machine lock was misused."""


class ProvisioningError(HarnessError):
    """Applying manifests to the test cluster failed."""
    def __init__(self, message: str, returncode: int = 0, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ScenarioFailed(AssertionError):
    """Raised when recorded failures are surfaced at the end of a scenario."""


class ScenarioReport:
    """
    Records the outcome of a single scenario.

    Errors recorded with error() do not stop the scenario. The `failed` flag
    is what the health poller consults to give up early on a doomed test.
    """

    def __init__(self, name: str = "scenario"):
        self.name = name
        self._errors: List[str] = []
        self._lock = Lock()
        self.duplicate_outcome: Any = None

    @property
    def failed(self) -> bool:
        with self._lock:
            return bool(self._errors)

    @property
    def errors(self) -> List[str]:
        with self._lock:
            return list(self._errors)

    def error(self, message: str) -> None:
        """Record a failure and keep going."""
        with self._lock:
            self._errors.append(message)
        logger.error(f"[{self.name}] {message}")

    def log(self, message: str) -> None:
        logger.info(f"[{self.name}] {message}")

    def raise_for_failures(self) -> None:
        """Raise ScenarioFailed if anything was recorded."""
        errors = self.errors
        if errors:
            raise ScenarioFailed(f"{self.name} failed:\n  " + "\n  ".join(errors))
