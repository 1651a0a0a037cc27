#!/usr/bin/env python3
"""
Harness Configuration - Settings for the teleproxy supervision harness

Where the daemon binary lives, which cluster credentials it is handed,
how readiness is probed, and how privileged processes are launched.
"""

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List


DEFAULT_ELEVATE = ["sudo", "--preserve-env", "--non-interactive"]


def _default_lock_file() -> str:
    return str(Path(tempfile.gettempdir()) / "teleproxy-harness.lock")


@dataclass
class HarnessConfig:
    """Configuration for running teleproxy scenarios against a test cluster."""

    # Daemon under test
    daemon_binary: str = "teleproxy"
    cluster_file: str = "build-aux/cluster.knaut"
    manifest_dir: str = "k8s"

    # Readiness probing
    health_url: str = "http://httptarget"
    poll_interval: float = 1.0      # seconds between probes
    poll_timeout: float = 30.0      # total readiness budget
    request_timeout: float = 10.0   # per-probe cap

    # Teardown
    shutdown_timeout: float = 60.0  # wait after interrupt before force kill

    # Coordination and tooling
    lock_file: str = field(default_factory=_default_lock_file)
    elevate_command: List[str] = field(default_factory=lambda: list(DEFAULT_ELEVATE))
    kubectl_binary: str = "kubectl"
    required_tools: List[str] = field(default_factory=lambda: ["docker"])

    @classmethod
    def from_env(cls) -> 'HarnessConfig':
        """
        Create configuration from environment variables.

        Environment variables:
            TELEPROXY_BINARY: Path to the daemon binary
            TELEPROXY_CLUSTER_FILE: Kubeconfig handed to the daemon
            TELEPROXY_MANIFEST_DIR: Manifests applied before the run
            TELEPROXY_HEALTH_URL: URL that answers 200 once traffic routes
            TELEPROXY_POLL_INTERVAL / TELEPROXY_POLL_TIMEOUT: Readiness timing
            TELEPROXY_REQUEST_TIMEOUT: Per-probe timeout
            TELEPROXY_SHUTDOWN_TIMEOUT: Seconds to wait after interrupt
            TELEPROXY_LOCK_FILE: Machine-wide lock file
            TELEPROXY_ELEVATE: Privilege prefix, e.g. "sudo -E -n"
            KUBECTL: kubectl binary
            TELEPROXY_REQUIRED_TOOLS: Comma-separated tools gating cluster tests
        """
        defaults = cls()
        elevate = os.getenv("TELEPROXY_ELEVATE")
        tools = os.getenv("TELEPROXY_REQUIRED_TOOLS")

        return cls(
            daemon_binary=os.getenv("TELEPROXY_BINARY", defaults.daemon_binary),
            cluster_file=os.getenv("TELEPROXY_CLUSTER_FILE", defaults.cluster_file),
            manifest_dir=os.getenv("TELEPROXY_MANIFEST_DIR", defaults.manifest_dir),
            health_url=os.getenv("TELEPROXY_HEALTH_URL", defaults.health_url),
            poll_interval=float(os.getenv("TELEPROXY_POLL_INTERVAL", defaults.poll_interval)),
            poll_timeout=float(os.getenv("TELEPROXY_POLL_TIMEOUT", defaults.poll_timeout)),
            request_timeout=float(os.getenv("TELEPROXY_REQUEST_TIMEOUT", defaults.request_timeout)),
            shutdown_timeout=float(os.getenv("TELEPROXY_SHUTDOWN_TIMEOUT", defaults.shutdown_timeout)),
            lock_file=os.getenv("TELEPROXY_LOCK_FILE", defaults.lock_file),
            elevate_command=shlex.split(elevate) if elevate is not None else defaults.elevate_command,
            kubectl_binary=os.getenv("KUBECTL", defaults.kubectl_binary),
            required_tools=[t.strip() for t in tools.split(",") if t.strip()] if tools is not None
            else defaults.required_tools,
        )

    @classmethod
    def from_file(cls, config_path: Path) -> 'HarnessConfig':
        """Load configuration from a JSON or YAML file."""
        import json

        if not config_path.exists():
            return cls()

        content = config_path.read_text()

        if config_path.suffix in ('.yaml', '.yml'):
            try:
                import yaml
                data = yaml.safe_load(content)
            except ImportError:
                raise ImportError("PyYAML required for YAML config files")
        else:
            data = json.loads(content)

        harness = (data or {}).get("harness", {})
        known = {k: v for k, v in harness.items() if k in cls.__dataclass_fields__}
        if isinstance(known.get("elevate_command"), str):
            known["elevate_command"] = shlex.split(known["elevate_command"])
        return cls(**known)

    def kubeconfig_arg(self) -> str:
        return f"--kubeconfig={self.cluster_file}"

    def validate(self) -> List[str]:
        """
        Validate the configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.daemon_binary:
            errors.append("Daemon binary is required")
        if not self.cluster_file:
            errors.append("Cluster file is required")
        if not self.health_url.startswith(("http://", "https://")):
            errors.append(f"Health URL must be http(s): {self.health_url}")

        if self.poll_interval <= 0:
            errors.append("Poll interval must be positive")
        if self.poll_timeout < self.poll_interval:
            errors.append("Poll timeout must be at least one poll interval")
        if self.request_timeout <= 0:
            errors.append("Request timeout must be positive")
        if self.shutdown_timeout <= 0:
            errors.append("Shutdown timeout must be positive")

        return errors

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "daemon_binary": self.daemon_binary,
            "cluster_file": self.cluster_file,
            "manifest_dir": self.manifest_dir,
            "health_url": self.health_url,
            "poll_interval": self.poll_interval,
            "poll_timeout": self.poll_timeout,
            "request_timeout": self.request_timeout,
            "shutdown_timeout": self.shutdown_timeout,
            "lock_file": self.lock_file,
            "elevate_command": list(self.elevate_command),
            "kubectl_binary": self.kubectl_binary,
            "required_tools": list(self.required_tools),
        }

    def print_summary(self):
        """Print configuration summary."""
        print("\n" + "=" * 60)
        print("Teleproxy Harness Configuration")
        print("=" * 60)
        print(f"  Daemon:             {self.daemon_binary} {self.kubeconfig_arg()}")
        print(f"  Manifests:          {self.manifest_dir}")
        print(f"  Health URL:         {self.health_url}")
        print(f"  Poll:               every {self.poll_interval}s for {self.poll_timeout}s")
        print(f"  Shutdown timeout:   {self.shutdown_timeout}s")
        print(f"  Lock file:          {self.lock_file}")
        print(f"  Elevation:          {' '.join(self.elevate_command) or '(none)'}")
        print("=" * 60 + "\n")


def add_harness_args(parser) -> None:
    """Add harness CLI arguments to an argument parser."""
    group = parser.add_argument_group('Harness Options')

    group.add_argument(
        '--config',
        type=str,
        help='JSON or YAML file with a "harness" section (replaces environment settings)'
    )

    group.add_argument(
        '--binary',
        type=str,
        help='Daemon binary (or set TELEPROXY_BINARY)'
    )

    group.add_argument(
        '--kubeconfig',
        type=str,
        help='Cluster credentials passed to the daemon'
    )

    group.add_argument(
        '--manifests',
        type=str,
        help='Manifest directory applied before scenarios run'
    )

    group.add_argument(
        '--health-url',
        type=str,
        help='URL that must answer 200 once the daemon is ready'
    )

    group.add_argument(
        '--poll-timeout',
        type=float,
        help='Readiness budget in seconds (default: 30)'
    )

    group.add_argument(
        '--lock-file',
        type=str,
        help='Machine-wide lock file'
    )

    group.add_argument(
        '--no-elevate',
        action='store_true',
        help='Run the daemon without a privilege prefix'
    )


def config_from_args(args) -> HarnessConfig:
    """Create HarnessConfig from parsed CLI arguments."""
    # Start with the config file if one was given, else the environment
    config_path = getattr(args, 'config', None)
    if config_path:
        config = HarnessConfig.from_file(Path(config_path))
    else:
        config = HarnessConfig.from_env()

    if getattr(args, 'binary', None):
        config.daemon_binary = args.binary

    if getattr(args, 'kubeconfig', None):
        config.cluster_file = args.kubeconfig

    if getattr(args, 'manifests', None):
        config.manifest_dir = args.manifests

    if getattr(args, 'health_url', None):
        config.health_url = args.health_url

    if getattr(args, 'poll_timeout', None):
        config.poll_timeout = args.poll_timeout

    if getattr(args, 'lock_file', None):
        config.lock_file = args.lock_file

    if getattr(args, 'no_elevate', False):
        config.elevate_command = []

    return config
