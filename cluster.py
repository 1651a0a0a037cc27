#!/usr/bin/env python3
"""
Cluster - environment gate and one-shot manifest provisioning

Cluster scenarios need a container runtime, kubectl, a privilege prefix and
the cluster credentials file on the machine; without them they are skipped
rather than failed. When the environment is usable, the manifests are applied
to the shared test cluster once, before any scenario starts.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from harness_config import HarnessConfig
from scenario_report import ProvisioningError

logger = logging.getLogger(__name__)


def missing_tools(config: HarnessConfig) -> List[str]:
    """Required tools, kubectl and the elevation command not found on PATH."""
    tools = list(config.required_tools) + [config.kubectl_binary]
    if config.elevate_command:
        tools.append(config.elevate_command[0])
    return [tool for tool in tools if shutil.which(tool) is None]


def check_environment(config: HarnessConfig) -> Optional[str]:
    """
    Return why cluster scenarios cannot run here, or None if they can.
    """
    missing = missing_tools(config)
    if missing:
        reason = f"{', '.join(missing)} not found in PATH"
        logger.warning(f"Cluster scenarios unavailable: {reason}")
        return reason
    if not Path(config.cluster_file).exists():
        reason = f"cluster file {config.cluster_file} not found"
        logger.warning(f"Cluster scenarios unavailable: {reason}")
        return reason
    return None


class ClusterProvisioner:
    """Applies the manifest directory to the test cluster, at most once."""

    def __init__(self, config: HarnessConfig, timeout: int = 600):
        self.config = config
        self.timeout = timeout
        self.applied = False

    def command(self) -> List[str]:
        return [
            self.config.kubectl_binary,
            self.config.kubeconfig_arg(),
            "apply",
            "-f", self.config.manifest_dir,
        ]

    def apply(self) -> bool:
        """
        Apply manifests. Returns True if this call applied them, False if
        an earlier call already had.
        """
        if self.applied:
            logger.info("Cluster already provisioned for this run")
            return False

        cmd = self.command()
        logger.info(f"Provisioning cluster: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise ProvisioningError(f"{self.config.kubectl_binary} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(f"kubectl apply timed out after {self.timeout}s") from e

        if result.returncode != 0:
            raise ProvisioningError(
                f"kubectl apply failed with status {result.returncode}",
                returncode=result.returncode,
                output=result.stderr or result.stdout,
            )

        self.applied = True
        logger.info(f"Cluster provisioned from {self.config.manifest_dir}")
        return True
