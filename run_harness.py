#!/usr/bin/env python3
"""
Teleproxy Harness Runner - run a scenario by hand, outside pytest

Usage:
    # Is this machine able to run cluster scenarios?
    python run_harness.py check-env

    # Write the effective settings as a file --config can read back
    python run_harness.py config > harness.json

    # Apply manifests to the test cluster
    python run_harness.py provision

    # Start teleproxy, wait for httptarget, interrupt it
    python run_harness.py smoke

    # Start teleproxy, launch a duplicate, make sure the first survives
    python run_harness.py singleton --kubeconfig build-aux/cluster.knaut
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from cluster import ClusterProvisioner, check_environment
from harness_config import HarnessConfig, add_harness_args, config_from_args
from health_poller import HealthPoller
from machine_lock import get_machine_lock
from privileged_process import find_leftover_daemons, make_sudo
from scenario_report import HarnessError, ScenarioFailed, ScenarioReport
from scenarios import singleton_invariant_scenario, smoke_scenario

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNAVAILABLE = 2


def _run_scenario(name: str, config: HarnessConfig) -> int:
    report = ScenarioReport(name)
    poller = HealthPoller.from_config(config)

    if name == "smoke":
        coro = smoke_scenario(
            make_sudo(config, name="teleproxy"), poller, report, config.health_url,
            shutdown_timeout=config.shutdown_timeout,
        )
    else:
        coro = singleton_invariant_scenario(
            make_sudo(config, name="teleproxy"),
            make_sudo(config, name="teleproxy-dup"),
            poller, report, config.health_url,
            shutdown_timeout=config.shutdown_timeout,
        )

    try:
        asyncio.run(coro)
        report.raise_for_failures()
    except (ScenarioFailed, HarnessError) as e:
        logger.error(f"{name}: FAILED\n{e}")
        return EXIT_FAILED

    logger.info(f"{name}: PASSED")
    return EXIT_OK


def run(command: str, config: HarnessConfig) -> int:
    """Run one command while holding the machine lock."""
    if command == "config":
        print(json.dumps({"harness": config.to_dict()}, indent=2))
        return EXIT_OK

    reason = check_environment(config)

    if command == "check-env":
        stray = find_leftover_daemons(config.daemon_binary, exclude_pids=[os.getpid()])
        if stray:
            logger.warning(f"{config.daemon_binary} already running: PIDs {stray}")
        if reason:
            print(f"unavailable: {reason}")
            return EXIT_UNAVAILABLE
        print("ok")
        return EXIT_OK

    if reason:
        logger.warning(f"Skipping {command}: {reason}")
        return EXIT_UNAVAILABLE

    def body() -> int:
        try:
            ClusterProvisioner(config).apply()
        except HarnessError as e:
            logger.error(str(e))
            return EXIT_FAILED
        if command == "provision":
            return EXIT_OK
        return _run_scenario(command, config)

    return get_machine_lock(config).with_exclusive_access(body)


def main():
    parser = argparse.ArgumentParser(
        description="Teleproxy Harness - supervised daemon scenarios",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_harness.py check-env
    python run_harness.py smoke --binary ./teleproxy
    python run_harness.py singleton --poll-timeout 60
        """
    )

    parser.add_argument(
        "command",
        choices=["smoke", "singleton", "provision", "check-env", "config"],
        help="What to run"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    add_harness_args(parser)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    config = config_from_args(args)
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(EXIT_FAILED)

    if args.verbose:
        config.print_summary()

    sys.exit(run(args.command, config))


if __name__ == "__main__":
    main()
