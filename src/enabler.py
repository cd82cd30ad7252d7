#!/usr/bin/env python3

# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Jenkins update site enabler."""

import argparse
import dataclasses
import logging
import sys
import typing
from pathlib import Path

import ops

from configurer import ConfigurationOutcome, configure_update_sites
from metadata import UpdateSiteSynchronizer
from signature import TrustAnchorError, VerificationPolicy
from state import ConfigInvalidError, State
from update_center import (
    ContainerUpdateCenterStore,
    FileUpdateCenterStore,
    UpdateCenterStore,
    UpdateCenterStoreError,
)

logger = logging.getLogger(__name__)

EXIT_STORE_ERROR = 1
EXIT_CONFIG_ERROR = 2


def run(store: UpdateCenterStore, state: State) -> ConfigurationOutcome:
    """Configure the desired update sites of a Jenkins update center store.

    Args:
        store: The update center store.
        state: The enabler state.

    Returns:
        The configuration outcome.
    """
    policy = VerificationPolicy.from_file(state.trust_anchors_path, state.signature_check)
    synchronizer = UpdateSiteSynchronizer(
        store,
        timeout=state.timeout,
        proxy_config=state.proxy_config,
        jenkins_version=state.jenkins_version,
    )
    return configure_update_sites(store, state.update_sites, synchronizer.sync, policy)


def configure_container(container: ops.Container, state: State) -> ConfigurationOutcome:
    """Configure the desired update sites of Jenkins running in a workload container.

    Meant to be called before the Jenkins service is (re)started, e.g. on pebble ready.

    Args:
        container: The Jenkins workload container.
        state: The enabler state.

    Returns:
        The configuration outcome.
    """
    store = ContainerUpdateCenterStore(
        container, jenkins_home=state.jenkins_home, managed_class=state.managed_site_class
    )
    return run(store, state)


def _parse_args(argv: typing.Optional[typing.Sequence[str]]) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: The command line arguments, sys.argv if None.

    Returns:
        The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="jenkins-uc-enabler",
        description="Make sure the desired update sites are configured in a Jenkins home.",
    )
    parser.add_argument(
        "--jenkins-home", type=Path, help="Jenkins home directory, overrides JENKINS_HOME."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: typing.Optional[typing.Sequence[str]] = None) -> int:
    """Configure the desired update sites of a local Jenkins home.

    Args:
        argv: The command line arguments, sys.argv if None.

    Returns:
        The process exit status.
    """
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        state = State.from_env()
    except ConfigInvalidError as exc:
        logger.error("Invalid configuration, %s", exc.msg)
        return EXIT_CONFIG_ERROR
    if args.jenkins_home:
        state = dataclasses.replace(state, jenkins_home=args.jenkins_home)

    store = FileUpdateCenterStore(state.jenkins_home, state.managed_site_class)
    try:
        outcome = run(store, state)
    except TrustAnchorError as exc:
        logger.error("Invalid trust anchors, %s", exc)
        return EXIT_CONFIG_ERROR
    except UpdateCenterStoreError as exc:
        logger.error("Failed to configure update sites, %s", exc)
        return EXIT_STORE_ERROR
    if outcome.failed:
        logger.warning("Update sites added without metadata: %s", ", ".join(outcome.failed))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
