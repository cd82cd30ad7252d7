# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Configure the desired update sites in the Jenkins update center."""

import dataclasses
import logging
import typing

from metadata import SiteSyncError
from reconciler import ReconciliationResult, reconcile
from signature import VerificationPolicy
from update_center import UpdateCenterStore, store_lock
from update_site import ManagedSite, UpdateSiteCatalog

logger = logging.getLogger(__name__)

SyncAction = typing.Callable[[ManagedSite, VerificationPolicy], typing.Any]


@dataclasses.dataclass(frozen=True)
class ConfigurationOutcome:
    """Outcome of an update site configuration run.

    Attributes:
        result: The applied reconciliation result.
        synced: IDs of added update sites whose metadata was synchronized.
        failed: IDs of added update sites whose metadata synchronization failed.
    """

    result: ReconciliationResult
    synced: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


def configure_update_sites(
    store: UpdateCenterStore,
    catalog: UpdateSiteCatalog,
    sync: SyncAction,
    policy: VerificationPolicy,
) -> ConfigurationOutcome:
    """Make sure the desired update sites are configured.

    The update site list is loaded, reconciled and replaced while holding the store guard. The
    metadata of added update sites is synchronized after the guard is released.

    Args:
        store: The update center store.
        catalog: The desired update sites.
        sync: The first synchronization action of an added update site.
        policy: The verification policy passed to the synchronization action.

    Returns:
        The configuration outcome.

    Raises:
        UpdateCenterStoreError: if the update site list could not be loaded or replaced.
    """
    logger.debug("Checking whether update sites are configured")
    with store_lock(store):
        result = reconcile(store.load(), catalog)
        if not result.changed:
            logger.debug("No update site reconfiguration needed")
            return ConfigurationOutcome(result=result)
        logger.debug("Reconfiguring update sites")
        store.replace(result.final_sites)

    synced: list[str] = []
    failed: list[str] = []
    for descriptor in result.added:
        try:
            sync(ManagedSite.from_descriptor(descriptor), policy)
        except SiteSyncError as exc:
            logger.error("Failed to update %s update site, %s", descriptor.display_name, exc)
            failed.append(descriptor.id)
            continue
        # The sync action handles remote input, one site must not stop the others.
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Unexpected error updating %s update site", descriptor.display_name)
            failed.append(descriptor.id)
            continue
        synced.append(descriptor.id)
    return ConfigurationOutcome(result=result, synced=tuple(synced), failed=tuple(failed))
