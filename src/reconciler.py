# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Reconcile the Jenkins update site list with the desired update sites."""

import dataclasses
import logging
import typing

from update_site import (
    EndpointDescriptor,
    ManagedSite,
    ObservedSite,
    UpdateSiteCatalog,
)

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ReconciliationResult:
    """The outcome of a reconciliation pass.

    Attributes:
        final_sites: The update site list to persist, kept entries in their original order
            followed by the newly created ones.
        added: The desired update sites that had no matching entry.
        removed: The managed entries dropped as stale or duplicated.
        changed: Whether final_sites differs from the observed update site list.
    """

    final_sites: tuple[ObservedSite, ...]
    added: tuple[EndpointDescriptor, ...]
    removed: tuple[ManagedSite, ...]
    changed: bool


def _is_match(site: ManagedSite, descriptor: typing.Optional[EndpointDescriptor]) -> bool:
    """Return whether a managed entry is the correct entry of a desired update site.

    The descriptor is looked up by the entry ID, only the URL is left to compare.

    Args:
        site: The managed update site entry.
        descriptor: The desired update site with the same ID, if any.

    Returns:
        True if a descriptor was found and its URL matches the entry, False otherwise.
    """
    return descriptor is not None and descriptor.url == site.url


def reconcile(
    observed: typing.Iterable[ObservedSite], catalog: UpdateSiteCatalog
) -> ReconciliationResult:
    """Compute the update site list converging the observed sites to the catalog.

    The first correct managed entry of each desired site is kept. Foreign entries are always
    kept in place. Managed entries that are unknown, have an outdated URL or duplicate an
    already kept entry are dropped, and desired sites without an entry are appended.

    Args:
        observed: The current update site list.
        catalog: The desired update sites.

    Returns:
        The reconciliation result.
    """
    found: set[str] = set()
    final_sites: list[ObservedSite] = []
    removed: list[ManagedSite] = []
    for site in observed:
        if not isinstance(site, ManagedSite):
            final_sites.append(site)
            continue
        descriptor = catalog.get(site.id)
        if site.id not in found and _is_match(site, descriptor):
            logger.debug("%s update site already configured", site.id)
            found.add(site.id)
            final_sites.append(site)
        else:
            logger.debug("Removing extra/invalid %s update site", site.id)
            removed.append(site)

    added: list[EndpointDescriptor] = []
    for descriptor in catalog:
        if descriptor.id in found:
            continue
        logger.info("Adding %s update site", descriptor.display_name)
        added.append(descriptor)
        final_sites.append(ManagedSite.from_descriptor(descriptor))

    return ReconciliationResult(
        final_sites=tuple(final_sites),
        added=tuple(added),
        removed=tuple(removed),
        changed=bool(added or removed),
    )
