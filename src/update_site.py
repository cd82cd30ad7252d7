# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Update site types."""

import dataclasses
import typing
from xml.etree import ElementTree

# The XStream element name of the update site class managed by the enabler
MANAGED_SITE_CLASS = "com.cloudbees.jenkins.plugins.enabler.CloudBeesUpdateSite"
DEFAULT_SITE_ID = "default"
DEFAULT_SITE_URL = "https://updates.jenkins.io/update-center.json"


@dataclasses.dataclass(frozen=True)
class EndpointDescriptor:
    """An update site that must exist in the Jenkins update center.

    Attributes:
        id: The update site ID, unique within a catalog.
        display_name: The human readable name, used for logging only.
        url: The update-center.json URL of the site.
    """

    id: str
    display_name: str = dataclasses.field(compare=False)
    url: str


@dataclasses.dataclass(frozen=True)
class ManagedSite:
    """An update site entry created by the enabler.

    Attributes:
        id: The update site ID.
        url: The update site URL.
        element: The XML element the entry was parsed from, if any.
    """

    id: str
    url: str
    element: typing.Optional[ElementTree.Element] = dataclasses.field(
        default=None, compare=False, repr=False
    )

    @classmethod
    def from_descriptor(cls, descriptor: EndpointDescriptor) -> "ManagedSite":
        """Instantiate a new managed site from a desired endpoint.

        Args:
            descriptor: The desired update site.

        Returns:
            A managed site without a backing XML element.
        """
        return cls(id=descriptor.id, url=descriptor.url)


@dataclasses.dataclass(frozen=True, eq=False)
class ForeignSite:
    """Any update site entry not owned by the enabler.

    Foreign sites compare by identity, they are never inspected.

    Attributes:
        element: The opaque XML element of the entry.
    """

    element: ElementTree.Element


ObservedSite = typing.Union[ManagedSite, ForeignSite]


class UpdateSiteCatalog:
    """The read-only set of update sites that must exist."""

    def __init__(self, descriptors: typing.Iterable[EndpointDescriptor]):
        """Construct the catalog.

        Args:
            descriptors: The desired update sites.

        Raises:
            ValueError: if two descriptors share the same ID.
        """
        sites: dict[str, EndpointDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in sites:
                raise ValueError(f"Duplicate update site id {descriptor.id}")
            sites[descriptor.id] = descriptor
        self._sites = sites

    def get(self, site_id: str) -> typing.Optional[EndpointDescriptor]:
        """Look up a desired update site.

        Args:
            site_id: The update site ID.

        Returns:
            The descriptor if the ID is part of the catalog, None otherwise.
        """
        return self._sites.get(site_id)

    def all(self) -> frozenset[EndpointDescriptor]:
        """Return all desired update sites."""
        return frozenset(self._sites.values())

    def __iter__(self) -> typing.Iterator[EndpointDescriptor]:
        """Iterate over desired update sites in declaration order."""
        return iter(self._sites.values())

    def __len__(self) -> int:
        """Return the number of desired update sites."""
        return len(self._sites)


DEFAULT_UPDATE_SITES = UpdateSiteCatalog(
    [
        EndpointDescriptor(
            id="cloudbees-platform-insights",
            display_name="CloudBees Platform Insights",
            url="https://jenkins-updates.cloudbees.com/update-center/"
            "cloudbees-platform-insights/update-center.json",
        ),
    ]
)
