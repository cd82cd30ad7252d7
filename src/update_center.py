# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Access to the Jenkins update center site list."""

import contextlib
import copy
import fcntl
import logging
import os
import re
import tempfile
import threading
import typing
import weakref
from pathlib import Path
from xml.etree import ElementTree

import ops

from update_site import (
    DEFAULT_SITE_ID,
    DEFAULT_SITE_URL,
    MANAGED_SITE_CLASS,
    ForeignSite,
    ManagedSite,
    ObservedSite,
)

logger = logging.getLogger(__name__)

JENKINS_HOME_PATH = Path("/var/lib/jenkins")
# The XStream persisted site list of hudson.model.UpdateCenter, relative to JENKINS_HOME
UPDATE_CENTER_CONFIG_PATH = Path("hudson.model.UpdateCenter.xml")
# The downloaded update site metadata directory, relative to JENKINS_HOME
UPDATES_PATH = Path("updates")
XML_DECLARATION = "<?xml version='1.1' encoding='UTF-8'?>"
USER = "jenkins"
GROUP = "jenkins"

# ElementTree (expat) does not understand XML 1.1 declarations written by XStream.
_XML_DECLARATION_PATTERN = re.compile(r"^\s*<\?xml[^>]*\?>")

DEFAULT_FILE_MODE = 0o644


class _StoreGuard:  # pylint: disable=too-few-public-methods
    """In-process guard of a store.

    Attributes:
        lock: The reentrant lock serializing threads.
        depth: How many times the holding thread entered the guard.
    """

    def __init__(self) -> None:
        """Construct the guard."""
        self.lock = threading.RLock()
        self.depth = 0


# Guards are dropped once no thread holds or waits for them.
_STORE_GUARDS: "weakref.WeakValueDictionary[str, _StoreGuard]" = weakref.WeakValueDictionary()
_STORE_GUARDS_LOCK = threading.Lock()


class UpdateCenterError(Exception):
    """Base exception for update center errors."""


class UpdateCenterStoreError(UpdateCenterError):
    """The update site list could not be loaded or saved."""


class UpdateCenterStore(typing.Protocol):
    """Persisted update site list of a Jenkins instance.

    Attributes:
        key: The identity of the underlying store, used for mutual exclusion.
    """

    @property
    def key(self) -> str:
        """The identity of the underlying store."""

    def exclusive(self) -> typing.ContextManager[None]:
        """Hold the guard excluding other processes working on the same store."""

    def load(self) -> list[ObservedSite]:
        """Load the update site list."""

    def replace(self, sites: typing.Iterable[ObservedSite]) -> None:
        """Atomically replace the update site list.

        Args:
            sites: The new update site list.
        """

    def write_site_metadata(self, site_id: str, content: str) -> None:
        """Save the downloaded metadata of an update site.

        Args:
            site_id: The update site ID.
            content: The update-center.json content.
        """


@contextlib.contextmanager
def store_lock(store: UpdateCenterStore) -> typing.Iterator[None]:
    """Hold the mutual exclusion guard of an update site store.

    Threads of the process are serialized on the store key, the outermost hold also takes the
    cross-process guard of the store.

    Args:
        store: The update site store to guard.

    Yields:
        Nothing, the guard is held while the context is active.
    """
    with _STORE_GUARDS_LOCK:
        guard = _STORE_GUARDS.get(store.key)
        if guard is None:
            guard = _StoreGuard()
            _STORE_GUARDS[store.key] = guard
    with guard.lock, contextlib.ExitStack() as stack:
        if guard.depth == 0:
            stack.enter_context(store.exclusive())
        guard.depth += 1
        try:
            yield
        finally:
            guard.depth -= 1


def _default_sites() -> list[ObservedSite]:
    """Get the site list Jenkins uses when no update center configuration exists.

    Returns:
        The Jenkins community update site.
    """
    element = ElementTree.Element("site")
    ElementTree.SubElement(element, "id").text = DEFAULT_SITE_ID
    ElementTree.SubElement(element, "url").text = DEFAULT_SITE_URL
    return [ForeignSite(element)]


def parse_sites(content: str, managed_class: str = MANAGED_SITE_CLASS) -> list[ObservedSite]:
    """Parse the XStream update center site list.

    Args:
        content: The hudson.model.UpdateCenter.xml content.
        managed_class: The element name of managed update sites.

    Raises:
        UpdateCenterStoreError: if the content is not a valid site list.

    Returns:
        The update sites in document order.
    """
    try:
        root = ElementTree.fromstring(_XML_DECLARATION_PATTERN.sub("", content, count=1))
    except ElementTree.ParseError as exc:
        logger.error("Failed to parse update center configuration, %s", exc)
        raise UpdateCenterStoreError("Malformed update center configuration.") from exc
    if root.tag != "sites":
        raise UpdateCenterStoreError(f"Unexpected update center root element {root.tag}.")
    sites: list[ObservedSite] = []
    for element in root:
        if element.tag != managed_class:
            sites.append(ForeignSite(element))
            continue
        sites.append(
            ManagedSite(
                id=(element.findtext("id") or "").strip(),
                url=(element.findtext("url") or "").strip(),
                element=element,
            )
        )
    return sites


def _to_element(site: ObservedSite, managed_class: str) -> ElementTree.Element:
    """Get a detached XML element of an update site.

    Args:
        site: The update site.
        managed_class: The element name of managed update sites.

    Returns:
        A copy of the parsed element, or a new one for newly created sites.
    """
    if site.element is not None:
        return copy.deepcopy(site.element)
    # Only managed sites can be created without a parsed element.
    site = typing.cast(ManagedSite, site)
    element = ElementTree.Element(managed_class)
    ElementTree.SubElement(element, "id").text = site.id
    ElementTree.SubElement(element, "url").text = site.url
    return element


def serialize_sites(
    sites: typing.Iterable[ObservedSite], managed_class: str = MANAGED_SITE_CLASS
) -> str:
    """Serialize an update site list to the XStream format.

    Args:
        sites: The update sites.
        managed_class: The element name of managed update sites.

    Returns:
        The hudson.model.UpdateCenter.xml content.
    """
    root = ElementTree.Element("sites")
    for site in sites:
        root.append(_to_element(site, managed_class))
    ElementTree.indent(root)
    return f"{XML_DECLARATION}\n{ElementTree.tostring(root, encoding='unicode')}\n"


def _atomic_write(path: Path, content: str) -> None:
    """Write a file so that readers see either the old or the new content.

    The content goes to a uniquely named sibling first, which is removed if the write fails.

    Args:
        path: The destination path.
        content: The file content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = DEFAULT_FILE_MODE
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            file.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileUpdateCenterStore:
    """Update site list of a Jenkins home on the local filesystem.

    Attributes:
        jenkins_home: The Jenkins home directory.
        managed_class: The element name of managed update sites.
        path: The update center configuration path.
        key: The identity of the store.
    """

    def __init__(self, jenkins_home: Path, managed_class: str = MANAGED_SITE_CLASS):
        """Construct the store.

        Args:
            jenkins_home: The Jenkins home directory.
            managed_class: The element name of managed update sites.
        """
        self.jenkins_home = jenkins_home
        self.managed_class = managed_class

    @property
    def path(self) -> Path:
        """The update center configuration path."""
        return self.jenkins_home / UPDATE_CENTER_CONFIG_PATH

    @property
    def key(self) -> str:
        """The identity of the store."""
        return f"file:{self.path.resolve()}"

    @property
    def lock_path(self) -> Path:
        """The lock file shared by processes configuring the same Jenkins home."""
        return self.path.with_name(f"{self.path.name}.lock")

    @contextlib.contextmanager
    def exclusive(self) -> typing.Iterator[None]:
        """Hold an exclusive lock on the lock file of the Jenkins home.

        Raises:
            UpdateCenterStoreError: if the lock file could not be opened or locked.

        Yields:
            Nothing, the lock is held while the context is active.
        """
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            # The lock belongs to the open file, closing it releases the lock.
            # pylint: disable-next=consider-using-with
            lock_file = open(self.lock_path, "a", encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to open %s, %s", self.lock_path, exc)
            raise UpdateCenterStoreError("Failed to lock update center configuration.") from exc
        with lock_file:
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
            except OSError as exc:
                logger.error("Failed to lock %s, %s", self.lock_path, exc)
                raise UpdateCenterStoreError(
                    "Failed to lock update center configuration."
                ) from exc
            yield

    def load(self) -> list[ObservedSite]:
        """Load the update site list.

        Raises:
            UpdateCenterStoreError: if the configuration could not be read.

        Returns:
            The update sites, Jenkins defaults if not configured yet.
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("%s not found, using default update sites", self.path)
            return _default_sites()
        except OSError as exc:
            logger.error("Failed to read %s, %s", self.path, exc)
            raise UpdateCenterStoreError("Failed to read update center configuration.") from exc
        return parse_sites(content, self.managed_class)

    def replace(self, sites: typing.Iterable[ObservedSite]) -> None:
        """Atomically replace the update site list.

        Args:
            sites: The new update site list.

        Raises:
            UpdateCenterStoreError: if the configuration could not be written.
        """
        content = serialize_sites(sites, self.managed_class)
        try:
            _atomic_write(self.path, content)
        except OSError as exc:
            logger.error("Failed to write %s, %s", self.path, exc)
            raise UpdateCenterStoreError("Failed to write update center configuration.") from exc

    def write_site_metadata(self, site_id: str, content: str) -> None:
        """Save the downloaded metadata of an update site.

        Args:
            site_id: The update site ID.
            content: The update-center.json content.

        Raises:
            UpdateCenterStoreError: if the metadata could not be written.
        """
        path = self.jenkins_home / UPDATES_PATH / f"{site_id}.json"
        try:
            _atomic_write(path, content)
        except OSError as exc:
            logger.error("Failed to write %s, %s", path, exc)
            raise UpdateCenterStoreError(f"Failed to write {site_id} metadata.") from exc


class ContainerUpdateCenterStore:
    """Update site list of a Jenkins home inside a Pebble managed workload container.

    Attributes:
        container: The Jenkins workload container.
        jenkins_home: The Jenkins home directory inside the container.
        managed_class: The element name of managed update sites.
        path: The update center configuration path.
        key: The identity of the store.
    """

    def __init__(
        self,
        container: ops.Container,
        jenkins_home: Path = JENKINS_HOME_PATH,
        managed_class: str = MANAGED_SITE_CLASS,
    ):
        """Construct the store.

        Args:
            container: The Jenkins workload container.
            jenkins_home: The Jenkins home directory inside the container.
            managed_class: The element name of managed update sites.
        """
        self.container = container
        self.jenkins_home = jenkins_home
        self.managed_class = managed_class

    @property
    def path(self) -> Path:
        """The update center configuration path."""
        return self.jenkins_home / UPDATE_CENTER_CONFIG_PATH

    @property
    def key(self) -> str:
        """The identity of the store."""
        return f"container:{self.container.name}:{self.path}"

    def exclusive(self) -> typing.ContextManager[None]:
        """Hold the cross-process guard of the store.

        Juju runs the hooks of a unit one at a time, no other process edits the container.

        Returns:
            A context manager that does nothing.
        """
        return contextlib.nullcontext()

    def load(self) -> list[ObservedSite]:
        """Load the update site list.

        Raises:
            UpdateCenterStoreError: if the configuration could not be pulled.

        Returns:
            The update sites, Jenkins defaults if not configured yet.
        """
        try:
            content = str(self.container.pull(self.path, encoding="utf-8").read())
        except ops.pebble.PathError as exc:
            if exc.kind == "not-found":
                logger.debug("%s not found, using default update sites", self.path)
                return _default_sites()
            logger.error("Failed to pull %s, %s", self.path, exc)
            raise UpdateCenterStoreError("Failed to read update center configuration.") from exc
        except ops.pebble.Error as exc:
            logger.error("Failed to pull %s, %s", self.path, exc)
            raise UpdateCenterStoreError("Failed to read update center configuration.") from exc
        return parse_sites(content, self.managed_class)

    def _push(self, path: Path, content: str) -> None:
        """Push a file into the workload container as the Jenkins user.

        Args:
            path: The destination path.
            content: The file content.
        """
        self.container.push(
            path, content, encoding="utf-8", make_dirs=True, user=USER, group=GROUP
        )

    def replace(self, sites: typing.Iterable[ObservedSite]) -> None:
        """Atomically replace the update site list.

        Args:
            sites: The new update site list.

        Raises:
            UpdateCenterStoreError: if the configuration could not be pushed.
        """
        try:
            self._push(self.path, serialize_sites(sites, self.managed_class))
        except ops.pebble.Error as exc:
            logger.error("Failed to push %s, %s", self.path, exc)
            raise UpdateCenterStoreError("Failed to write update center configuration.") from exc

    def write_site_metadata(self, site_id: str, content: str) -> None:
        """Save the downloaded metadata of an update site.

        Args:
            site_id: The update site ID.
            content: The update-center.json content.

        Raises:
            UpdateCenterStoreError: if the metadata could not be pushed.
        """
        path = self.jenkins_home / UPDATES_PATH / f"{site_id}.json"
        try:
            self._push(path, content)
        except ops.pebble.Error as exc:
            logger.error("Failed to push %s, %s", path, exc)
            raise UpdateCenterStoreError(f"Failed to write {site_id} metadata.") from exc
