# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Update site metadata download."""

import dataclasses
import json
import logging
import typing

import requests

import state
from signature import SignatureError, VerificationPolicy
from update_center import UpdateCenterStore, UpdateCenterStoreError
from update_site import ManagedSite

logger = logging.getLogger(__name__)


class SiteSyncError(Exception):
    """The metadata of an update site could not be synchronized."""


@dataclasses.dataclass(frozen=True)
class SyncOutcome:
    """Result of a successful update site synchronization.

    Attributes:
        site_id: The synchronized update site ID.
        verified: Whether the metadata signature was verified.
    """

    site_id: str
    verified: bool


def unwrap_jsonp(content: str) -> str:
    """Extract the JSON document from a JSONP update-center response.

    Update sites serve "updateCenter.post({...});". Plain JSON is returned as is.

    Args:
        content: The downloaded content.

    Raises:
        ValueError: if no JSON object is found.

    Returns:
        The JSON object text.
    """
    start = content.find("{")
    end = content.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("No JSON object found in update site response.")
    return content[start : end + 1]


class UpdateSiteSynchronizer:
    """Download update site metadata directly into the Jenkins home.

    Attributes:
        store: The update center store the metadata is written to.
        timeout: The download timeout in seconds.
        proxy_config: The proxy to download through.
        jenkins_version: The Jenkins version reported to the update site.
    """

    def __init__(
        self,
        store: UpdateCenterStore,
        timeout: int = state.DEFAULT_TIMEOUT,
        proxy_config: typing.Optional[state.ProxyConfig] = None,
        jenkins_version: typing.Optional[str] = None,
    ):
        """Construct the synchronizer.

        Args:
            store: The update center store the metadata is written to.
            timeout: The download timeout in seconds.
            proxy_config: The proxy to download through.
            jenkins_version: The Jenkins version reported to the update site.
        """
        self.store = store
        self.timeout = timeout
        self.proxy_config = proxy_config
        self.jenkins_version = jenkins_version

    def _download(self, site: ManagedSite) -> str:
        """Download the update-center.json of an update site.

        Args:
            site: The update site.

        Raises:
            SiteSyncError: if the download failed.

        Returns:
            The response text.
        """
        params = {"id": site.id}
        if self.jenkins_version:
            params["version"] = self.jenkins_version
        proxies = self.proxy_config.to_requests_proxies() if self.proxy_config else None
        try:
            response = requests.get(
                site.url, params=params, timeout=self.timeout, proxies=proxies
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to download %s update site metadata, %s", site.id, exc)
            raise SiteSyncError(f"Failed to download {site.id} update site metadata.") from exc
        return response.text

    def sync(self, site: ManagedSite, policy: VerificationPolicy) -> SyncOutcome:
        """Download, verify and save the metadata of an update site.

        Args:
            site: The newly added update site.
            policy: The verification policy to apply to the metadata.

        Raises:
            SiteSyncError: if the metadata could not be downloaded, verified or saved.

        Returns:
            The synchronization outcome.
        """
        logger.info("Updating %s update site metadata from %s", site.id, site.url)
        try:
            content = unwrap_jsonp(self._download(site))
            document = json.loads(content)
        except (ValueError, RecursionError) as exc:
            logger.error("Malformed %s update site metadata, %s", site.id, exc)
            raise SiteSyncError(f"Malformed {site.id} update site metadata.") from exc
        if not isinstance(document, dict):
            raise SiteSyncError(f"Malformed {site.id} update site metadata.")

        try:
            policy.verify(document, name=f"update site '{site.id}'")
        except (SignatureError, ValueError, RecursionError) as exc:
            logger.error("Signature verification of %s failed, %s", site.id, exc)
            raise SiteSyncError(f"Signature verification of {site.id} failed.") from exc

        try:
            self.store.write_site_metadata(site.id, content)
        except UpdateCenterStoreError as exc:
            raise SiteSyncError(f"Failed to save {site.id} update site metadata.") from exc
        return SyncOutcome(site_id=site.id, verified=policy.signature_check)
