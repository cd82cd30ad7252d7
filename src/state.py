# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Update site enabler state."""
import dataclasses
import logging
import os
import typing
from pathlib import Path

import yaml
from pydantic import (
    BaseModel,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from signature import DEFAULT_TRUST_ANCHORS_PATH
from update_center import JENKINS_HOME_PATH
from update_site import (
    DEFAULT_UPDATE_SITES,
    MANAGED_SITE_CLASS,
    EndpointDescriptor,
    UpdateSiteCatalog,
)

logger = logging.getLogger(__name__)

JENKINS_HOME_ENV = "JENKINS_HOME"
SITES_FILE_ENV = "UC_ENABLER_SITES_FILE"
TRUST_ANCHORS_ENV = "UC_ENABLER_TRUST_ANCHORS"
SIGNATURE_CHECK_ENV = "UC_ENABLER_SIGNATURE_CHECK"
SITE_CLASS_ENV = "UC_ENABLER_SITE_CLASS"
JENKINS_VERSION_ENV = "UC_ENABLER_JENKINS_VERSION"
TIMEOUT_ENV = "UC_ENABLER_TIMEOUT"
DEFAULT_TIMEOUT = 60

_HTTP_URL = TypeAdapter(HttpUrl)


class StateBaseError(Exception):
    """Represents an error with the enabler state."""


class ConfigInvalidError(StateBaseError):
    """Exception raised when the enabler configuration is found to be invalid.

    Attributes:
        msg: Explanation of the error.
    """

    def __init__(self, msg: str):
        """Initialize a new instance of the ConfigInvalidError exception.

        Args:
            msg: Explanation of the error.
        """
        super().__init__(msg)
        self.msg = msg


class ProxyConfig(BaseModel):
    """Configuration for downloading update site metadata through a proxy.

    Attributes:
        http_proxy: The http proxy URL.
        https_proxy: The https proxy URL.
        no_proxy: Comma separated list of hostnames to bypass proxy.
    """

    http_proxy: typing.Optional[HttpUrl] = None
    https_proxy: typing.Optional[HttpUrl] = None
    no_proxy: typing.Optional[str] = None

    @classmethod
    def from_env(cls) -> typing.Optional["ProxyConfig"]:
        """Instantiate ProxyConfig from the process environment.

        Returns:
            ProxyConfig if proxy configuration is provided, None otherwise.
        """
        http_proxy = os.environ.get("HTTP_PROXY") or os.environ.get("http_proxy")
        https_proxy = os.environ.get("HTTPS_PROXY") or os.environ.get("https_proxy")
        no_proxy = os.environ.get("NO_PROXY") or os.environ.get("no_proxy")
        if not http_proxy and not https_proxy:
            return None
        # Mypy doesn't understand str is supposed to be converted to HttpUrl by Pydantic.
        return cls(
            http_proxy=http_proxy, https_proxy=https_proxy, no_proxy=no_proxy  # type: ignore
        )

    def to_requests_proxies(self) -> dict[str, str]:
        """Get the proxies mapping understood by requests.

        Returns:
            The scheme to proxy URL mapping.
        """
        proxies = {}
        if self.http_proxy:
            proxies["http"] = str(self.http_proxy)
        if self.https_proxy:
            proxies["https"] = str(self.https_proxy)
        if self.no_proxy:
            proxies["no_proxy"] = self.no_proxy
        return proxies


class UpdateSiteConfig(BaseModel):
    """A desired update site entry of the sites file.

    Attributes:
        id: The update site ID.
        name: The update site display name.
        url: The update-center.json URL.
    """

    id: str = Field(..., pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    name: str = Field(..., min_length=1)
    url: str

    @field_validator("url")
    @classmethod
    def http_url(cls, value: str) -> str:
        """Validate the url field is an HTTP(S) URL, keeping it verbatim.

        Args:
            value: The value of the url field.

        Returns:
            The unmodified URL.

        Raises:
            ValueError: if the URL is not a valid HTTP(S) URL.
        """
        try:
            _HTTP_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"Invalid update site url {value}") from exc
        return value


class UpdateSitesConfig(BaseModel):
    """The sites file content.

    Attributes:
        sites: The desired update sites.
    """

    sites: list[UpdateSiteConfig]

    def to_catalog(self) -> UpdateSiteCatalog:
        """Build the desired update site catalog.

        Returns:
            The catalog, in file order.
        """
        return UpdateSiteCatalog(
            EndpointDescriptor(id=site.id, display_name=site.name, url=site.url)
            for site in self.sites
        )


def _load_update_sites(path: Path) -> UpdateSiteCatalog:
    """Load the desired update sites from a YAML sites file.

    Args:
        path: The sites file path.

    Raises:
        ConfigInvalidError: if the file is missing or invalid.

    Returns:
        The desired update site catalog.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to read sites file %s, %s", path, exc)
        raise ConfigInvalidError(f"Unreadable sites file {path}.") from exc
    if not isinstance(data, dict):
        raise ConfigInvalidError(f"Sites file {path} must be a mapping with a sites key.")
    try:
        return UpdateSitesConfig(**data).to_catalog()
    except ValidationError as exc:
        logger.error("Invalid sites file %s, %s", path, exc)
        raise ConfigInvalidError(f"Invalid sites file {path}.") from exc
    except ValueError as exc:
        logger.error("Invalid sites file %s, %s", path, exc)
        raise ConfigInvalidError(f"Duplicate update site in {path}.") from exc


def _parse_bool(name: str, value: str) -> bool:
    """Parse a boolean environment variable.

    Args:
        name: The environment variable name.
        value: The environment variable value.

    Raises:
        ConfigInvalidError: if the value is not a boolean.

    Returns:
        The boolean value.
    """
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigInvalidError(f"Invalid boolean value for {name}: {value}.")


def _parse_timeout(value: str) -> int:
    """Parse the download timeout environment variable.

    Args:
        value: The environment variable value.

    Raises:
        ConfigInvalidError: if the value is not a positive integer.

    Returns:
        The timeout in seconds.
    """
    try:
        timeout = int(value)
    except ValueError as exc:
        raise ConfigInvalidError(f"Invalid value for {TIMEOUT_ENV}: {value}.") from exc
    if timeout <= 0:
        raise ConfigInvalidError(f"{TIMEOUT_ENV} must be positive.")
    return timeout


@dataclasses.dataclass(frozen=True)
class State:
    """The update site enabler state.

    Attributes:
        jenkins_home: The Jenkins home directory.
        update_sites: The desired update sites.
        trust_anchors_path: The PEM bundle of certificates trusted to sign update site metadata.
        signature_check: Whether update site metadata signatures are verified.
        managed_site_class: The XStream element name of managed update sites.
        jenkins_version: The Jenkins version reported to update sites.
        timeout: The metadata download timeout in seconds.
        proxy_config: Proxy configuration to download update site metadata through.
    """

    jenkins_home: Path
    update_sites: UpdateSiteCatalog
    trust_anchors_path: Path = DEFAULT_TRUST_ANCHORS_PATH
    signature_check: bool = True
    managed_site_class: str = MANAGED_SITE_CLASS
    jenkins_version: typing.Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT
    proxy_config: typing.Optional[ProxyConfig] = None

    @classmethod
    def from_env(cls) -> "State":
        """Initialize the state from the process environment.

        Returns:
            Current state of the enabler.

        Raises:
            ConfigInvalidError: if invalid state values were encountered.
        """
        sites_file = os.environ.get(SITES_FILE_ENV)
        update_sites = _load_update_sites(Path(sites_file)) if sites_file else DEFAULT_UPDATE_SITES

        signature_check = _parse_bool(
            SIGNATURE_CHECK_ENV, os.environ.get(SIGNATURE_CHECK_ENV, "true")
        )
        if not signature_check:
            logger.warning("Update site metadata signature check is disabled")

        timeout_str = os.environ.get(TIMEOUT_ENV)
        timeout = _parse_timeout(timeout_str) if timeout_str else DEFAULT_TIMEOUT

        try:
            proxy_config = ProxyConfig.from_env()
        except ValidationError as exc:
            logger.error("Invalid proxy configuration, %s", exc)
            raise ConfigInvalidError("Invalid proxy configuration.") from exc

        return cls(
            jenkins_home=Path(os.environ.get(JENKINS_HOME_ENV) or JENKINS_HOME_PATH),
            update_sites=update_sites,
            trust_anchors_path=Path(
                os.environ.get(TRUST_ANCHORS_ENV) or DEFAULT_TRUST_ANCHORS_PATH
            ),
            signature_check=signature_check,
            managed_site_class=os.environ.get(SITE_CLASS_ENV) or MANAGED_SITE_CLASS,
            jenkins_version=os.environ.get(JENKINS_VERSION_ENV) or None,
            timeout=timeout,
            proxy_config=proxy_config,
        )
