# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Helper functions used to unit test the update site enabler."""

import base64
import contextlib
import hashlib
import typing
from datetime import datetime, timedelta, timezone
from xml.etree import ElementTree

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

import signature
from update_center import UpdateCenterStoreError
from update_site import ForeignSite, ManagedSite, ObservedSite


# There aren't enough public methods with this patch class.
class ConnectionExceptionPatch:  # pylint: disable=too-few-public-methods
    """Class to raise ConnectionError exception."""

    def __init__(self, *_args, **_kwargs) -> None:
        """Placeholder init function to match function signatures.

        Raises:
            ConnectionError: To mock connection error.
        """
        raise requests.ConnectionError


class InMemoryUpdateCenterStore:
    """Update center store keeping the site list in memory.

    Attributes:
        key: The identity of the store.
        sites: The current update site list.
        metadata: The saved update site metadata by site ID.
        replace_calls: Number of times the site list was replaced.
        fail_load: Whether load raises UpdateCenterStoreError.
        fail_replace: Whether replace raises UpdateCenterStoreError.
    """

    def __init__(self, sites: typing.Iterable[ObservedSite] = (), key: str = "memory"):
        """Construct the store.

        Args:
            sites: The initial update site list.
            key: The identity of the store.
        """
        self.key = key
        self.sites = list(sites)
        self.metadata: dict[str, str] = {}
        self.replace_calls = 0
        self.fail_load = False
        self.fail_replace = False

    def exclusive(self) -> typing.ContextManager[None]:
        """Hold the cross-process guard of the store.

        Returns:
            A context manager that does nothing, the store is private to the process.
        """
        return contextlib.nullcontext()

    def load(self) -> list[ObservedSite]:
        """Load the update site list.

        Raises:
            UpdateCenterStoreError: if fail_load is set.

        Returns:
            A copy of the update site list.
        """
        if self.fail_load:
            raise UpdateCenterStoreError("load failed")
        return list(self.sites)

    def replace(self, sites: typing.Iterable[ObservedSite]) -> None:
        """Replace the update site list.

        Args:
            sites: The new update site list.

        Raises:
            UpdateCenterStoreError: if fail_replace is set.
        """
        if self.fail_replace:
            raise UpdateCenterStoreError("replace failed")
        self.replace_calls += 1
        self.sites = list(sites)

    def write_site_metadata(self, site_id: str, content: str) -> None:
        """Save update site metadata.

        Args:
            site_id: The update site ID.
            content: The metadata content.
        """
        self.metadata[site_id] = content


def foreign(site_id: str, tag: str = "site") -> ForeignSite:
    """Create a foreign update site entry.

    Args:
        site_id: The update site ID.
        tag: The XML element name.

    Returns:
        The foreign site.
    """
    element = ElementTree.Element(tag)
    ElementTree.SubElement(element, "id").text = site_id
    return ForeignSite(element)


def managed_ids(sites: typing.Iterable[ObservedSite]) -> list[tuple[str, str]]:
    """Get the (id, url) pairs of the managed entries of a site list.

    Args:
        sites: The update site list.

    Returns:
        The managed entries in order.
    """
    return [(site.id, site.url) for site in sites if isinstance(site, ManagedSite)]


def generate_key() -> rsa.RSAPrivateKey:
    """Generate an RSA key for test certificates.

    Returns:
        The private key.
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_certificate(
    subject: str,
    public_key: rsa.RSAPublicKey,
    issuer: str,
    issuer_key: rsa.RSAPrivateKey,
    ca: bool = False,
    valid_days: tuple[int, int] = (-1, 30),
) -> x509.Certificate:
    """Build a test certificate.

    Args:
        subject: The subject common name.
        public_key: The subject public key.
        issuer: The issuer common name.
        issuer_key: The issuer private key signing the certificate.
        ca: Whether the certificate is a CA certificate.
        valid_days: The validity period bounds in days relative to now.

    Returns:
        The signed certificate.
    """
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + timedelta(days=valid_days[0]))
        .not_valid_after(now + timedelta(days=valid_days[1]))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


def to_pem(certificates: typing.Iterable[x509.Certificate]) -> bytes:
    """Encode certificates as a PEM bundle.

    Args:
        certificates: The certificates.

    Returns:
        The PEM bundle.
    """
    return b"".join(
        certificate.public_bytes(serialization.Encoding.PEM) for certificate in certificates
    )


def sign_content(
    content: bytes,
    signer_key: rsa.RSAPrivateKey,
    chain: typing.Iterable[x509.Certificate],
    sha512: bool = True,
    sha1: bool = True,
) -> dict[str, typing.Any]:
    """Build the signature block of canonical update site metadata.

    Args:
        content: The canonical JSON to sign.
        signer_key: The signer private key.
        chain: The certificate chain, signer first.
        sha512: Whether to add the SHA-512 digest and signature, hex encoded.
        sha1: Whether to add the SHA-1 digest and signature, base64 encoded.

    Returns:
        The signature block.
    """
    signature_block: dict[str, typing.Any] = {
        "certificates": [
            base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode()
            for certificate in chain
        ]
    }
    if sha512:
        signature_block["correct_digest512"] = hashlib.sha512(content).hexdigest()
        signature_block["correct_signature512"] = signer_key.sign(
            content, padding.PKCS1v15(), hashes.SHA512()
        ).hex()
    if sha1:
        digest = hashlib.sha1(content).digest()
        signature_block["correct_digest"] = base64.b64encode(digest).decode()
        signature_block["correct_signature"] = base64.b64encode(
            signer_key.sign(content, padding.PKCS1v15(), hashes.SHA1())
        ).decode()
    return signature_block


def sign_document(
    document: dict[str, typing.Any],
    signer_key: rsa.RSAPrivateKey,
    chain: typing.Iterable[x509.Certificate],
    sha512: bool = True,
    sha1: bool = True,
) -> dict[str, typing.Any]:
    """Sign update site metadata the way the update site signer does.

    Args:
        document: The metadata to sign.
        signer_key: The signer private key.
        chain: The certificate chain, signer first.
        sha512: Whether to add the SHA-512 digest and signature.
        sha1: Whether to add the SHA-1 digest and signature.

    Returns:
        The metadata with its signature block.
    """
    signature_block = sign_content(
        signature.canonical_json(document), signer_key, chain, sha512=sha512, sha1=sha1
    )
    return {**document, "signature": signature_block}


def mocked_response(text: str, status_code: int = 200) -> requests.Response:
    """Build a requests response.

    Args:
        text: The response body.
        status_code: The response status code.

    Returns:
        The response.
    """
    response = requests.Response()
    response.status_code = status_code
    response.encoding = "utf-8"
    # There is no public setter for the response body.
    response._content = text.encode("utf-8")  # pylint: disable=protected-access
    return response
