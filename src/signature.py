# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Update site metadata signature verification.

Update site metadata carries a "signature" block holding the signer certificate chain and the
digests and signatures of the canonical JSON of the rest of the document. The certificate
chain must lead to one of the configured trust anchors rather than the default trust store.
"""

import base64
import binascii
import dataclasses
import hashlib
import json
import logging
import re
import typing
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger(__name__)

DEFAULT_TRUST_ANCHORS_PATH = Path("/etc/jenkins-uc-enabler/root-cacerts.pem")
# (digest field, signature field, hash algorithm), strongest first
SIGNATURE_FIELDS: tuple[tuple[str, str, type[hashes.HashAlgorithm]], ...] = (
    ("correct_digest512", "correct_signature512", hashes.SHA512),
    ("correct_digest", "correct_signature", hashes.SHA1),
)

# Short escapes of json.dumps and their \u00XX form written by json-lib
_SHORT_ESCAPES = {
    "b": "\\u0008",
    "f": "\\u000c",
    "n": "\\u000a",
    "r": "\\u000d",
    "t": "\\u0009",
}
_ESCAPE_PATTERN = re.compile(r"\\(.)")


class SignatureError(Exception):
    """Update site metadata failed signature verification."""


class TrustAnchorError(Exception):
    """The trust anchor certificates could not be loaded."""


def load_trust_anchors(path: Path) -> tuple[x509.Certificate, ...]:
    """Load the trust anchor certificates from a PEM bundle.

    Args:
        path: The PEM bundle path.

    Raises:
        TrustAnchorError: if the bundle could not be read or parsed.

    Returns:
        The trust anchor certificates, empty if the bundle does not exist.
    """
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        logger.warning("Trust anchors %s not found, signed metadata will be rejected", path)
        return ()
    except OSError as exc:
        logger.error("Failed to read trust anchors %s, %s", path, exc)
        raise TrustAnchorError(f"Failed to read trust anchors {path}.") from exc
    try:
        return tuple(x509.load_pem_x509_certificates(data))
    except ValueError as exc:
        logger.error("Invalid trust anchors %s, %s", path, exc)
        raise TrustAnchorError(f"Invalid trust anchors {path}.") from exc


def canonical_json(document: typing.Mapping[str, typing.Any]) -> bytes:
    """Serialize a JSON document the way the update site signer does.

    Strings only escape quotes, backslashes and control characters, the latter always as
    \\u00XX, as the json-lib canonical writer used by Jenkins does.

    Args:
        document: The JSON document without its signature block.

    Returns:
        The UTF-8 encoded JSON with sorted keys and no whitespace.
    """
    text = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    text = _ESCAPE_PATTERN.sub(
        lambda match: _SHORT_ESCAPES.get(match.group(1), match.group(0)), text
    )
    # Lone surrogates cannot match a genuine signature, keep them encodable.
    return text.encode("utf-8", errors="surrogatepass")


def _load_certificates(encoded: typing.Any, name: str) -> list[x509.Certificate]:
    """Decode the base64 DER certificate chain of a signature block.

    Args:
        encoded: The certificates value of the signature block.
        name: The name of the verified document, for error messages.

    Raises:
        SignatureError: if the certificates are missing or malformed.

    Returns:
        The certificate chain, signer first.
    """
    if not isinstance(encoded, list) or not encoded:
        raise SignatureError(f"No certificate found in {name} signature block.")
    try:
        return [x509.load_der_x509_certificate(base64.b64decode(value)) for value in encoded]
    except (TypeError, ValueError) as exc:
        raise SignatureError(f"Malformed certificate in {name} signature block.") from exc


def _warn_validity(certificates: typing.Iterable[x509.Certificate], name: str) -> None:
    """Log certificates outside their validity period.

    Expired certificates are tolerated so that cached metadata of old signers still verifies.

    Args:
        certificates: The certificate chain.
        name: The name of the verified document.
    """
    now = datetime.now(timezone.utc)
    for certificate in certificates:
        if now > certificate.not_valid_after_utc:
            logger.warning("Certificate %s of %s has expired", certificate.subject, name)
        elif now < certificate.not_valid_before_utc:
            logger.warning("Certificate %s of %s is not yet valid", certificate.subject, name)


def _is_issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    """Return whether a certificate is directly signed by an issuer.

    Args:
        certificate: The issued certificate.
        issuer: The candidate issuer certificate.

    Returns:
        True if the issuer name and signature match, False otherwise.
    """
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _digest_matches(digest: bytes, provided: str) -> bool:
    """Compare a digest with its hex or base64 encoded expected value.

    Args:
        digest: The computed digest.
        provided: The digest from the signature block.

    Returns:
        True if either encoding matches.
    """
    return provided.lower() == digest.hex() or provided == base64.b64encode(digest).decode()


def _decode_signature(provided: str, name: str) -> bytes:
    """Decode a hex, or failing that base64, encoded signature.

    Args:
        provided: The signature from the signature block.
        name: The name of the verified document.

    Raises:
        SignatureError: if the signature is neither hex nor base64.

    Returns:
        The raw signature.
    """
    try:
        return bytes.fromhex(provided)
    except ValueError:
        pass
    try:
        return base64.b64decode(provided, validate=True)
    except binascii.Error as exc:
        raise SignatureError(f"Malformed signature in {name} signature block.") from exc


def _check_signature(
    signer: x509.Certificate,
    content: bytes,
    signature_block: typing.Mapping[str, typing.Any],
    fields: tuple[str, str, type[hashes.HashAlgorithm]],
    name: str,
) -> None:
    """Check one digest and signature pair of a signature block.

    Args:
        signer: The signer certificate.
        content: The canonical JSON that was signed.
        signature_block: The signature block.
        fields: The digest field, signature field and hash algorithm to check.
        name: The name of the verified document.

    Raises:
        SignatureError: if the digest or the signature does not match.
    """
    digest_field, signature_field, algorithm = fields
    provided_digest = signature_block.get(digest_field)
    provided_signature = signature_block.get(signature_field)
    if not isinstance(provided_digest, str) or not isinstance(provided_signature, str):
        raise SignatureError(f"Incomplete {digest_field} signature in {name}.")
    if not _digest_matches(hashlib.new(algorithm.name, content).digest(), provided_digest):
        raise SignatureError(f"Digest mismatch in {name}, {digest_field} does not match.")
    public_key = signer.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise SignatureError(f"Unsupported signer key type in {name}.")
    try:
        public_key.verify(
            _decode_signature(provided_signature, name), content, padding.PKCS1v15(), algorithm()
        )
    except InvalidSignature as exc:
        raise SignatureError(f"Invalid {signature_field} in {name}.") from exc


@dataclasses.dataclass(frozen=True)
class VerificationPolicy:
    """How update site metadata is verified before it is accepted.

    Attributes:
        trust_anchors: The certificates the signer chain must lead to.
        signature_check: Whether signatures are verified at all.
    """

    trust_anchors: tuple[x509.Certificate, ...]
    signature_check: bool = True

    @classmethod
    def from_file(cls, path: Path, signature_check: bool = True) -> "VerificationPolicy":
        """Instantiate the policy from a trust anchor PEM bundle.

        Args:
            path: The PEM bundle path.
            signature_check: Whether signatures are verified at all.

        Returns:
            The verification policy.
        """
        return cls(trust_anchors=load_trust_anchors(path), signature_check=signature_check)

    def _check_chain(self, certificates: list[x509.Certificate], name: str) -> None:
        """Check that the certificate chain leads to a trust anchor.

        Args:
            certificates: The certificate chain, signer first.
            name: The name of the verified document.

        Raises:
            SignatureError: if the chain is broken or not trusted.
        """
        for certificate, issuer in zip(certificates, certificates[1:]):
            if not _is_issued_by(certificate, issuer):
                raise SignatureError(f"Broken certificate chain in {name}.")
        last = certificates[-1]
        if not any(
            last == anchor or _is_issued_by(last, anchor) for anchor in self.trust_anchors
        ):
            raise SignatureError(f"Certificate chain of {name} is not trusted.")

    def verify(self, document: typing.Mapping[str, typing.Any], name: str) -> None:
        """Verify the signature of update site metadata.

        Args:
            document: The update site metadata including its signature block.
            name: The name of the verified document, e.g. "update site 'default'".

        Raises:
            SignatureError: if the document is not signed by a trusted signer.
        """
        if not self.signature_check:
            logger.debug("Signature check disabled, accepting %s", name)
            return
        content = dict(document)
        signature_block = content.pop("signature", None)
        if not isinstance(signature_block, dict):
            raise SignatureError(f"No signature block found in {name}.")
        certificates = _load_certificates(signature_block.get("certificates"), name)
        _warn_validity(certificates, name)
        self._check_chain(certificates, name)

        signed_content = canonical_json(content)
        checked = False
        for fields in SIGNATURE_FIELDS:
            digest_field, signature_field, _ = fields
            if digest_field not in signature_block and signature_field not in signature_block:
                continue
            _check_signature(certificates[0], signed_content, signature_block, fields, name)
            checked = True
        if not checked:
            raise SignatureError(f"No digest found in {name} signature block.")
        logger.debug("Verified signature of %s", name)
