# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Fixtures for update site enabler unit tests."""

import typing
import unittest.mock

import ops
import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

import signature
from update_site import EndpointDescriptor, UpdateSiteCatalog

from .constants import (
    JENKINS_CONTAINER_NAME,
    SITE_A_ID,
    SITE_A_NAME,
    SITE_A_URL,
    SITE_B_ID,
    SITE_B_NAME,
    SITE_B_URL,
)
from .helpers import build_certificate, generate_key, sign_document


class Pki(typing.NamedTuple):
    """Test certificates.

    Attrs:
        root: The trusted self-signed root certificate.
        signer_key: The update site signer private key.
        signer: The update site signer certificate, issued by root.
        untrusted_root: A self-signed root certificate that is not trusted.
    """

    root: x509.Certificate
    signer_key: rsa.RSAPrivateKey
    signer: x509.Certificate
    untrusted_root: x509.Certificate


@pytest.fixture(scope="session", name="pki")
def pki_fixture() -> Pki:
    """Generated root and signer certificates."""
    root_key = generate_key()
    root = build_certificate("Test Root CA", root_key.public_key(), "Test Root CA", root_key, True)
    signer_key = generate_key()
    signer = build_certificate(
        "Test Update Site Signer", signer_key.public_key(), "Test Root CA", root_key
    )
    untrusted_key = generate_key()
    untrusted_root = build_certificate(
        "Untrusted Root CA", untrusted_key.public_key(), "Untrusted Root CA", untrusted_key, True
    )
    return Pki(root=root, signer_key=signer_key, signer=signer, untrusted_root=untrusted_root)


@pytest.fixture(scope="function", name="policy")
def policy_fixture(pki: Pki) -> signature.VerificationPolicy:
    """Verification policy trusting the test root certificate."""
    return signature.VerificationPolicy(trust_anchors=(pki.root,))


@pytest.fixture(scope="function", name="update_center_document")
def update_center_document_fixture() -> dict[str, typing.Any]:
    """Unsigned update-center.json content."""
    return {
        "connectionCheckUrl": "https://www.google.com/",
        "id": SITE_A_ID,
        "plugins": {
            "cloudbees-platform-insights": {
                "name": "cloudbees-platform-insights",
                "title": "CloudBees Platform Insights – Plugin",
                "version": "1.0",
            }
        },
        "updateCenterVersion": "1",
    }


@pytest.fixture(scope="function", name="signed_document")
def signed_document_fixture(
    pki: Pki, update_center_document: dict[str, typing.Any]
) -> dict[str, typing.Any]:
    """update-center.json content signed by the test signer."""
    return sign_document(update_center_document, pki.signer_key, [pki.signer])


@pytest.fixture(scope="function", name="site_a")
def site_a_fixture() -> EndpointDescriptor:
    """Desired update site A."""
    return EndpointDescriptor(id=SITE_A_ID, display_name=SITE_A_NAME, url=SITE_A_URL)


@pytest.fixture(scope="function", name="site_b")
def site_b_fixture() -> EndpointDescriptor:
    """Desired update site B."""
    return EndpointDescriptor(id=SITE_B_ID, display_name=SITE_B_NAME, url=SITE_B_URL)


@pytest.fixture(scope="function", name="catalog")
def catalog_fixture(site_a: EndpointDescriptor, site_b: EndpointDescriptor) -> UpdateSiteCatalog:
    """Catalog of desired update sites A and B."""
    return UpdateSiteCatalog([site_a, site_b])


@pytest.fixture(scope="function", name="mock_container")
def mock_container_fixture() -> unittest.mock.MagicMock:
    """Mock Jenkins workload container."""
    container = unittest.mock.MagicMock(spec=ops.Container)
    container.name = JENKINS_CONTAINER_NAME
    return container
