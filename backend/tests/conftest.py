"""Shared fixtures: a temporary store, a root CA and an issuer.

Keys are 2048-bit to keep the suite fast; production defaults are 4096.
"""

import pytest

from ca_manager.ca.certificate_issuer import CertificateIssuer
from ca_manager.ca.key_manager import RootCAManager
from ca_manager.ca.provider import CryptographyProvider
from ca_manager.domain.models import DistinguishedName
from ca_manager.store.pki_store import PKIStore

TEST_KEY_SIZE = 2048


@pytest.fixture
def store(tmp_path) -> PKIStore:
    pki_store = PKIStore(tmp_path / "my_pki")
    pki_store.ensure_layout()
    return pki_store


@pytest.fixture
def provider() -> CryptographyProvider:
    return CryptographyProvider()


@pytest.fixture
def root_subject() -> DistinguishedName:
    return DistinguishedName(
        country="DE",
        state="Berlin",
        locality="Berlin",
        organization="Test Org",
        common_name="Test Root",
    )


@pytest.fixture
def root_manager(store, provider) -> RootCAManager:
    return RootCAManager(store, provider, key_size=TEST_KEY_SIZE)


@pytest.fixture
def root_ca(root_manager, root_subject):
    return root_manager.initialize(root_subject, validity_days=3650)


@pytest.fixture
def issuer(store, root_manager, provider) -> CertificateIssuer:
    return CertificateIssuer(store, root_manager, provider, key_size=TEST_KEY_SIZE)
