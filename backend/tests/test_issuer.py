"""Tests for leaf issuance, the export bundle and renewal."""

import ipaddress
import stat
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from cryptography.x509.verification import PolicyBuilder, Store

from ca_manager.ca.certificate_issuer import CertificateIssuer
from ca_manager.ca.crypto import load_certificate, load_private_key, verify_chain
from ca_manager.ca.provider import CryptographyProvider
from ca_manager.domain.models import SubjectRequest
from ca_manager.errors import (
    CertificateNotFoundError,
    CryptoProviderError,
    InvalidInputError,
    NoRootCAError,
)
from ca_manager.store.pki_store import PKIStore

TEST_KEY_SIZE = 2048


class FailingSignProvider(CryptographyProvider):
    def sign(self, csr, issuer_key, issuer_certificate, serial_number, validity_days, san):
        raise CryptoProviderError("signing refused")


def _san(certificate):
    return certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value


def _snapshot(directory):
    return {path.name: path.read_bytes() for path in sorted(directory.iterdir())}


def _public_numbers(key):
    return key.public_key().public_numbers()


class TestIssue:
    """Tests for CertificateIssuer.issue."""

    def test_issue_with_ip_address(self, issuer, root_ca):
        """Test svc.local with 10.0.0.5: exact SAN, CN and chain to the root."""
        request = SubjectRequest(
            domain_name="svc.local",
            ip_address=ipaddress.ip_address("10.0.0.5"),
            validity_days=365,
        )

        issued = issuer.issue(request)
        cert = issued.certificate

        san = _san(cert)
        assert san.get_values_for_type(x509.DNSName) == ["svc.local"]
        assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("10.0.0.5")]
        assert len(list(san)) == 2
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "svc.local"
        assert cert.issuer == root_ca.certificate.subject
        assert (cert.not_valid_after_utc - cert.not_valid_before_utc).days == 365
        verify_chain(cert, root_ca.certificate)

    def test_issue_without_ip_has_single_dns_name(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="myserver.lan"))

        san = _san(issued.certificate)
        assert san.get_values_for_type(x509.DNSName) == ["myserver.lan"]
        assert san.get_values_for_type(x509.IPAddress) == []

    def test_leaf_extensions(self, issuer, root_ca):
        """Test the leaf's CA flag, key usage, digest and key identifiers."""
        cert = issuer.issue(SubjectRequest(domain_name="svc.local")).certificate

        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
        assert constraints.critical is True
        assert constraints.value.ca is False

        key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage)
        assert key_usage.critical is True
        assert key_usage.value.digital_signature is True
        assert key_usage.value.content_commitment is True
        assert key_usage.value.key_encipherment is True
        assert key_usage.value.data_encipherment is True
        assert key_usage.value.key_cert_sign is False

        aki = cert.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier)
        assert aki.value.key_identifier == root_ca.subject_key_identifier
        assert isinstance(cert.signature_hash_algorithm, hashes.SHA256)

        with pytest.raises(x509.ExtensionNotFound):
            cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage)

    def test_leaf_subject_uses_fixed_fields(self, issuer, root_ca):
        subject = issuer.issue(SubjectRequest(domain_name="svc.local")).certificate.subject

        assert subject.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == "DE"
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "Internal Security"

    def test_leaf_passes_server_verification(self, issuer, root_ca):
        """Test the leaf with an independent path validator trusting only the root."""
        issued = issuer.issue(
            SubjectRequest(domain_name="svc.local", ip_address=ipaddress.ip_address("10.0.0.5"))
        )

        verifier = (
            PolicyBuilder()
            .store(Store([root_ca.certificate]))
            .time(datetime.now(timezone.utc))
            .build_server_verifier(x509.DNSName("svc.local"))
        )
        chain = verifier.verify(issued.certificate, [])

        assert chain[0] == issued.certificate
        assert chain[-1] == root_ca.certificate

    def test_bundle_files_written(self, issuer, store, root_ca):
        """Test that every export lands in the domain directory."""
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"))

        directory = store.issued_dir / "svc.local"
        assert issued.directory == directory
        assert sorted(p.name for p in directory.iterdir()) == sorted(
            [
                PKIStore.CERT_FILE,
                PKIStore.FULLCHAIN_FILE,
                PKIStore.PRIVATE_KEY_FILE,
                PKIStore.PKCS12_FILE,
                PKIStore.USAGE_GUIDE_FILE,
            ]
        )
        assert load_certificate(issued.bundle.certificate_path) == issued.certificate
        assert _public_numbers(load_private_key(issued.bundle.private_key_path)) == _public_numbers(
            issued.private_key
        )
        assert "svc.local" in (directory / PKIStore.USAGE_GUIDE_FILE).read_text()

    def test_private_key_files_are_owner_only(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"), pkcs12_password="secret")

        assert stat.S_IMODE(issued.bundle.private_key_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(issued.bundle.pkcs12_path.stat().st_mode) == 0o600

    def test_fullchain_is_leaf_then_root(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"))

        chain = x509.load_pem_x509_certificates(issued.bundle.fullchain_path.read_bytes())

        assert chain == [issued.certificate, root_ca.certificate]
        verify_chain(chain[0], chain[1])

    def test_pkcs12_with_password(self, issuer, root_ca):
        """Test that the PFX opens with the password and holds key, leaf and root."""
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"), pkcs12_password="s3cret")
        data = issued.bundle.pkcs12_path.read_bytes()

        key, cert, additional = pkcs12.load_key_and_certificates(data, b"s3cret")

        assert _public_numbers(key) == _public_numbers(issued.private_key)
        assert cert == issued.certificate
        assert additional == [root_ca.certificate]

        with pytest.raises(ValueError):
            pkcs12.load_key_and_certificates(data, b"wrong")

    def test_pkcs12_without_password(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"))

        key, cert, _ = pkcs12.load_key_and_certificates(
            issued.bundle.pkcs12_path.read_bytes(), None
        )

        assert cert == issued.certificate
        assert _public_numbers(key) == _public_numbers(issued.private_key)

    def test_descriptors_match_issued_san(self, issuer, store, root_ca):
        issuer.issue(
            SubjectRequest(domain_name="svc.local", ip_address=ipaddress.ip_address("10.0.0.5"))
        )

        request_cnf = store.request_descriptor_path("svc.local").read_text()
        extension_ext = store.extension_descriptor_path("svc.local").read_text()

        for text in (request_cnf, extension_ext):
            assert "DNS.1 = svc.local" in text
            assert "IP.1 = 10.0.0.5" in text
            assert "DNS.2" not in text
        assert "CN = svc.local" in request_cnf
        assert f"default_bits = {TEST_KEY_SIZE}" in request_cnf
        assert "basicConstraints = critical, CA:FALSE" in extension_ext

    def test_wildcard_domain(self, issuer, store, root_ca):
        """Test that a wildcard lands in wildcard_<domain> and keeps the * in the SAN."""
        issued = issuer.issue(SubjectRequest(domain_name="*.Internal.Example"))

        assert issued.directory == store.issued_dir / "wildcard_internal.example"
        assert _san(issued.certificate).get_values_for_type(x509.DNSName) == ["*.internal.example"]

    def test_wildcard_and_bare_domain_are_separate(self, issuer, store, root_ca):
        wildcard = issuer.issue(SubjectRequest(domain_name="*.a.com"))
        bare = issuer.issue(SubjectRequest(domain_name="a.com"))

        assert wildcard.directory != bare.directory
        assert store.list_issued_domains() == ["a.com", "wildcard_a.com"]

    def test_serials_are_unique_and_increasing(self, issuer, root_ca):
        first = issuer.issue(SubjectRequest(domain_name="a.local"))
        second = issuer.issue(SubjectRequest(domain_name="b.local"))

        assert second.serial_number == first.serial_number + 1
        assert first.certificate.serial_number == first.serial_number
        assert first.serial_hex == format(first.serial_number, "X")

    def test_two_domains_do_not_share_material(self, issuer, root_ca):
        first = issuer.issue(SubjectRequest(domain_name="a.local"))
        second = issuer.issue(SubjectRequest(domain_name="b.local"))

        assert first.directory != second.directory
        assert _public_numbers(first.private_key) != _public_numbers(second.private_key)
        assert first.bundle.private_key_path.read_bytes() != second.bundle.private_key_path.read_bytes()

    def test_domain_is_canonicalized(self, issuer, store, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="SVC.Local."))

        assert issued.request.domain_name == "svc.local"
        assert issued.directory == store.issued_dir / "svc.local"

    def test_fingerprint_is_sha256_of_certificate(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"))

        assert issued.fingerprint == issued.certificate.fingerprint(hashes.SHA256()).hex()

    def test_issue_without_root_writes_nothing(self, issuer, store):
        """Test that a missing root fails before any file is written."""
        with pytest.raises(NoRootCAError):
            issuer.issue(SubjectRequest(domain_name="svc.local"))

        assert list(store.issued_dir.iterdir()) == []
        assert list(store.config_dir.iterdir()) == []

    def test_invalid_domain_rejected(self, issuer, root_ca):
        with pytest.raises(InvalidInputError):
            issuer.issue(SubjectRequest(domain_name="**.a.com"))

    def test_non_positive_validity_rejected(self, issuer, root_ca):
        with pytest.raises(InvalidInputError) as exc_info:
            issuer.issue(SubjectRequest(domain_name="svc.local", validity_days=0))

        assert exc_info.value.fields == ("validity_days",)

    def test_signing_failure_keeps_previous_bundle(self, issuer, store, root_manager, root_ca):
        """Test that a failed reissue leaves the existing bundle byte-identical."""
        issued = issuer.issue(SubjectRequest(domain_name="svc.local"))
        before = _snapshot(issued.directory)
        failing = CertificateIssuer(
            store, root_manager, FailingSignProvider(), key_size=TEST_KEY_SIZE
        )

        with pytest.raises(CryptoProviderError):
            failing.issue(SubjectRequest(domain_name="svc.local"))

        assert _snapshot(issued.directory) == before
        assert [p for p in store.config_dir.iterdir() if p.name.startswith(".")] == []

    def test_signing_failure_on_new_domain_leaves_no_directory(self, store, root_manager, root_ca):
        failing = CertificateIssuer(
            store, root_manager, FailingSignProvider(), key_size=TEST_KEY_SIZE
        )

        with pytest.raises(CryptoProviderError):
            failing.issue(SubjectRequest(domain_name="svc.local"))

        assert store.list_issued_domains() == []

    def test_metrics_recorded(self, issuer, root_ca):
        with patch("ca_manager.ca.certificate_issuer.ca_metrics") as mock_metrics:
            issuer.issue(SubjectRequest(domain_name="svc.local"))

        mock_metrics.record_certificate_issued.assert_called_once()
        assert mock_metrics.record_certificate_issued.call_args[0][0] == "initial"

    def test_failure_metric_recorded(self, issuer):
        with patch("ca_manager.ca.certificate_issuer.ca_metrics") as mock_metrics:
            with pytest.raises(NoRootCAError):
                issuer.issue(SubjectRequest(domain_name="svc.local"))

        mock_metrics.record_issuance_failed.assert_called_once_with("no_root")


class TestRenew:
    """Tests for CertificateIssuer.renew."""

    def test_renew_reissues_with_new_key_and_serial(self, issuer, root_ca):
        """Test that renewal keeps the SANs but replaces key pair and serial."""
        original = issuer.issue(
            SubjectRequest(
                domain_name="svc.local",
                ip_address=ipaddress.ip_address("10.0.0.5"),
                validity_days=90,
            )
        )

        renewed = issuer.renew("svc.local")

        assert renewed.directory == original.directory
        assert renewed.serial_number != original.serial_number
        assert _public_numbers(renewed.private_key) != _public_numbers(original.private_key)
        assert list(_san(renewed.certificate)) == list(_san(original.certificate))
        assert renewed.request.validity_days == 90
        assert load_certificate(renewed.bundle.certificate_path) == renewed.certificate
        verify_chain(renewed.certificate, root_ca.certificate)

    def test_renew_with_validity_override(self, issuer, root_ca):
        issuer.issue(SubjectRequest(domain_name="svc.local", validity_days=90))

        renewed = issuer.renew("svc.local", validity_days=30)

        cert = renewed.certificate
        assert (cert.not_valid_after_utc - cert.not_valid_before_utc).days == 30

    def test_renew_wildcard(self, issuer, root_ca):
        issuer.issue(SubjectRequest(domain_name="*.a.com"))

        renewed = issuer.renew("*.a.com")

        assert renewed.directory.name == "wildcard_a.com"
        assert _san(renewed.certificate).get_values_for_type(x509.DNSName) == ["*.a.com"]

    def test_renew_unknown_domain_raises(self, issuer, root_ca):
        with pytest.raises(CertificateNotFoundError):
            issuer.renew("unknown.local")

    def test_renew_records_renewal_metric(self, issuer, root_ca):
        issuer.issue(SubjectRequest(domain_name="svc.local"))

        with patch("ca_manager.ca.certificate_issuer.ca_metrics") as mock_metrics:
            issuer.renew("svc.local")

        assert mock_metrics.record_certificate_issued.call_args[0][0] == "renewal"

    def test_recover_request(self, issuer, root_ca):
        issued = issuer.issue(
            SubjectRequest(
                domain_name="svc.local",
                ip_address=ipaddress.ip_address("fd00::5"),
                validity_days=825,
            )
        )

        request = CertificateIssuer.recover_request(issued.certificate)

        assert request == SubjectRequest(
            domain_name="svc.local",
            ip_address=ipaddress.ip_address("fd00::5"),
            validity_days=825,
        )


# 64, 65 and 253 characters: the CN limit, one past it and the longest domain
CN_SIZED_DOMAIN = "a" * 52 + ".example.com"
OVERSIZED_CN_DOMAIN = "a" * 53 + ".example.com"
LONGEST_DOMAIN = ".".join(["a" * 63] * 3 + ["b" * 61])


class TestLongDomainNames:
    """Tests for domains that do not fit in a subject common name."""

    @pytest.mark.parametrize(
        ("domain", "has_common_name"),
        [
            (CN_SIZED_DOMAIN, True),
            (OVERSIZED_CN_DOMAIN, False),
            (LONGEST_DOMAIN, False),
        ],
    )
    def test_issue_keeps_full_name_in_san(self, issuer, store, root_ca, domain, has_common_name):
        """Test that CN is left out above 64 characters while the SAN keeps the domain."""
        issued = issuer.issue(SubjectRequest(domain_name=domain))
        cert = issued.certificate

        common_names = [a.value for a in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
        assert common_names == ([domain] if has_common_name else [])
        assert _san(cert).get_values_for_type(x509.DNSName) == [domain]
        assert cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        descriptor = store.request_descriptor_path(domain).read_text()
        assert ("CN = " in descriptor) is has_common_name
        assert load_certificate(issued.bundle.certificate_path) == cert
        verify_chain(cert, root_ca.certificate)

    def test_longest_domain_directory_fits_name_limit(self, issuer, root_ca):
        issued = issuer.issue(SubjectRequest(domain_name=LONGEST_DOMAIN))

        assert len(issued.directory.name) <= 240
        assert issued.directory.is_dir()

    def test_renew_longest_domain(self, issuer, root_ca):
        """Test that renewal recovers a CN-less certificate's domain from its SAN."""
        original = issuer.issue(SubjectRequest(domain_name=LONGEST_DOMAIN, validity_days=90))

        renewed = issuer.renew(LONGEST_DOMAIN)

        assert renewed.directory == original.directory
        assert renewed.request.domain_name == LONGEST_DOMAIN
        assert renewed.request.validity_days == 90
        assert renewed.serial_number != original.serial_number

    def test_wildcard_over_common_name_limit(self, issuer, root_ca):
        domain = "*." + "a" * 63 + ".example.com"

        issued = issuer.issue(SubjectRequest(domain_name=domain))

        assert issued.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME) == []
        assert issued.directory.name == "wildcard_" + domain[2:]
        verify_chain(issued.certificate, root_ca.certificate)
