"""Leaf certificate issuance and renewal.

Issues SAN-aware server certificates signed by the store's root CA and
writes the export bundle (cert, full chain, key, PKCS#12) for the domain.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace

from cryptography import x509
from cryptography.x509.oid import NameOID
from opentelemetry import trace

from ca_manager.ca.crypto import (
    compute_thumbprint,
    load_certificate,
    serialize_certificate,
    serialize_private_key,
    verify_chain,
)
from ca_manager.ca.descriptors import render_extension_descriptor, render_request_descriptor
from ca_manager.ca.key_manager import RootCAManager
from ca_manager.ca.provider import CryptographyProvider, CryptoProvider
from ca_manager.domain.models import (
    MAX_COMMON_NAME_LENGTH,
    DistinguishedName,
    ExportBundle,
    IssuedCertificate,
    SanSet,
    SubjectRequest,
)
from ca_manager.errors import (
    CertificateNotFoundError,
    CryptoProviderError,
    FilesystemPermissionError,
    InvalidInputError,
    NoRootCAError,
)
from ca_manager.guides import usage_guide
from ca_manager.metrics import ca_metrics
from ca_manager.store.pki_store import PKIStore, canonicalize_domain, write_atomic
from shared.config import settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_leaf_subject() -> DistinguishedName:
    """Fixed leaf subject fields from settings; CN is filled in per request."""
    return DistinguishedName(
        country=settings.LEAF_COUNTRY,
        state=settings.LEAF_STATE,
        locality=settings.LEAF_LOCALITY,
        organization=settings.LEAF_ORGANIZATION,
        common_name="",
    )


class CertificateIssuer:
    """Issues leaf certificates signed by the root CA.

    Certificate attributes:
    - Subject: C/ST/L/O from settings, CN=<domain> (left out above 64 characters)
    - SAN: DNS:<domain> plus IP:<ip> when given, nothing else
    - Validity: now() to now() + validity_days
    - Key: fresh RSA key per issuance (LEAF_KEY_SIZE)
    """

    def __init__(
        self,
        store: PKIStore,
        root_manager: RootCAManager | None = None,
        provider: CryptoProvider | None = None,
        key_size: int | None = None,
        subject_template: DistinguishedName | None = None,
    ) -> None:
        self._store = store
        self._provider = provider or CryptographyProvider()
        self._root_manager = root_manager or RootCAManager(store, self._provider)
        self._key_size = key_size or settings.LEAF_KEY_SIZE
        self._subject_template = subject_template or default_leaf_subject()

    def issue(
        self,
        request: SubjectRequest,
        pkcs12_password: str | None = None,
        issuance_type: str = "initial",
    ) -> IssuedCertificate:
        """Issue a certificate for ``request`` and write its bundle.

        Args:
            request: Domain, optional IP address and validity.
            pkcs12_password: Password for the PKCS#12 export; empty or None
                leaves it unencrypted.
            issuance_type: "initial" or "renewal", for metrics and logs.

        Returns:
            The IssuedCertificate with the paths of the promoted bundle.

        Raises:
            NoRootCAError: If the root CA has not been initialized.
            InvalidInputError: If the domain or validity is invalid.
            CryptoProviderError: If key generation, signing or export fails.
            FilesystemPermissionError: If the bundle cannot be written.
        """
        with tracer.start_as_current_span("CertificateIssuer.issue") as span:
            span.set_attribute("domain_name", request.domain_name)
            span.set_attribute("validity_days", request.validity_days)
            span.set_attribute("issuance_type", issuance_type)

            start_time = time.time()
            with self._record_failures(request.domain_name):
                issued = self._issue(request, pkcs12_password)

            duration = time.time() - start_time
            span.set_attribute("serial", issued.serial_hex)
            ca_metrics.record_certificate_issued(issuance_type, duration)

            logger.info(
                "certificate_issued",
                extra={
                    "domain_name": issued.request.domain_name,
                    "issuance_type": issuance_type,
                    "serial": issued.serial_hex,
                    "not_after": issued.not_after.isoformat(),
                    "directory": str(issued.directory),
                    "duration_seconds": duration,
                },
            )
            return issued

    def renew(
        self,
        domain_name: str,
        validity_days: int | None = None,
        pkcs12_password: str | None = None,
    ) -> IssuedCertificate:
        """Reissue the certificate of an already issued domain.

        This is a reissue, not an extension: the SANs of the previous
        certificate are reused with a brand-new key pair and serial. Nothing
        is revoked; the new bundle replaces the old files and must be
        redeployed.

        Raises:
            CertificateNotFoundError: If the domain has no issued certificate.
        """
        directory = self._store.resolve_domain_directory(domain_name)
        cert_path = directory / PKIStore.CERT_FILE
        if not cert_path.exists():
            raise CertificateNotFoundError(f"No issued certificate for {domain_name} in {directory}")

        previous = load_certificate(cert_path)
        request = self.recover_request(previous)
        if validity_days is not None:
            request = replace(request, validity_days=validity_days)

        logger.info(
            "certificate_renewal_started",
            extra={
                "domain_name": request.domain_name,
                "previous_serial": format(previous.serial_number, "X"),
            },
        )
        return self.issue(request, pkcs12_password, issuance_type="renewal")

    @staticmethod
    def recover_request(certificate: x509.Certificate) -> SubjectRequest:
        """Rebuild the SubjectRequest a certificate was issued for."""
        try:
            san_ext = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            san = SanSet.from_extension(san_ext.value)
        except x509.ExtensionNotFound:
            san = SanSet(dns_names=())

        if san.dns_names:
            domain_name = san.dns_names[0]
        else:
            common_names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
            if not common_names:
                raise InvalidInputError("Previous certificate names no domain", ("domain_name",))
            domain_name = str(common_names[0].value)

        lifetime = certificate.not_valid_after_utc - certificate.not_valid_before_utc
        return SubjectRequest(
            domain_name=domain_name,
            ip_address=san.ip_addresses[0] if san.ip_addresses else None,
            validity_days=max(lifetime.days, 1),
        )

    def _issue(self, request: SubjectRequest, pkcs12_password: str | None) -> IssuedCertificate:
        if request.validity_days <= 0:
            raise InvalidInputError("Validity must be a positive number of days", ("validity_days",))
        domain_name = canonicalize_domain(request.domain_name)
        request = replace(request, domain_name=domain_name)

        with self._store.lock():
            # Raises NoRootCAError before anything is written
            root = self._root_manager.load()
            self._store.ensure_layout()

            target_dir = self._store.resolve_domain_directory(domain_name)
            san = SanSet.from_request(request)
            subject = replace(self._subject_template, common_name=self._common_name(domain_name))
            self._write_descriptors(domain_name, subject, san)

            private_key = self._provider.generate_key(self._key_size)
            csr = self._provider.create_request(private_key, subject.to_x509_name(), san)
            self._check_requested_san(csr, san)

            serial_number = self._store.next_serial()
            certificate = self._provider.sign(
                csr,
                root.private_key,
                root.certificate,
                serial_number,
                request.validity_days,
                san,
            )
            verify_chain(certificate, root.certificate)

            password = pkcs12_password.encode("utf-8") if pkcs12_password else None
            pkcs12_bytes = self._provider.export_pkcs12(
                domain_name, private_key, certificate, [root.certificate], password
            )

            cert_pem = serialize_certificate(certificate)
            files = {
                PKIStore.PRIVATE_KEY_FILE: (serialize_private_key(private_key), PKIStore.LEAF_KEY_MODE),
                PKIStore.CERT_FILE: (cert_pem, 0o644),
                PKIStore.FULLCHAIN_FILE: (cert_pem + root.certificate_pem, 0o644),
                PKIStore.PKCS12_FILE: (pkcs12_bytes, PKIStore.LEAF_KEY_MODE),
                PKIStore.USAGE_GUIDE_FILE: (
                    usage_guide(domain_name, str(target_dir), PKIStore.PKCS12_FILE).encode("utf-8"),
                    0o644,
                ),
            }

            with self._store.staging(target_dir.name) as staged:
                try:
                    for name, (data, mode) in files.items():
                        write_atomic(staged / name, data, mode=mode)
                except OSError as e:
                    raise FilesystemPermissionError(
                        f"Cannot write certificate bundle for {domain_name}: {e}"
                    ) from e
                self._store.promote(staged, target_dir)

        return IssuedCertificate(
            request=request,
            directory=target_dir,
            private_key=private_key,
            certificate=certificate,
            serial_number=serial_number,
            fingerprint=compute_thumbprint(cert_pem.decode("ascii")),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            bundle=ExportBundle(
                certificate_path=target_dir / PKIStore.CERT_FILE,
                fullchain_path=target_dir / PKIStore.FULLCHAIN_FILE,
                private_key_path=target_dir / PKIStore.PRIVATE_KEY_FILE,
                pkcs12_path=target_dir / PKIStore.PKCS12_FILE,
            ),
            san=san,
        )

    @staticmethod
    def _common_name(domain_name: str) -> str:
        """CN for the leaf subject; empty when the domain does not fit in CN."""
        if len(domain_name) <= MAX_COMMON_NAME_LENGTH:
            return domain_name
        logger.info(
            "common_name_omitted",
            extra={"domain_name": domain_name, "length": len(domain_name)},
        )
        return ""

    def _write_descriptors(self, domain_name: str, subject: DistinguishedName, san: SanSet) -> None:
        try:
            write_atomic(
                self._store.request_descriptor_path(domain_name),
                render_request_descriptor(subject, san, self._key_size).encode("utf-8"),
            )
            write_atomic(
                self._store.extension_descriptor_path(domain_name),
                render_extension_descriptor(san).encode("utf-8"),
            )
        except OSError as e:
            raise FilesystemPermissionError(
                f"Cannot write request descriptors for {domain_name}: {e}"
            ) from e

    @staticmethod
    def _check_requested_san(csr: x509.CertificateSigningRequest, san: SanSet) -> None:
        """The CSR must request exactly the SANs that will be signed."""
        try:
            requested = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound as e:
            raise CryptoProviderError("Certificate signing request carries no subjectAltName") from e
        if SanSet.from_extension(requested.value) != san:
            raise CryptoProviderError(
                "Certificate signing request subjectAltName does not match the issued SANs"
            )

    @contextmanager
    def _record_failures(self, domain_name: str) -> Iterator[None]:
        try:
            yield
        except NoRootCAError:
            ca_metrics.record_issuance_failed("no_root")
            raise
        except CryptoProviderError as e:
            ca_metrics.record_issuance_failed("crypto")
            logger.error(
                "certificate_issuance_failed",
                extra={"domain_name": domain_name, "error": str(e)},
            )
            raise
        except FilesystemPermissionError as e:
            ca_metrics.record_issuance_failed("filesystem")
            logger.error(
                "certificate_issuance_failed",
                extra={"domain_name": domain_name, "error": str(e)},
            )
            raise
