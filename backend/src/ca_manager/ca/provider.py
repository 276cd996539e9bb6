"""Crypto provider: RSA keys, CSRs, signing and PKCS#12 export.

The root CA manager and the certificate issuer only talk to the abstract
``CryptoProvider``; ``CryptographyProvider`` is the implementation backed by
the ``cryptography`` package. Every failure surfaces as ``CryptoProviderError``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from opentelemetry import trace

from ca_manager.domain.models import SanSet
from ca_manager.errors import CryptoProviderError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CryptoProvider(ABC):
    """Operations the CA needs from a crypto backend."""

    @abstractmethod
    def generate_key(self, key_size: int) -> rsa.RSAPrivateKey:
        """Generate a new RSA private key."""
        ...

    @abstractmethod
    def create_request(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        san: SanSet,
    ) -> x509.CertificateSigningRequest:
        """Build a CSR bound to ``private_key`` requesting ``san``."""
        ...

    @abstractmethod
    def self_sign(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        validity_days: int,
    ) -> x509.Certificate:
        """Build a self-signed CA certificate."""
        ...

    @abstractmethod
    def sign(
        self,
        csr: x509.CertificateSigningRequest,
        issuer_key: rsa.RSAPrivateKey,
        issuer_certificate: x509.Certificate,
        serial_number: int,
        validity_days: int,
        san: SanSet,
    ) -> x509.Certificate:
        """Sign ``csr`` as a leaf certificate of ``issuer_certificate``."""
        ...

    @abstractmethod
    def export_pkcs12(
        self,
        name: str,
        private_key: rsa.RSAPrivateKey,
        certificate: x509.Certificate,
        ca_certificates: Sequence[x509.Certificate],
        password: bytes | None,
    ) -> bytes:
        """Bundle key, certificate and CA certificates as PKCS#12."""
        ...


class CryptographyProvider(CryptoProvider):
    """CryptoProvider backed by the ``cryptography`` package.

    Root certificate:
    - BasicConstraints CA:TRUE (critical)
    - Key Usage: Digital Signature, Certificate Sign, CRL Sign (critical)
    - Subject/Authority Key Identifier

    Leaf certificate:
    - BasicConstraints CA:FALSE (critical)
    - Key Usage: Digital Signature, Non Repudiation, Key Encipherment,
      Data Encipherment (critical)
    - Authority Key Identifier = root's subject key identifier
    - Subject Alternative Name from the SanSet, nothing else
    - Digest: SHA-256
    """

    PUBLIC_EXPONENT = 65537

    def generate_key(self, key_size: int) -> rsa.RSAPrivateKey:
        with tracer.start_as_current_span("CryptoProvider.generate_key") as span:
            span.set_attribute("key_size", key_size)
            try:
                return rsa.generate_private_key(
                    public_exponent=self.PUBLIC_EXPONENT,
                    key_size=key_size,
                )
            except Exception as e:
                logger.error("key_generation_failed", extra={"key_size": key_size, "error": str(e)})
                raise CryptoProviderError(f"Failed to generate RSA-{key_size} key: {e}") from e

    def create_request(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        san: SanSet,
    ) -> x509.CertificateSigningRequest:
        with tracer.start_as_current_span("CryptoProvider.create_request"):
            try:
                return (
                    x509.CertificateSigningRequestBuilder()
                    .subject_name(subject)
                    .add_extension(san.to_extension(), critical=False)
                    .sign(private_key, hashes.SHA256())
                )
            except Exception as e:
                logger.error("csr_creation_failed", extra={"error": str(e)})
                raise CryptoProviderError(f"Failed to build certificate signing request: {e}") from e

    def self_sign(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        validity_days: int,
    ) -> x509.Certificate:
        with tracer.start_as_current_span("CryptoProvider.self_sign") as span:
            span.set_attribute("validity_days", validity_days)
            try:
                now = datetime.now(timezone.utc)
                public_key = private_key.public_key()
                return (
                    x509.CertificateBuilder()
                    .subject_name(subject)
                    .issuer_name(subject)
                    .public_key(public_key)
                    .serial_number(x509.random_serial_number())
                    .not_valid_before(now)
                    .not_valid_after(now + timedelta(days=validity_days))
                    .add_extension(
                        x509.BasicConstraints(ca=True, path_length=None),
                        critical=True,
                    )
                    .add_extension(
                        x509.KeyUsage(
                            digital_signature=True,
                            key_cert_sign=True,
                            crl_sign=True,
                            key_encipherment=False,
                            content_commitment=False,
                            data_encipherment=False,
                            key_agreement=False,
                            encipher_only=False,
                            decipher_only=False,
                        ),
                        critical=True,
                    )
                    .add_extension(
                        x509.SubjectKeyIdentifier.from_public_key(public_key),
                        critical=False,
                    )
                    .add_extension(
                        x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key),
                        critical=False,
                    )
                    .sign(private_key, hashes.SHA256())
                )
            except Exception as e:
                logger.error("self_sign_failed", extra={"error": str(e)})
                raise CryptoProviderError(f"Failed to self-sign root certificate: {e}") from e

    def sign(
        self,
        csr: x509.CertificateSigningRequest,
        issuer_key: rsa.RSAPrivateKey,
        issuer_certificate: x509.Certificate,
        serial_number: int,
        validity_days: int,
        san: SanSet,
    ) -> x509.Certificate:
        with tracer.start_as_current_span("CryptoProvider.sign") as span:
            span.set_attribute("serial", format(serial_number, "X"))
            span.set_attribute("validity_days", validity_days)

            if not csr.is_signature_valid:
                raise CryptoProviderError("Certificate signing request has an invalid signature")

            try:
                now = datetime.now(timezone.utc)
                certificate = (
                    x509.CertificateBuilder()
                    .subject_name(csr.subject)
                    .issuer_name(issuer_certificate.subject)
                    .public_key(csr.public_key())
                    .serial_number(serial_number)
                    .not_valid_before(now)
                    .not_valid_after(now + timedelta(days=validity_days))
                    .add_extension(
                        x509.BasicConstraints(ca=False, path_length=None),
                        critical=True,
                    )
                    .add_extension(
                        x509.KeyUsage(
                            digital_signature=True,
                            content_commitment=True,
                            key_encipherment=True,
                            data_encipherment=True,
                            key_cert_sign=False,
                            crl_sign=False,
                            key_agreement=False,
                            encipher_only=False,
                            decipher_only=False,
                        ),
                        critical=True,
                    )
                    .add_extension(
                        self._authority_key_identifier(issuer_key, issuer_certificate),
                        critical=False,
                    )
                    .add_extension(
                        x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),  # type: ignore[arg-type]
                        critical=False,
                    )
                    .add_extension(san.to_extension(), critical=False)
                    .sign(issuer_key, hashes.SHA256())
                )
            except Exception as e:
                logger.error(
                    "certificate_signing_failed",
                    extra={"serial": format(serial_number, "X"), "error": str(e)},
                )
                raise CryptoProviderError(f"Failed to sign certificate: {e}") from e

            return certificate

    def export_pkcs12(
        self,
        name: str,
        private_key: rsa.RSAPrivateKey,
        certificate: x509.Certificate,
        ca_certificates: Sequence[x509.Certificate],
        password: bytes | None,
    ) -> bytes:
        with tracer.start_as_current_span("CryptoProvider.export_pkcs12") as span:
            span.set_attribute("encrypted", bool(password))

            encryption: serialization.KeySerializationEncryption
            if password:
                encryption = serialization.BestAvailableEncryption(password)
            else:
                encryption = serialization.NoEncryption()

            try:
                return pkcs12.serialize_key_and_certificates(
                    name=name.encode("utf-8"),
                    key=private_key,
                    cert=certificate,
                    cas=list(ca_certificates),
                    encryption_algorithm=encryption,
                )
            except Exception as e:
                logger.error("pkcs12_export_failed", extra={"friendly_name": name, "error": str(e)})
                raise CryptoProviderError(f"Failed to export PKCS#12 bundle: {e}") from e

    @staticmethod
    def _authority_key_identifier(
        issuer_key: rsa.RSAPrivateKey,
        issuer_certificate: x509.Certificate,
    ) -> x509.AuthorityKeyIdentifier:
        """AKI matching the issuer's SKI, or derived from its key if it has none."""
        try:
            ski = issuer_certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
        except x509.ExtensionNotFound:
            return x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key())
        return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski.value)
