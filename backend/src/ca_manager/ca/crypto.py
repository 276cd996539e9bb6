"""Cryptographic utilities for certificate operations.

Provides PEM (de)serialization, thumbprints and chain verification.
"""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError

from ca_manager.errors import (
    ChainVerificationError,
    FilesystemPermissionError,
    StoreIntegrityError,
)

logger = logging.getLogger(__name__)


def serialize_private_key(private_key: rsa.RSAPrivateKey) -> bytes:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def serialize_certificate(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def load_private_key(path: Path) -> rsa.RSAPrivateKey:
    """Load an unencrypted RSA private key from a PEM file.

    Raises:
        FilesystemPermissionError: If the file cannot be read.
        StoreIntegrityError: If the file is not an unencrypted RSA key.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FilesystemPermissionError(f"Cannot read private key {path}: {e}") from e

    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise StoreIntegrityError(f"Cannot parse private key {path}: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise StoreIntegrityError(f"Private key {path} is not an RSA key")
    return key


def load_certificate(path: Path) -> x509.Certificate:
    """Load the first certificate from a PEM file.

    Raises:
        FilesystemPermissionError: If the file cannot be read.
        StoreIntegrityError: If the file holds no parseable certificate.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FilesystemPermissionError(f"Cannot read certificate {path}: {e}") from e

    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise StoreIntegrityError(f"Cannot parse certificate {path}: {e}") from e


def compute_thumbprint(cert_pem: str) -> str:
    """Compute SHA-256 thumbprint of a certificate.

    Args:
        cert_pem: Certificate in PEM format.

    Returns:
        Lowercase hexadecimal SHA-256 thumbprint.
    """
    cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    der_bytes = cert.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der_bytes).hexdigest().lower()


def public_keys_match(private_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> bool:
    """Check that ``certificate`` carries the public half of ``private_key``."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    expected = private_key.public_key().public_bytes(serialization.Encoding.DER, spki)
    actual = certificate.public_key().public_bytes(serialization.Encoding.DER, spki)
    return expected == actual


def _subject_key_identifier(certificate: x509.Certificate) -> bytes:
    try:
        ext = certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    except x509.ExtensionNotFound:
        return x509.SubjectKeyIdentifier.from_public_key(certificate.public_key()).digest  # type: ignore[arg-type]
    return ext.value.digest


def _check_validity_window(certificate: x509.Certificate, at: datetime, role: str) -> None:
    if not certificate.not_valid_before_utc <= at <= certificate.not_valid_after_utc:
        raise ChainVerificationError(
            f"{role} certificate is not valid at {at.isoformat()} "
            f"({certificate.not_valid_before_utc.isoformat()} - "
            f"{certificate.not_valid_after_utc.isoformat()})"
        )


def _verification_subject(leaf: x509.Certificate) -> x509.DNSName | x509.IPAddress:
    """Name the leaf must be valid for, taken from its own subjectAltName.

    A wildcard is checked through a concrete host under it.
    """
    try:
        san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound as e:
        raise ChainVerificationError("Leaf certificate has no subjectAltName") from e

    dns_names = san.get_values_for_type(x509.DNSName)
    if dns_names:
        name = dns_names[0]
        if name.startswith("*."):
            name = "a" + name[1:]
        return x509.DNSName(name)

    ip_addresses = san.get_values_for_type(x509.IPAddress)
    if ip_addresses:
        return x509.IPAddress(ip_addresses[0])
    raise ChainVerificationError("Leaf subjectAltName names no DNS name or IP address")


def verify_chain(
    leaf: x509.Certificate,
    root: x509.Certificate,
    at: datetime | None = None,
) -> None:
    """Verify that ``leaf`` was issued by the self-signed ``root``.

    Checks issuer name, signature, authority key identifier, the root's CA
    flag and both validity windows, then runs server path validation trusting
    only ``root`` for the first name in the leaf's subjectAltName.

    Raises:
        ChainVerificationError: On the first failed check.
    """
    at = at or datetime.now(timezone.utc)

    if leaf.issuer != root.subject:
        raise ChainVerificationError(
            f"Issuer {leaf.issuer.rfc4514_string()} does not match root "
            f"{root.subject.rfc4514_string()}"
        )

    try:
        constraints = root.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound as e:
        raise ChainVerificationError("Root certificate has no basicConstraints") from e
    if not constraints.value.ca:
        raise ChainVerificationError("Root certificate is not a CA")

    try:
        root.verify_directly_issued_by(root)
        leaf.verify_directly_issued_by(root)
    except (InvalidSignature, ValueError, TypeError) as e:
        raise ChainVerificationError(f"Signature verification failed: {e}") from e

    try:
        aki = leaf.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier)
    except x509.ExtensionNotFound as e:
        raise ChainVerificationError("Leaf certificate has no authorityKeyIdentifier") from e
    if aki.value.key_identifier != _subject_key_identifier(root):
        raise ChainVerificationError("authorityKeyIdentifier does not match the root key")

    _check_validity_window(root, at, "Root")
    _check_validity_window(leaf, at, "Leaf")

    try:
        verifier = (
            PolicyBuilder()
            .store(Store([root]))
            .time(at)
            .build_server_verifier(_verification_subject(leaf))
        )
        verifier.verify(leaf, [])
    except (VerificationError, ValueError) as e:
        raise ChainVerificationError(f"Path validation against the root failed: {e}") from e

    logger.debug(
        "chain_verified",
        extra={"leaf_serial": format(leaf.serial_number, "X"), "root": root.subject.rfc4514_string()},
    )
