"""Core value objects passed between the store, the root CA and the issuer."""

import ipaddress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ca_manager.errors import InvalidInputError

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# (min, max) lengths; upper bounds from RFC 5280 Appendix A
MAX_COMMON_NAME_LENGTH = 64
_DN_FIELD_LENGTHS = {
    "country": (2, 2),
    "state": (1, 128),
    "locality": (1, 128),
    "organization": (1, 64),
    "common_name": (0, MAX_COMMON_NAME_LENGTH),
}


@dataclass(frozen=True)
class DistinguishedName:
    """Subject fields in C/ST/L/O/CN order.

    An empty ``common_name`` leaves CN out of the encoded name; the SAN then
    carries the identity alone.

    Raises:
        InvalidInputError: If a field is outside its X.509 length bounds.
    """

    country: str
    state: str
    locality: str
    organization: str
    common_name: str

    def __post_init__(self) -> None:
        invalid = tuple(
            name
            for name, (low, high) in _DN_FIELD_LENGTHS.items()
            if not low <= len(getattr(self, name)) <= high
        )
        if invalid:
            raise InvalidInputError(
                f"Distinguished name field(s) out of bounds: {', '.join(invalid)}", invalid
            )

    def to_x509_name(self) -> x509.Name:
        attributes = [
            x509.NameAttribute(NameOID.COUNTRY_NAME, self.country),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, self.state),
            x509.NameAttribute(NameOID.LOCALITY_NAME, self.locality),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
        ]
        if self.common_name:
            attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, self.common_name))
        return x509.Name(attributes)


@dataclass(frozen=True)
class SubjectRequest:
    """What the operator asked a leaf certificate to cover."""

    domain_name: str
    ip_address: IPAddress | None = None
    validity_days: int = 365


@dataclass(frozen=True)
class SanSet:
    """Subject Alternative Names for one issuance.

    The CSR extension, the signing-time extension and both OpenSSL-style
    descriptor files are all rendered from the same instance.
    """

    dns_names: tuple[str, ...]
    ip_addresses: tuple[IPAddress, ...] = ()

    @classmethod
    def from_request(cls, request: SubjectRequest) -> "SanSet":
        ips = (request.ip_address,) if request.ip_address is not None else ()
        return cls(dns_names=(request.domain_name,), ip_addresses=ips)

    @classmethod
    def from_extension(cls, san: x509.SubjectAlternativeName) -> "SanSet":
        return cls(
            dns_names=tuple(san.get_values_for_type(x509.DNSName)),
            ip_addresses=tuple(san.get_values_for_type(x509.IPAddress)),
        )

    def to_extension(self) -> x509.SubjectAlternativeName:
        names: list[x509.GeneralName] = [x509.DNSName(name) for name in self.dns_names]
        names.extend(x509.IPAddress(ip) for ip in self.ip_addresses)
        return x509.SubjectAlternativeName(names)

    def config_lines(self) -> list[str]:
        """Render the ``[alt_names]`` body in OpenSSL config syntax."""
        lines = [f"DNS.{i} = {name}" for i, name in enumerate(self.dns_names, start=1)]
        lines.extend(f"IP.{i} = {ip}" for i, ip in enumerate(self.ip_addresses, start=1))
        return lines


@dataclass
class RootCA:
    """Root CA private key and self-signed certificate as stored on disk."""

    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    key_path: Path
    cert_path: Path
    key_permissions_enforced: bool = True

    @property
    def certificate_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def subject_key_identifier(self) -> bytes:
        ski = self.certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
        return ski.value.digest


@dataclass(frozen=True)
class ExportBundle:
    """Paths of the files written for one issued certificate."""

    certificate_path: Path
    fullchain_path: Path
    private_key_path: Path
    pkcs12_path: Path


@dataclass
class IssuedCertificate:
    """Result of one issuance."""

    request: SubjectRequest
    directory: Path
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    serial_number: int
    fingerprint: str
    not_before: datetime
    not_after: datetime
    bundle: ExportBundle
    san: SanSet

    @property
    def serial_hex(self) -> str:
        return format(self.serial_number, "X")
