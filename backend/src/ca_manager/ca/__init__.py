"""Certificate Authority module for the local CA manager.

This module provides:
- Root CA creation and loading
- Leaf certificate issuance and renewal with SAN support
- A pluggable crypto provider and chain verification utilities
"""

from ca_manager.ca.certificate_issuer import CertificateIssuer
from ca_manager.ca.key_manager import RootCAManager
from ca_manager.ca.provider import CryptographyProvider, CryptoProvider

__all__ = ["CertificateIssuer", "CryptoProvider", "CryptographyProvider", "RootCAManager"]
