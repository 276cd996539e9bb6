"""Startup check that the crypto backend is usable.

Runs before any module that imports ``cryptography`` is loaded, so a missing
installation is reported cleanly instead of as an ImportError traceback.
"""

import importlib
import logging

from ca_manager.errors import DependencyMissing

logger = logging.getLogger(__name__)

REQUIRED_MODULES = (
    "cryptography.x509",
    "cryptography.hazmat.primitives.asymmetric.rsa",
    "cryptography.hazmat.primitives.serialization.pkcs12",
)
MIN_CRYPTOGRAPHY_VERSION = (43, 0)


def _version_tuple(version: str) -> tuple[int, ...]:
    parts = []
    for part in version.split(".")[:2]:
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits or 0))
    return tuple(parts)


def check_dependencies() -> str:
    """Verify the crypto backend.

    Returns:
        A description of the backend, e.g. "cryptography 44.0.0 (OpenSSL 3.3.2 ...)".

    Raises:
        DependencyMissing: If ``cryptography`` is absent or too old.
    """
    for module in REQUIRED_MODULES:
        try:
            importlib.import_module(module)
        except ImportError as e:
            raise DependencyMissing(
                f"Crypto backend unavailable ({module}: {e}). Install it with: pip install cryptography"
            ) from e

    cryptography = importlib.import_module("cryptography")
    version = cryptography.__version__
    if _version_tuple(version) < MIN_CRYPTOGRAPHY_VERSION:
        required = ".".join(str(part) for part in MIN_CRYPTOGRAPHY_VERSION)
        raise DependencyMissing(f"cryptography {version} is too old; {required} or newer is required")

    openssl = importlib.import_module("cryptography.hazmat.backends.openssl").backend
    description = f"cryptography {version} ({openssl.openssl_version_text()})"
    logger.debug("crypto_backend_available", extra={"backend": description})
    return description
