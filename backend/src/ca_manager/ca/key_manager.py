"""Root CA creation and loading.

The root key and certificate live in ``root_ca/`` of a ``PKIStore``. A new
root is built in a staging directory and swapped in as a whole, so the store
never holds a key without its matching certificate.
"""

import logging
import stat
import time

from opentelemetry import trace

from ca_manager.ca.crypto import (
    load_certificate,
    load_private_key,
    public_keys_match,
    serialize_certificate,
    serialize_private_key,
)
from ca_manager.ca.provider import CryptographyProvider, CryptoProvider
from ca_manager.domain.models import DistinguishedName, RootCA
from ca_manager.errors import (
    FilesystemPermissionError,
    InvalidInputError,
    NoRootCAError,
    RootCAExistsError,
    StoreIntegrityError,
)
from ca_manager.guides import ROOT_TRUST_GUIDE
from ca_manager.metrics import ca_metrics
from ca_manager.store.pki_store import PKIStore, restrict_permissions, write_atomic
from shared.config import settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RootCAManager:
    """Creates, overwrites and loads the root CA of one store."""

    def __init__(
        self,
        store: PKIStore,
        provider: CryptoProvider | None = None,
        key_size: int | None = None,
    ) -> None:
        self._store = store
        self._provider = provider or CryptographyProvider()
        self._key_size = key_size or settings.ROOT_KEY_SIZE

    @property
    def store(self) -> PKIStore:
        return self._store

    def initialize(
        self,
        subject: DistinguishedName,
        validity_days: int | None = None,
        overwrite: bool = False,
    ) -> RootCA:
        """Create a new self-signed root CA.

        Args:
            subject: Distinguished name of the root (subject and issuer).
            validity_days: Certificate lifetime, default ROOT_VALIDITY_DAYS.
            overwrite: Must be True to replace an existing root. Certificates
                issued by the old root stop validating against the new one.

        Returns:
            The newly written RootCA.

        Raises:
            RootCAExistsError: If a root exists and ``overwrite`` is False.
            CryptoProviderError: If key generation or signing fails.
            FilesystemPermissionError: If the files cannot be written.
        """
        if validity_days is None:
            validity_days = settings.ROOT_VALIDITY_DAYS
        if validity_days <= 0:
            raise InvalidInputError("Validity must be a positive number of days", ("validity_days",))

        with tracer.start_as_current_span("RootCAManager.initialize") as span, self._store.lock():
            span.set_attribute("common_name", subject.common_name)
            span.set_attribute("validity_days", validity_days)

            replacing = self._store.root_exists()
            span.set_attribute("overwrite", replacing)
            if replacing and not overwrite:
                logger.warning(
                    "root_ca_overwrite_not_confirmed",
                    extra={"root_dir": str(self._store.root_dir)},
                )
                raise RootCAExistsError(
                    f"A root CA already exists in {self._store.root_dir}; "
                    "confirm the overwrite to replace it"
                )

            start_time = time.time()
            self._store.ensure_layout()

            logger.info(
                "root_ca_generating",
                extra={"key_size": self._key_size, "common_name": subject.common_name},
            )
            private_key = self._provider.generate_key(self._key_size)
            certificate = self._provider.self_sign(
                private_key, subject.to_x509_name(), validity_days
            )

            with self._store.staging(PKIStore.ROOT_DIR_NAME) as staged:
                key_path = staged / PKIStore.ROOT_KEY_FILE
                try:
                    write_atomic(key_path, serialize_private_key(private_key), mode=0o600)
                    write_atomic(staged / PKIStore.ROOT_CERT_FILE, serialize_certificate(certificate))
                    write_atomic(
                        staged / PKIStore.SERIAL_FILE,
                        PKIStore.encode_serial(PKIStore.initial_serial()),
                    )
                    write_atomic(
                        staged / PKIStore.ROOT_GUIDE_FILE, ROOT_TRUST_GUIDE.encode("utf-8")
                    )
                except OSError as e:
                    raise FilesystemPermissionError(f"Cannot write root CA files: {e}") from e

                key_permissions_enforced = restrict_permissions(key_path, PKIStore.ROOT_KEY_MODE)
                self._store.promote(staged, self._store.root_dir)

            if not key_permissions_enforced:
                ca_metrics.record_key_permission_failure("root")
            ca_metrics.record_root_ca_initialized(replacing)

            if replacing:
                logger.warning(
                    "root_ca_replaced",
                    extra={"note": "certificates issued by the previous root no longer validate"},
                )
            logger.info(
                "root_ca_created",
                extra={
                    "subject": certificate.subject.rfc4514_string(),
                    "not_after": certificate.not_valid_after_utc.isoformat(),
                    "duration_seconds": time.time() - start_time,
                },
            )

            return RootCA(
                private_key=private_key,
                certificate=certificate,
                key_path=self._store.root_key_path,
                cert_path=self._store.root_cert_path,
                key_permissions_enforced=key_permissions_enforced,
            )

    def load(self) -> RootCA:
        """Load the root CA from the store.

        Raises:
            NoRootCAError: If no root key exists yet.
            StoreIntegrityError: If the certificate is missing or does not
                match the key.
            FilesystemPermissionError: If the files cannot be read.
        """
        with tracer.start_as_current_span("RootCAManager.load") as span:
            if not self._store.root_exists():
                raise NoRootCAError(
                    f"No root CA found in {self._store.root_dir}. Initialize the root CA first."
                )
            if not self._store.root_cert_path.exists():
                raise StoreIntegrityError(
                    f"Root key exists but {self._store.root_cert_path} is missing"
                )

            try:
                private_key = load_private_key(self._store.root_key_path)
                certificate = load_certificate(self._store.root_cert_path)
                mode = stat.S_IMODE(self._store.root_key_path.stat().st_mode)
            except OSError as e:
                raise FilesystemPermissionError(f"Cannot read root CA files: {e}") from e

            if not public_keys_match(private_key, certificate):
                logger.error("root_ca_key_mismatch", extra={"root_dir": str(self._store.root_dir)})
                raise StoreIntegrityError("Root CA key and certificate do not match")

            key_permissions_enforced = mode & (stat.S_IRWXG | stat.S_IRWXO) == 0
            if not key_permissions_enforced:
                logger.warning(
                    "root_ca_key_readable_by_others",
                    extra={"path": str(self._store.root_key_path), "mode": oct(mode)},
                )

            span.set_attribute("ca_cert_expires", certificate.not_valid_after_utc.isoformat())
            ca_metrics.record_root_ca_loaded()
            logger.debug(
                "root_ca_loaded",
                extra={
                    "subject": certificate.subject.rfc4514_string(),
                    "ca_cert_expires": certificate.not_valid_after_utc.isoformat(),
                },
            )

            return RootCA(
                private_key=private_key,
                certificate=certificate,
                key_path=self._store.root_key_path,
                cert_path=self._store.root_cert_path,
                key_permissions_enforced=key_permissions_enforced,
            )
