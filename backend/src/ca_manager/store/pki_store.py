"""Filesystem-backed PKI store.

Layout under the base directory:
- root_ca/       rootCA.key (owner read-only), rootCA.crt, rootCA.srl
- issued_certs/  one directory per domain with the exported bundle
- configs/       request/extension descriptors and staging directories

Multi-file artifacts are built in a staging directory and swapped into place
only after every file has been written.
"""

import hashlib
import logging
import os
import re
import secrets
import shutil
import stat
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from ca_manager.errors import FilesystemPermissionError, InvalidInputError, StoreIntegrityError
from ca_manager.guides import STORE_README

logger = logging.getLogger(__name__)

WILDCARD_PREFIX = "wildcard_"
MAX_DOMAIN_LENGTH = 253
# Leaves room for ".cnf" and temp-file affixes within a 255-byte file name
MAX_DIRECTORY_NAME_LENGTH = 240
# Scratch-name prefixes are cut to this many characters of the real name
_SCRATCH_LABEL_LENGTH = 64
_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

# One lock per store base path, shared by every PKIStore handle in the process
_store_locks: dict[Path, threading.RLock] = {}
_store_locks_guard = threading.Lock()


def _lock_for(base_dir: Path) -> threading.RLock:
    with _store_locks_guard:
        return _store_locks.setdefault(base_dir, threading.RLock())


def canonicalize_domain(domain_name: str) -> str:
    """Normalize a domain name or wildcard pattern.

    Lower-cases the name and strips one trailing dot. A wildcard is only
    accepted as a single ``*`` in the left-most label followed by at least
    two labels (``*.example.com``).

    Raises:
        InvalidInputError: If the name is empty, too long or contains an
            invalid label (``**.a.com``, ``*.*.a.com``, ``a_b.com``, ``..``).
    """
    name = domain_name.strip().lower()
    if name.endswith("."):
        name = name[:-1]
    if not name:
        raise InvalidInputError("Domain name must not be empty", ("domain_name",))
    if len(name) > MAX_DOMAIN_LENGTH:
        raise InvalidInputError(
            f"Domain name exceeds {MAX_DOMAIN_LENGTH} characters", ("domain_name",)
        )

    labels = name.split(".")
    if labels[0] == "*":
        labels = labels[1:]
        if len(labels) < 2:
            raise InvalidInputError(
                f"Wildcard {domain_name!r} must cover a parent domain, e.g. *.example.com",
                ("domain_name",),
            )

    for label in labels:
        if not _LABEL_RE.match(label):
            raise InvalidInputError(
                f"Invalid label {label!r} in domain name {domain_name!r}", ("domain_name",)
            )
    return name


def domain_directory_name(domain_name: str) -> str:
    """Map a domain to its directory name under ``issued_certs/``.

    ``*.a.com`` maps to ``wildcard_a.com``. Names longer than
    MAX_DIRECTORY_NAME_LENGTH are cut and suffixed with ``_`` plus a SHA-256
    prefix of the full name. ``_`` never occurs in a valid domain, so neither
    form can collide with a plain domain.
    """
    name = canonicalize_domain(domain_name)
    if name.startswith("*."):
        name = WILDCARD_PREFIX + name[2:]
    if len(name) > MAX_DIRECTORY_NAME_LENGTH:
        digest = hashlib.sha256(name.encode("ascii")).hexdigest()[:16]
        name = f"{name[:MAX_DIRECTORY_NAME_LENGTH - len(digest) - 1]}_{digest}"
    return name


def write_atomic(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write ``data`` to a sibling temp file and rename it over ``path``."""
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name[:_SCRATCH_LABEL_LENGTH]}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def restrict_permissions(path: Path, mode: int) -> bool:
    """Best-effort chmod. Returns False if the filesystem did not honour it."""
    try:
        os.chmod(path, mode)
        actual = stat.S_IMODE(path.stat().st_mode)
    except OSError as e:
        logger.warning(
            "key_permissions_not_enforced",
            extra={"path": str(path), "error": str(e)},
        )
        return False

    if actual != mode:
        logger.warning(
            "key_permissions_not_enforced",
            extra={"path": str(path), "expected": oct(mode), "actual": oct(actual)},
        )
        return False
    return True


class PKIStore:
    """Handle on one PKI store directory.

    Constructed once with a base path and passed to every operation.
    """

    ROOT_DIR_NAME = "root_ca"
    ISSUED_DIR_NAME = "issued_certs"
    CONFIG_DIR_NAME = "configs"
    README_FILE = "README.txt"

    ROOT_KEY_FILE = "rootCA.key"
    ROOT_CERT_FILE = "rootCA.crt"
    SERIAL_FILE = "rootCA.srl"
    ROOT_GUIDE_FILE = "README_TRUST.txt"

    PRIVATE_KEY_FILE = "privkey.pem"
    CERT_FILE = "cert.pem"
    FULLCHAIN_FILE = "fullchain.pem"
    PKCS12_FILE = "windows_iis.pfx"
    USAGE_GUIDE_FILE = "README_USAGE.txt"

    ROOT_KEY_MODE = 0o400
    LEAF_KEY_MODE = 0o600

    def __init__(self, base_dir: str | os.PathLike[str]) -> None:
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.root_dir = self.base_dir / self.ROOT_DIR_NAME
        self.issued_dir = self.base_dir / self.ISSUED_DIR_NAME
        self.config_dir = self.base_dir / self.CONFIG_DIR_NAME

    def __repr__(self) -> str:
        return f"PKIStore({str(self.base_dir)!r})"

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def ensure_layout(self) -> None:
        """Create the three store directories and the store README if missing.

        Raises:
            FilesystemPermissionError: If a directory or the README cannot be created.
        """
        try:
            for directory in (self.root_dir, self.issued_dir, self.config_dir):
                directory.mkdir(parents=True, exist_ok=True)

            readme = self.base_dir / self.README_FILE
            if not readme.exists():
                write_atomic(readme, STORE_README.encode("utf-8"))
                logger.info("store_layout_created", extra={"base_dir": str(self.base_dir)})
        except OSError as e:
            logger.error(
                "store_layout_failed",
                extra={"base_dir": str(self.base_dir), "error": str(e)},
            )
            raise FilesystemPermissionError(
                f"Cannot create PKI store layout under {self.base_dir}: {e}"
            ) from e

    @property
    def root_key_path(self) -> Path:
        return self.root_dir / self.ROOT_KEY_FILE

    @property
    def root_cert_path(self) -> Path:
        return self.root_dir / self.ROOT_CERT_FILE

    @property
    def serial_path(self) -> Path:
        return self.root_dir / self.SERIAL_FILE

    def root_exists(self) -> bool:
        return self.root_key_path.exists()

    def resolve_domain_directory(self, domain_name: str) -> Path:
        return self.issued_dir / domain_directory_name(domain_name)

    def request_descriptor_path(self, domain_name: str) -> Path:
        return self.config_dir / f"{domain_directory_name(domain_name)}.cnf"

    def extension_descriptor_path(self, domain_name: str) -> Path:
        return self.config_dir / f"{domain_directory_name(domain_name)}.ext"

    def list_issued_domains(self) -> list[str]:
        """Directory names under ``issued_certs/``, sorted."""
        if not self.issued_dir.exists():
            return []
        return sorted(
            entry.name
            for entry in self.issued_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    # ------------------------------------------------------------------
    # Serial counter
    # ------------------------------------------------------------------

    @staticmethod
    def initial_serial() -> int:
        """Random positive seed for a new root generation's counter."""
        return secrets.randbits(63) | 1

    @staticmethod
    def encode_serial(value: int) -> bytes:
        return f"{value:X}\n".encode("ascii")

    def read_serial(self) -> int | None:
        try:
            text = self.serial_path.read_text(encoding="ascii").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text, 16)
        except ValueError as e:
            raise StoreIntegrityError(f"Serial counter {self.serial_path} is corrupt: {e}") from e

    def next_serial(self) -> int:
        """Reserve and persist the next serial number.

        A store created by an earlier run may not have a counter yet; a random
        seed is used then, as ``openssl x509 -CAcreateserial`` does.
        """
        with self.lock():
            current = self.read_serial()
            serial = self.initial_serial() if current is None else current + 1
            try:
                write_atomic(self.serial_path, self.encode_serial(serial))
            except OSError as e:
                raise FilesystemPermissionError(
                    f"Cannot update serial counter {self.serial_path}: {e}"
                ) from e

            logger.debug("serial_reserved", extra={"serial": format(serial, "X")})
            return serial

    # ------------------------------------------------------------------
    # Staged writes
    # ------------------------------------------------------------------

    def lock(self) -> threading.RLock:
        """Process-wide lock for this store's base path."""
        return _lock_for(self.base_dir)

    @contextmanager
    def staging(self, label: str) -> Iterator[Path]:
        """Yield an empty scratch directory that is removed unless promoted."""
        try:
            prefix = f".stage-{label[:_SCRATCH_LABEL_LENGTH]}-"
            staged = Path(tempfile.mkdtemp(prefix=prefix, dir=self.config_dir))
        except OSError as e:
            raise FilesystemPermissionError(
                f"Cannot create staging directory in {self.config_dir}: {e}"
            ) from e

        try:
            yield staged
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)

    def promote(self, staged: Path, target: Path) -> None:
        """Swap a fully written staging directory into ``target``.

        An existing target is moved aside first and only deleted once the new
        directory is in place.

        Raises:
            FilesystemPermissionError: If a rename fails. The previous target
                is restored when the second rename fails.
        """
        retired: Path | None = None
        try:
            if target.exists():
                retired = Path(
                    tempfile.mkdtemp(
                        prefix=f".retired-{target.name[:_SCRATCH_LABEL_LENGTH]}-",
                        dir=self.config_dir,
                    )
                )
                os.rename(target, retired / target.name)
            try:
                os.rename(staged, target)
            except OSError:
                if retired is not None:
                    os.rename(retired / target.name, target)
                raise
        except OSError as e:
            logger.error(
                "promotion_failed",
                extra={"staged": str(staged), "target": str(target), "error": str(e)},
            )
            raise FilesystemPermissionError(f"Cannot promote {staged} to {target}: {e}") from e

        logger.debug("staging_promoted", extra={"target": str(target)})

        if retired is not None:
            try:
                shutil.rmtree(retired)
            except OSError as e:
                logger.warning(
                    "retired_directory_not_removed",
                    extra={"path": str(retired), "error": str(e)},
                )

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def render_tree(self) -> str:
        """Text tree of the store, skipping hidden staging entries.

        Raises:
            FilesystemPermissionError: If a directory cannot be listed.
        """
        if not self.base_dir.exists():
            return f"{self.base_dir} (missing)"
        lines = [f"{self.base_dir}/"]
        try:
            self._render_children(self.base_dir, "", lines)
        except OSError as e:
            raise FilesystemPermissionError(f"Cannot list PKI store {self.base_dir}: {e}") from e
        return "\n".join(lines)

    def _render_children(self, directory: Path, prefix: str, lines: list[str]) -> None:
        entries = sorted(p for p in directory.iterdir() if not p.name.startswith("."))
        for index, entry in enumerate(entries):
            last = index == len(entries) - 1
            connector = "└── " if last else "├── "
            suffix = "/" if entry.is_dir() else ""
            lines.append(f"{prefix}{connector}{entry.name}{suffix}")
            if entry.is_dir():
                self._render_children(entry, prefix + ("    " if last else "│   "), lines)
