"""Interactive operator menu.

All terminal I/O lives here. Raw answers are validated through the pydantic
schemas and handed to the core as typed objects.
"""

import getpass
import logging
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel

from ca_manager.ca.certificate_issuer import CertificateIssuer
from ca_manager.ca.key_manager import RootCAManager
from ca_manager.domain.models import IssuedCertificate
from ca_manager.domain.schemas import (
    CertificateParams,
    RenewalParams,
    RootCAParams,
    validate_input,
)
from ca_manager.errors import (
    CAManagerError,
    CertificateNotFoundError,
    InvalidInputError,
    NoRootCAError,
)
from ca_manager.store.pki_store import PKIStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# field name -> (prompt, secret)
Prompts = dict[str, tuple[str, bool]]

BANNER = "#" * 48

ROOT_CA_PROMPTS: Prompts = {
    "country_code": ("Country (2 letters, e.g. DE): ", False),
    "state": ("State (e.g. Berlin): ", False),
    "city": ("City (e.g. Berlin): ", False),
    "organization": ("Organization (e.g. My Company Internal): ", False),
    "common_name": ("Common name for the CA (e.g. 'MyCompany Root CA'): ", False),
    "validity_days": ("Validity in days (default: 3650 = 10 years): ", False),
}

CERTIFICATE_PROMPTS: Prompts = {
    "domain_name": ("Domain name (e.g. myserver.lan or *.internal.example): ", False),
    "ip_address": ("IP address (optional, Enter to skip): ", False),
    "validity_days": ("Validity in days (e.g. 365 or 825, default 365): ", False),
    "pkcs12_password": ("Password for the Windows PFX export (Enter for none): ", True),
}

RENEWAL_PROMPTS: Prompts = {
    "domain_name": ("Domain name to reissue: ", False),
    "validity_days": ("Validity in days (Enter to keep the previous period): ", False),
    "pkcs12_password": ("Password for the Windows PFX export (Enter for none): ", True),
}


class Menu:
    """The five-choice menu: init root, issue, renew, show layout, exit."""

    def __init__(
        self,
        store: PKIStore,
        root_manager: RootCAManager,
        issuer: CertificateIssuer,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
        output: Callable[[str], None] = print,
    ) -> None:
        self.store = store
        self.root_manager = root_manager
        self.issuer = issuer
        self._input = input_func
        self._secret = secret_func
        self._output = output
        self._actions: dict[str, Callable[[], None]] = {
            "1": self.initialize_root,
            "2": self.issue_certificate,
            "3": self.renew_certificate,
            "4": self.show_layout,
        }

    def run(self) -> int:
        """Loop until the operator exits. Returns the process exit code."""
        while True:
            self._show_menu()
            choice = self._input("Choice [1-5]: ").strip()
            if choice == "5":
                return 0

            action = self._actions.get(choice)
            if action is None:
                self._output("Invalid choice")
                continue

            try:
                action()
            except CAManagerError as e:
                logger.debug("menu_action_failed", extra={"choice": choice, "error": str(e)})
                self._error(str(e))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def initialize_root(self) -> None:
        self._output("\n=== Initialize root CA ===")

        overwrite = self.store.root_exists()
        if overwrite:
            self._warn(f"A root CA already exists in {self.store.root_dir}.")
            answer = self._input(
                "Really overwrite it? All previously issued certificates will become invalid! (y/n): "
            )
            if answer.strip().lower() not in ("y", "yes"):
                self._info("Root CA left unchanged.")
                return

        self._output("Enter the details of the certificate authority.")
        params = self._collect(RootCAParams, ROOT_CA_PROMPTS)

        self._info("Generating root CA key and certificate...")
        root = self.root_manager.initialize(
            params.to_distinguished_name(), params.validity_days, overwrite=overwrite
        )
        if not root.key_permissions_enforced:
            self._warn(f"Could not restrict {root.key_path} to owner read-only. Protect it manually!")
        self._ok("Root CA created!")
        self._output(f"Path: {root.cert_path}")

    def issue_certificate(self) -> None:
        self._output("\n=== Issue new server/client certificate ===")
        if not self.store.root_exists():
            raise NoRootCAError("No root CA found! Choose option 1 first.")

        params = self._collect(CertificateParams, CERTIFICATE_PROMPTS)
        self._info(f"Generating key, request and certificate for {params.domain_name}...")
        issued = self.issuer.issue(params.to_subject_request(), params.password)
        self._report(issued)

    def renew_certificate(self) -> None:
        self._output("\n=== Renew / reissue certificate ===")
        self._output("A brand-new key pair and certificate are issued by the existing root CA.")
        self._output("Nothing is revoked: redeploy the new files wherever the old ones are installed.")
        if not self.store.root_exists():
            raise NoRootCAError("No root CA found! Choose option 1 first.")

        domains = self.store.list_issued_domains()
        if domains:
            self._output("Issued: " + ", ".join(domains))

        params = self._collect(RenewalParams, RENEWAL_PROMPTS)
        try:
            issued = self.issuer.renew(
                params.domain_name, params.validity_days, params.password
            )
        except CertificateNotFoundError as e:
            self._info(f"{e}. Falling back to a new issuance.")
            self.issue_certificate()
            return
        self._report(issued)

    def show_layout(self) -> None:
        self._output(self.store.render_tree())
        self._input("Press Enter...")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _collect(self, model: type[M], prompts: Prompts) -> M:
        """Prompt for every field, then re-prompt only the fields that failed."""
        raw: dict[str, str] = {}
        pending = list(prompts)
        while True:
            for name in pending:
                label, secret = prompts[name]
                value = self._secret(label) if secret else self._input(label)
                if value.strip():
                    raw[name] = value
                else:
                    raw.pop(name, None)
            try:
                return validate_input(model, **raw)
            except InvalidInputError as e:
                self._error(str(e))
                pending = [name for name in prompts if name in e.fields] or list(prompts)

    def _report(self, issued: IssuedCertificate) -> None:
        self._ok(f"Certificate created in: {issued.directory}")
        self._output(f"  Serial:     {issued.serial_hex}")
        self._output(f"  Valid to:   {issued.not_after.isoformat()}")
        self._output(f"  SHA-256:    {issued.fingerprint}")
        self._output(f"  Full chain: {issued.bundle.fullchain_path}")
        self._output(f"  PKCS#12:    {issued.bundle.pkcs12_path}")

    def _show_menu(self) -> None:
        self._output(BANNER)
        self._output("#            LOCAL CA MANAGER                  #")
        self._output(BANNER)
        self._output(f"Store: {self.store.base_dir}\n")
        self._output("1. Initialize new root CA (start here)")
        self._output("2. Issue new certificate (domain/wildcard/IP)")
        self._output("3. Renew / reissue certificate")
        self._output("4. Show store layout")
        self._output("5. Exit")
        self._output("")

    def _info(self, message: str) -> None:
        self._output(f"[INFO] {message}")

    def _ok(self, message: str) -> None:
        self._output(f"[OK] {message}")

    def _warn(self, message: str) -> None:
        self._output(f"[WARN] {message}")

    def _error(self, message: str) -> None:
        self._output(f"[ERROR] {message}")


def build_menu(store: PKIStore) -> Menu:
    """Wire the menu to the default cryptography-backed components."""
    root_manager = RootCAManager(store)
    issuer = CertificateIssuer(store, root_manager=root_manager)
    return Menu(store, root_manager, issuer)
