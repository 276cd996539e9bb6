"""Error taxonomy shared by the store, the CA components and the CLI."""


class CAManagerError(Exception):
    """Base class for all CA manager errors."""

    pass


class DependencyMissing(CAManagerError):
    """Raised when the crypto backend is not available on this host."""

    pass


class NoRootCAError(CAManagerError):
    """Raised when an operation needs a root CA that has not been initialized."""

    pass


class RootCAExistsError(CAManagerError):
    """Raised when initialization would overwrite an existing root CA without confirmation."""

    pass


class CryptoProviderError(CAManagerError):
    """Raised when key generation, request construction, signing or export fails."""

    pass


class FilesystemPermissionError(CAManagerError):
    """Raised when the store cannot create or write its files."""

    pass


class StoreIntegrityError(CAManagerError):
    """Raised when files in the store contradict each other."""

    pass


class CertificateNotFoundError(CAManagerError):
    """Raised when no issued certificate exists for a domain."""

    pass


class ChainVerificationError(CAManagerError):
    """Raised when a certificate does not chain to the root CA."""

    pass


class InvalidInputError(CAManagerError):
    """Raised when operator-supplied input fails validation.

    ``fields`` names the offending inputs so a caller can re-prompt only those.
    """

    def __init__(self, message: str, fields: tuple[str, ...] = ()):
        self.fields = fields
        super().__init__(message)
