"""certproxy errors."""
import enum
from typing import Optional


class Error(Exception):
    """Generic certproxy error."""


class ConfigurationError(Error):
    """Configuration sanity error."""


class DeclarationError(Error):
    """The declared domain set could not be loaded."""


class SubprocessError(Error):
    """Subprocess handling error."""


class HookCommandFailed(SubprocessError):
    """A challenge hook command exited with a non-zero status."""


class CertStorageError(Error):
    """Generic `.CertificateStore` error."""


class AccountStorageError(Error):
    """Generic `.AccountFileStorage` error."""


class LockError(Error):
    """File locking error."""


class Cancelled(Error):
    """The operation was cancelled because its domain is no longer declared."""


class StandaloneBindError(Error):
    """Standalone challenge listener bind error."""

    def __init__(self, socket_error: OSError, port: int) -> None:
        super().__init__(
            f"Problem binding to port {port}: {socket_error}")
        self.socket_error = socket_error
        self.port = port


class AcmeErrorKind(enum.Enum):
    """Classification of failures talking to the certificate authority."""
    RATE_LIMITED = "RateLimited"
    CHALLENGE_FAILED = "ChallengeFailed"
    NETWORK_ERROR = "NetworkError"
    INVALID_DOMAIN = "InvalidDomain"


RETRYABLE_ACME_ERRORS = frozenset((AcmeErrorKind.RATE_LIMITED, AcmeErrorKind.NETWORK_ERROR))


class KindError(Error):
    """Base for errors carrying a ``kind`` classification and a detail.

    :ivar kind: enum member classifying the failure
    :ivar str detail: human readable description

    """
    def __init__(self, kind: enum.Enum, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail or ""
        super().__init__(kind, self.detail)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


class AcmeError(KindError):
    """Certificate issuance failed for a single domain."""
    kind: AcmeErrorKind

    def __init__(self, kind: AcmeErrorKind, detail: Optional[str] = None) -> None:
        super().__init__(kind, detail)

    @property
    def retryable(self) -> bool:
        """Whether the caller may try again after backing off."""
        return self.kind in RETRYABLE_ACME_ERRORS


class RenderErrorKind(enum.Enum):
    """Classification of proxy configuration rendering failures."""
    MISSING_BACKEND = "MissingBackend"
    TEMPLATE_ERROR = "TemplateError"


class RenderError(KindError):
    """Proxy configuration could not be rendered.

    :ivar str domain: offending domain, if the failure is specific to one

    """
    kind: RenderErrorKind

    def __init__(self, kind: RenderErrorKind, detail: Optional[str] = None,
                 domain: Optional[str] = None) -> None:
        super().__init__(kind, detail)
        self.domain = domain


class ReloadErrorKind(enum.Enum):
    """Classification of failures applying configuration to the proxy."""
    INVALID_CONFIG = "InvalidConfig"
    RELOAD_SIGNAL_FAILED = "ReloadSignalFailed"
    HEALTH_CHECK_FAILED = "HealthCheckFailed"


class ReloadError(KindError):
    """Configuration could not be applied to the running proxy."""
    kind: ReloadErrorKind

    def __init__(self, kind: ReloadErrorKind, detail: Optional[str] = None) -> None:
        super().__init__(kind, detail)
