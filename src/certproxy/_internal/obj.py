"""Data objects shared by the reconciliation components."""
import datetime
import enum
import hashlib
from typing import NamedTuple
from typing import Optional


class DomainSpec(NamedTuple):
    """A declared domain and the backend its traffic is forwarded to.

    The domain is the unique key of a declaration set.
    """
    domain: str
    backend_address: str
    backend_port: int
    contact_email: Optional[str]

    @property
    def upstream(self) -> str:
        """``host:port`` form of the backend, bracketing IPv6 literals."""
        address = self.backend_address
        if ":" in address and not address.startswith("["):
            address = f"[{address}]"
        return f"{address}:{self.backend_port}"

    def fingerprint(self) -> str:
        """Short digest identifying this exact declaration."""
        return hashlib.sha256(repr(tuple(self)).encode("utf-8")).hexdigest()[:16]


class CertificateRecord(NamedTuple):
    """An issued certificate together with its key and chain.

    Records are never mutated: a renewal produces a new record which
    replaces the old one in the `.CertificateStore`.
    """
    domain: str
    cert_pem: str
    key_pem: str
    chain_pem: str
    issued_at: datetime.datetime
    expires_at: datetime.datetime
    issuer: str

    @property
    def fullchain_pem(self) -> str:  # pylint: disable=missing-function-docstring
        return self.cert_pem + self.chain_pem

    def renewal_time(self, renewal_window: datetime.timedelta) -> datetime.datetime:
        """Moment from which the record is eligible for renewal."""
        return self.expires_at - renewal_window

    def is_renewable(self, now: datetime.datetime,
                     renewal_window: datetime.timedelta) -> bool:
        """Whether the renewal window has been reached at time now."""
        return now >= self.renewal_time(renewal_window)

    def is_expired(self, now: datetime.datetime) -> bool:
        """Whether the certificate can no longer be served at time now."""
        return now >= self.expires_at


class ProxyConfigArtifact(NamedTuple):
    """Rendered proxy configuration.

    :ivar str text: full configuration file contents
    :ivar str digest: sha256 hex digest of `text`
    :ivar tuple domains: sorted domains the artifact was rendered for
    :ivar tuple tls_domains: sorted domains served with a TLS server block

    """
    text: str
    digest: str
    domains: tuple[str, ...]
    tls_domains: tuple[str, ...]


class ReconciliationState(enum.Enum):
    """Position of a domain in its reconciliation lifecycle."""
    PENDING = "Pending"
    ISSUING = "Issuing"
    ISSUED = "Issued"
    CONFIG_STAGED = "ConfigStaged"
    LIVE = "Live"
    FAILED = "Failed"


# Allowed transitions. Any state may additionally move to FAILED, and
# PENDING is re-entered only when the declaration of a domain changes.
TRANSITIONS: dict[ReconciliationState, frozenset[ReconciliationState]] = {
    ReconciliationState.PENDING: frozenset({ReconciliationState.ISSUING}),
    ReconciliationState.ISSUING: frozenset({ReconciliationState.ISSUED}),
    ReconciliationState.ISSUED: frozenset({ReconciliationState.CONFIG_STAGED,
                                           ReconciliationState.ISSUING}),
    ReconciliationState.CONFIG_STAGED: frozenset({ReconciliationState.LIVE,
                                                  ReconciliationState.ISSUING}),
    ReconciliationState.LIVE: frozenset({ReconciliationState.ISSUING}),
    ReconciliationState.FAILED: frozenset({ReconciliationState.ISSUING}),
}


class DomainStatus:
    """Observable reconciliation status of a single domain.

    :ivar ReconciliationState state: current state
    :ivar str reason: why the domain failed, or the last reported problem
    :ivar bool retryable: whether a failed domain will be retried
    :ivar int attempts: consecutive failed issuance attempts
    :ivar next_attempt_at: earliest time a retry is allowed
    :ivar expires_at: expiry of the current certificate, if any
    :ivar updated_at: time of the last transition
    :ivar str declaration: fingerprint of the declaration the status refers to

    """
    def __init__(self, state: ReconciliationState = ReconciliationState.PENDING,
                 reason: Optional[str] = None, retryable: bool = False, attempts: int = 0,
                 next_attempt_at: Optional[datetime.datetime] = None,
                 expires_at: Optional[datetime.datetime] = None,
                 updated_at: Optional[datetime.datetime] = None,
                 declaration: Optional[str] = None) -> None:
        self.state = state
        self.reason = reason
        self.retryable = retryable
        self.attempts = attempts
        self.next_attempt_at = next_attempt_at
        self.expires_at = expires_at
        self.updated_at = updated_at
        self.declaration = declaration

    def __repr__(self) -> str:
        return "<{0}({1}, reason={2!r}, attempts={3})>".format(
            self.__class__.__name__, self.state.value, self.reason, self.attempts)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DomainStatus) and vars(self) == vars(other)

    def copy(self) -> "DomainStatus":
        """Snapshot of this status."""
        return DomainStatus(**vars(self))
