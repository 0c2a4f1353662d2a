"""Drives every declared domain towards a live TLS configuration.

A reconciliation pass:

1. reloads the declarations, forgetting removed domains and restarting
   domains whose declaration changed,
2. makes sure nginx forwards http-01 challenges of every domain about
   to be validated, then obtains or renews certificates concurrently,
   at most one ACME operation per domain at any time,
3. renders the proxy configuration for all domains and hands it to the
   `.ReloadCoordinator`, one render+apply cycle at a time.

Passes converge: running one when nothing is due makes no ACME request
and leaves the proxy untouched.
"""
import concurrent.futures
import datetime
import logging
import threading
import traceback
from typing import Any
from typing import Callable
from typing import NamedTuple
from typing import Optional

from certproxy import configuration
from certproxy import errors
from certproxy import util
from certproxy._internal import backoff
from certproxy._internal import declarations
from certproxy._internal import lock
from certproxy._internal import renderer as renderer_mod
from certproxy._internal.obj import DomainSpec
from certproxy._internal.obj import DomainStatus
from certproxy._internal.obj import ProxyConfigArtifact
from certproxy._internal.obj import ReconciliationState
from certproxy._internal.obj import TRANSITIONS
from certproxy._internal.state import StatusStore
from certproxy._internal.storage import CertificateStore

logger = logging.getLogger(__name__)

State = ReconciliationState


class PassResult(NamedTuple):
    """Outcome of one reconciliation pass.

    :ivar dict statuses: status of every declared domain after the pass
    :ivar bool applied: whether the proxy runs the configuration rendered
        by the pass

    """
    statuses: dict[str, DomainStatus]
    applied: bool

    @property
    def failed(self) -> list[str]:
        """Sorted domains that ended the pass `Failed`."""
        return sorted(domain for domain, status in self.statuses.items()
                      if status.state is State.FAILED)

    @property
    def ok(self) -> bool:  # pylint: disable=missing-function-docstring
        return self.applied and not self.failed


class Reconciler:
    """Per-domain state machine over declarations, certificates and proxy.

    Collaborators default to the production implementations built from
    config and can be replaced, e.g. in tests.

    :ivar config: certproxy configuration
    :ivar source: where declarations are read from
    :ivar adapter: ACME client adapter, see `.AcmeAdapter`
    :ivar store: certificate storage
    :ivar renderer: proxy configuration renderer
    :ivar coordinator: sole writer of the live proxy configuration
    :ivar status_store: persisted statuses
    :ivar locks: per-domain mutual exclusion

    """
    def __init__(self, config: configuration.NamespaceConfig,
                 source: declarations.DeclarationSource,
                 adapter: Any = None,
                 store: Optional[CertificateStore] = None,
                 renderer: Optional[renderer_mod.ConfigRenderer] = None,
                 coordinator: Any = None,
                 status_store: Optional[StatusStore] = None,
                 locks: Optional[lock.DomainLocks] = None,
                 clock: Callable[[], datetime.datetime] = util.now) -> None:
        self.config = config
        self.source = source
        self.store = store if store is not None else CertificateStore(config)
        if adapter is None:
            from certproxy._internal import acme_adapter
            adapter = acme_adapter.AcmeAdapter(config)
        self.adapter = adapter
        self.renderer = renderer if renderer is not None else renderer_mod.ConfigRenderer(
            config, self.store)
        if coordinator is None:
            from certproxy._internal import reloader
            coordinator = reloader.ReloadCoordinator(config)
        self.coordinator = coordinator
        self.status_store = (status_store if status_store is not None
                             else StatusStore(config.state_path))
        self.locks = locks if locks is not None else lock.DomainLocks(config.locks_dir)
        self._clock = clock

        # Guards _specs, _statuses and _cancel_events.
        self._state_lock = threading.RLock()
        # Serializes render+apply cycles; later cycles queue behind it.
        self._render_lock = threading.Lock()
        self._specs: dict[str, DomainSpec] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        # Domains of the configuration the proxy was last seen running.
        self._served: frozenset[str] = frozenset()
        self._declarations_loaded = False
        self._statuses = self._load_statuses()

    def _load_statuses(self) -> dict[str, DomainStatus]:
        try:
            statuses = self.status_store.load()
        except errors.Error as error:
            logger.warning("Starting with empty statuses: %s", error)
            return {}
        for domain, status in statuses.items():
            if status.state is State.ISSUING:
                # interrupted mid-issuance by a previous run
                logger.debug("Resetting interrupted issuance of %s", domain)
                status.state = State.PENDING
        return statuses

    def statuses(self) -> dict[str, DomainStatus]:
        """Snapshot of the status of every known domain."""
        with self._state_lock:
            return {domain: status.copy() for domain, status in self._statuses.items()}

    def next_retry_at(self) -> Optional[datetime.datetime]:
        """Earliest time a failed domain becomes due for a retry, if any."""
        with self._state_lock:
            times = [status.next_attempt_at for status in self._statuses.values()
                     if status.state is State.FAILED and status.retryable
                     and status.next_attempt_at is not None]
        return min(times) if times else None

    def run_pass(self) -> PassResult:
        """Run one reconciliation pass over all declared domains.

        Safe to call at any time and from several threads at once.

        :returns: statuses after the pass and whether the apply succeeded
        :rtype: `PassResult`

        """
        logger.debug("Starting reconciliation pass")
        if not self._refresh_declarations():
            return PassResult(self.statuses(), applied=False)

        due = self._due_specs()
        if due:
            self._expose_challenges(due)
            with concurrent.futures.ThreadPoolExecutor(
                    max_workers=self.config.max_workers,
                    thread_name_prefix="certproxy-acme") as executor:
                for future in [executor.submit(self._reconcile_domain, spec) for spec in due]:
                    future.result()

        applied = self._render_and_apply()
        statuses = self.statuses()
        self._save(statuses)
        result = PassResult(statuses, applied)
        for domain in result.failed:
            logger.warning("%s is failed: %s", domain, statuses[domain].reason)
        logger.debug("Finished reconciliation pass")
        return result

    def preview(self) -> ProxyConfigArtifact:
        """Render the configuration for the current declarations without applying it.

        :raises .errors.DeclarationError: if declarations cannot be read
        :raises .errors.RenderError: if they cannot be rendered

        """
        specs = self.source.load()
        certs = self.store.load_all(spec.domain for spec in specs)
        return self.renderer.render(specs, certs, self._clock())

    def _save(self, statuses: dict[str, DomainStatus]) -> None:
        try:
            self.status_store.save(statuses)
        except OSError as error:
            logger.error("Unable to save statuses to %s: %s", self.status_store.path, error)

    # Declarations

    def _refresh_declarations(self) -> bool:
        try:
            specs = self.source.load()
        except errors.DeclarationError as error:
            logger.error("%s", error)
            if not self._declarations_loaded:
                logger.error("No declarations are available, skipping this pass")
                return False
            logger.warning("Keeping the previous %d declarations", len(self._specs))
            return True
        self._update_declarations(specs)
        self._declarations_loaded = True
        return True

    def _update_declarations(self, specs: list[DomainSpec]) -> None:
        new = {spec.domain: spec for spec in specs}
        with self._state_lock:
            stored = set(self.store.domains())
            for domain in sorted((set(self._specs) | set(self._statuses) | stored) - set(new)):
                self._remove(domain, domain in stored)

            now = self._clock()
            for domain, spec in sorted(new.items()):
                fingerprint = spec.fingerprint()
                status = self._statuses.get(domain)
                if status is None:
                    logger.info("%s is now declared", domain)
                    self._statuses[domain] = DomainStatus(updated_at=now, declaration=fingerprint)
                elif status.declaration != fingerprint:
                    logger.info("Declaration of %s changed, reconciling it from scratch", domain)
                    self._statuses[domain] = DomainStatus(
                        updated_at=now, declaration=fingerprint, expires_at=status.expires_at)
                if self._specs.get(domain) != spec:
                    previous = self._cancel_events.get(domain)
                    if previous is not None:
                        previous.set()
                    self._cancel_events[domain] = threading.Event()
            self._specs = new

    def _remove(self, domain: str, stored: bool) -> None:
        """Forget a domain that is no longer declared. Caller holds _state_lock."""
        cancel_event = self._cancel_events.pop(domain, None)
        if cancel_event is not None:
            cancel_event.set()
        self._specs.pop(domain, None)
        self._statuses.pop(domain, None)
        if stored:
            self.store.delete(domain)
        self.locks.forget(domain)
        logger.info("%s is no longer declared", domain)

    def _is_current(self, spec: DomainSpec) -> bool:
        """Is spec still the declaration of its domain? Caller holds _state_lock."""
        status = self._statuses.get(spec.domain)
        return (self._specs.get(spec.domain) == spec and status is not None
                and status.declaration == spec.fingerprint())

    # State machine

    def _transition(self, domain: str, state: ReconciliationState, **changes: Any) -> None:
        """Move domain to state. Caller holds _state_lock.

        :raises .errors.Error: if the transition is not allowed

        """
        status = self._statuses[domain]
        old = status.state
        if state is not State.FAILED and state not in TRANSITIONS[old]:
            raise errors.Error(
                f"Invalid transition of {domain} from {old.value} to {state.value}")
        status.state = state
        for name, value in changes.items():
            setattr(status, name, value)
        status.updated_at = self._clock()
        if old is not state:
            logger.info("%s: %s -> %s", domain, old.value, state.value)

    def _fail(self, domain: str, reason: str) -> None:
        """Terminally fail domain until its declaration changes. Caller holds _state_lock."""
        self._transition(domain, State.FAILED, reason=reason, retryable=False,
                         next_attempt_at=None)
        logger.error("%s failed: %s", domain, reason)

    def _fail_attempt(self, domain: str, reason: str, retryable: bool) -> None:
        """Record a failed issuance attempt. Caller holds _state_lock."""
        attempts = self._statuses[domain].attempts + 1
        if retryable and attempts >= self.config.max_attempts:
            reason = f"{reason} (giving up after {attempts} attempts)"
            retryable = False
        if not retryable:
            self._transition(domain, State.FAILED, attempts=attempts)
            self._fail(domain, reason)
            return
        next_attempt_at = self._clock() + backoff.delay(attempts)
        self._transition(domain, State.FAILED, reason=reason, retryable=True,
                         attempts=attempts, next_attempt_at=next_attempt_at)
        logger.error("%s failed (attempt %d of %d), retrying after %s: %s", domain,
                     attempts, self.config.max_attempts, next_attempt_at, reason)

    # Certificates

    def _due_specs(self) -> list[DomainSpec]:
        """Declarations needing an ACME operation in this pass."""
        now = self._clock()
        window = self.config.renewal_window
        due = []
        with self._state_lock:
            for domain, spec in sorted(self._specs.items()):
                status = self._statuses[domain]
                if status.state is State.FAILED:
                    if not status.retryable:
                        logger.debug("Not retrying %s: %s", domain, status.reason)
                    elif status.next_attempt_at is not None and status.next_attempt_at > now:
                        logger.debug("Backing off %s until %s", domain, status.next_attempt_at)
                    else:
                        due.append(spec)
                    continue
                try:
                    renderer_mod.check_spec(spec)
                except errors.RenderError as error:
                    self._fail(domain, str(error))
                    continue
                if status.state is State.PENDING:
                    due.append(spec)
                    continue
                existing = self.store.load(domain)
                if existing is None or existing.is_renewable(now, window):
                    due.append(spec)
        return due

    def _reconcile_domain(self, spec: DomainSpec) -> None:
        try:
            with self.locks.hold(spec.domain):
                self._obtain(spec)
        except errors.LockError as error:
            logger.info("Skipping %s: %s", spec.domain, error)

    def _obtain(self, spec: DomainSpec) -> None:
        domain = spec.domain
        with self._state_lock:
            if not self._is_current(spec):
                return
            status = self._statuses[domain]
            if status.state is State.FAILED and not status.retryable:
                # rejected by the renderer after it was selected
                return
            cancel_event = self._cancel_events[domain]
            self._transition(domain, State.ISSUING)

        existing = self.store.load(domain)
        try:
            record = self.adapter.obtain_or_renew(spec, existing, cancel_event)
        except errors.Cancelled:
            logger.info("Abandoned the certificate request for %s", domain)
            return
        except errors.AcmeError as error:
            with self._state_lock:
                if self._is_current(spec):
                    self._fail_attempt(domain, str(error), error.retryable)
            return
        except Exception as error:  # pylint: disable=broad-except
            logger.error("Obtaining a certificate for %s produced an unexpected error: %s",
                         domain, error)
            logger.debug("Traceback was:\n%s", traceback.format_exc())
            with self._state_lock:
                if self._is_current(spec):
                    self._fail_attempt(domain, f"unexpected error: {error}", retryable=True)
            return

        with self._state_lock:
            if not self._is_current(spec) or cancel_event.is_set():
                logger.info("Discarding the certificate obtained for %s, its declaration "
                            "changed meanwhile", domain)
                return
            if record is not existing:
                try:
                    self.store.save(record)
                except errors.CertStorageError as error:
                    self._fail_attempt(domain, str(error), retryable=True)
                    return
            self._transition(domain, State.ISSUED, reason=None, retryable=False, attempts=0,
                             next_attempt_at=None, expires_at=record.expires_at)

    # Proxy configuration

    def _expose_challenges(self, due: list[DomainSpec]) -> None:
        """Apply a configuration forwarding the challenges of due domains.

        The CA fetches http-01 responses through nginx, which only forwards
        them for domains in its running configuration.
        """
        if self.config.http01_port == 80 or "http-01" not in self.config.pref_challs:
            return
        with self._state_lock:
            missing = frozenset(spec.domain for spec in due) - self._served
        if not missing:
            return
        logger.debug("Forwarding challenges of %s before requesting certificates",
                     ", ".join(sorted(missing)))
        if not self._render_and_apply(validating=missing):
            logger.warning("nginx may not forward http-01 challenges of %s",
                           ", ".join(sorted(missing)))

    def _render_and_apply(self, validating: frozenset[str] = frozenset()) -> bool:
        """Render every servable domain and apply the result.

        :param validating: domains about to be validated, served even when
            they are failed and have no usable certificate

        :returns: whether the proxy runs the rendered configuration
        :rtype: bool

        """
        with self._render_lock:
            now = self._clock()
            with self._state_lock:
                specs = dict(self._specs)
                states = {domain: status.state for domain, status in self._statuses.items()}
            certs = self.store.load_all(specs)
            included = []
            for domain, spec in sorted(specs.items()):
                cert = certs.get(domain)
                if (states.get(domain) is State.FAILED and domain not in validating
                        and (cert is None or cert.is_expired(now))):
                    logger.debug("Leaving failed %s out of the proxy configuration", domain)
                    continue
                included.append(spec)

            artifact = self._render(included, certs, now)
            if artifact is None:
                return False

            with self._state_lock:
                for domain in artifact.domains:
                    status = self._statuses.get(domain)
                    if status is not None and status.state is State.ISSUED:
                        self._transition(domain, State.CONFIG_STAGED)
            try:
                self.coordinator.apply(artifact)
            except (errors.ReloadError, errors.LockError) as error:
                logger.error("Unable to apply the proxy configuration: %s", error)
                with self._state_lock:
                    for domain in artifact.domains:
                        status = self._statuses.get(domain)
                        if status is not None and status.state is State.CONFIG_STAGED:
                            status.reason = str(error)
                return False

            with self._state_lock:
                self._served = frozenset(artifact.domains)
                for domain in artifact.domains:
                    status = self._statuses.get(domain)
                    if status is not None and status.state is State.CONFIG_STAGED:
                        self._transition(domain, State.LIVE, reason=None)
            return True

    def _render(self, included: list[DomainSpec], certs: dict[str, Any],
                now: datetime.datetime) -> Optional[ProxyConfigArtifact]:
        """Render included, failing and dropping domains the renderer rejects."""
        while True:
            try:
                return self.renderer.render(included, certs, now)
            except errors.RenderError as error:
                offending = error.domain
                if offending is None or offending not in {spec.domain for spec in included}:
                    logger.error("Unable to render the proxy configuration: %s", error)
                    return None
                with self._state_lock:
                    if offending in self._statuses:
                        self._fail(offending, str(error))
                included = [spec for spec in included if spec.domain != offending]
