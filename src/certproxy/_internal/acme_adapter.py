"""Obtains and renews certificates from an ACME certificate authority."""
import datetime
import logging
import threading
import time
from typing import Callable
from typing import Optional

import requests

from acme import client
from acme import errors as acme_errors
from acme import messages
from certproxy import configuration
from certproxy import crypto_util
from certproxy import errors
from certproxy import util
from certproxy._internal import account
from certproxy._internal import challenges
from certproxy._internal.obj import CertificateRecord
from certproxy._internal.obj import DomainSpec

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1
"""Seconds between two polls of a pending authorization."""

# ACME problem codes that are not reported as NetworkError.
_PROBLEM_KINDS = {
    "rateLimited": errors.AcmeErrorKind.RATE_LIMITED,
    "rejectedIdentifier": errors.AcmeErrorKind.INVALID_DOMAIN,
    "unsupportedIdentifier": errors.AcmeErrorKind.INVALID_DOMAIN,
    "caa": errors.AcmeErrorKind.INVALID_DOMAIN,
    "malformed": errors.AcmeErrorKind.INVALID_DOMAIN,
    "badCSR": errors.AcmeErrorKind.INVALID_DOMAIN,
    "connection": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "dns": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "dnssec": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "unknownHost": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "incorrectResponse": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "unauthorized": errors.AcmeErrorKind.CHALLENGE_FAILED,
    "tls": errors.AcmeErrorKind.CHALLENGE_FAILED,
}


class AcmeAdapter:
    """Single entry point to the certificate authority.

    ACME clients are created lazily per contact email and shared by
    all domains declaring that email.

    :ivar config: certproxy configuration
    :ivar accounts: persisted ACME accounts

    """
    def __init__(self, config: configuration.NamespaceConfig,
                 accounts: Optional[account.AccountFileStorage] = None,
                 clock: Callable[[], datetime.datetime] = util.now) -> None:
        self.config = config
        self.accounts = accounts if accounts is not None else account.AccountFileStorage(config)
        self._clock = clock
        self._solvers = challenges.make_solvers(config)
        self._clients: dict[Optional[str], client.ClientV2] = {}
        self._clients_lock = threading.Lock()

    def obtain_or_renew(self, spec: DomainSpec, existing: Optional[CertificateRecord],
                        cancel_event: Optional[threading.Event] = None) -> CertificateRecord:
        """Make sure spec.domain has a certificate that is not due for renewal.

        If existing is present and not yet renewable it is returned as is,
        without any network call. Otherwise a new certificate is ordered.

        :param .DomainSpec spec: the declared domain
        :param existing: current certificate of the domain, if any
        :type existing: `.CertificateRecord` or `None`
        :param threading.Event cancel_event: set when the domain is no
            longer declared and the operation should be abandoned

        :returns: existing, or a freshly issued record
        :rtype: `.CertificateRecord`

        :raises .errors.AcmeError: if issuance failed
        :raises .errors.Cancelled: if cancel_event was set mid-operation

        """
        if existing is not None and not existing.is_renewable(
                self._clock(), self.config.renewal_window):
            logger.debug("Certificate for %s is not due for renewal before %s",
                         spec.domain, existing.renewal_time(self.config.renewal_window))
            return existing

        if existing is None:
            logger.info("Requesting a certificate for %s", spec.domain)
        else:
            logger.info("Renewing the certificate for %s, which expires on %s",
                        spec.domain, existing.expires_at)
        try:
            return self._issue(spec, cancel_event)
        except (errors.AcmeError, errors.Cancelled):
            raise
        except (acme_errors.Error, requests.exceptions.RequestException, errors.Error) as error:
            logger.debug("Exception was:", exc_info=True)
            raise translate_error(error)

    def _client(self, email: Optional[str]) -> client.ClientV2:
        with self._clients_lock:
            if email not in self._clients:
                self._clients[email] = account.client_for(self.config, self.accounts, email)
            return self._clients[email]

    def _issue(self, spec: DomainSpec, cancel_event: Optional[threading.Event]
               ) -> CertificateRecord:
        domain = util.enforce_domain_sanity(spec.domain)
        acme = self._client(spec.contact_email)
        _check_cancelled(domain, cancel_event)

        key_pem = crypto_util.make_key(
            bits=self.config.rsa_key_size, key_type=self.config.key_type,
            elliptic_curve=self.config.elliptic_curve)
        orderr = acme.new_order(crypto_util.make_csr(key_pem, domain))
        deadline = time.monotonic() + self.config.challenge_timeout

        for authzr in orderr.authorizations:
            if authzr.body.status == messages.STATUS_VALID:
                logger.debug("Authorization for %s is still valid", domain)
                continue
            challb = challenges.select_challenge(authzr, self.config.pref_challs)
            if challb is None:
                raise errors.AcmeError(
                    errors.AcmeErrorKind.CHALLENGE_FAILED,
                    "None of the preferred challenges ({0}) is offered for {1}".format(
                        ", ".join(self.config.pref_challs), domain))
            solver = self._solvers[challb.chall.typ]
            with solver.serve(challb, domain, acme.net.key) as response:
                _check_cancelled(domain, cancel_event)
                acme.answer_challenge(challb, response)
                self._poll(acme, authzr, deadline, cancel_event)

        _check_cancelled(domain, cancel_event)
        orderr = self._finalize(acme, orderr, domain)
        cert_pem, chain_pem = crypto_util.cert_and_chain_from_fullchain(orderr.fullchain_pem)
        record = CertificateRecord(
            domain=domain,
            cert_pem=cert_pem,
            key_pem=key_pem.decode("ascii"),
            chain_pem=chain_pem,
            issued_at=crypto_util.notBefore(cert_pem),
            expires_at=crypto_util.notAfter(cert_pem),
            issuer=crypto_util.issuer(cert_pem),
        )
        logger.info("Obtained a certificate for %s valid until %s", domain, record.expires_at)
        return record

    def _finalize(self, acme: client.ClientV2, orderr: messages.OrderResource,
                  domain: str) -> messages.OrderResource:
        """Finalize orderr, waiting up to challenge_timeout for the certificate.

        :raises .errors.AcmeError: NetworkError if the certificate is not
            ready in time

        """
        deadline = datetime.datetime.now() + datetime.timedelta(
            seconds=self.config.challenge_timeout)
        try:
            return acme.finalize_order(orderr, deadline)
        except acme_errors.TimeoutError:
            raise errors.AcmeError(
                errors.AcmeErrorKind.NETWORK_ERROR,
                f"timed out waiting for the certificate authority to issue a certificate "
                f"for {domain}")

    def _poll(self, acme: client.ClientV2, authzr: messages.AuthorizationResource,
              deadline: float, cancel_event: Optional[threading.Event]) -> None:
        """Wait until authzr is no longer pending.

        :raises acme.errors.ValidationError: if the CA rejected the challenge
        :raises acme.errors.TimeoutError: if deadline passed first

        """
        domain = authzr.body.identifier.value
        while True:
            authzr, _ = acme.poll(authzr)
            status = authzr.body.status
            if status == messages.STATUS_VALID:
                logger.debug("Challenge for %s is valid", domain)
                return
            if status == messages.STATUS_INVALID:
                raise acme_errors.ValidationError([authzr])
            if time.monotonic() >= deadline:
                raise acme_errors.TimeoutError()
            time.sleep(POLL_INTERVAL)
            _check_cancelled(domain, cancel_event)


def _check_cancelled(domain: str, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Certificate request for %s was cancelled", domain)
        raise errors.Cancelled(f"{domain} is no longer declared")


def _problem_kind(problem: Optional[messages.Error],
                  default: errors.AcmeErrorKind) -> errors.AcmeErrorKind:
    if problem is None:
        return default
    return _PROBLEM_KINDS.get(problem.code or "", default)


def translate_error(error: Exception) -> errors.AcmeError:
    """Classify an exception raised during issuance as an `.AcmeError`."""
    kind = errors.AcmeErrorKind.NETWORK_ERROR
    detail = str(error)
    if isinstance(error, acme_errors.ValidationError):
        problems = [challb.error for authzr in error.failed_authzrs
                    for challb in authzr.body.challenges if challb.error is not None]
        kind = _problem_kind(problems[0] if problems else None,
                             errors.AcmeErrorKind.CHALLENGE_FAILED)
        detail = "; ".join(str(problem) for problem in problems) or "challenge was rejected"
    elif isinstance(error, acme_errors.IssuanceError):
        kind = _problem_kind(error.error, errors.AcmeErrorKind.NETWORK_ERROR)
        detail = str(error.error)
    elif isinstance(error, acme_errors.TimeoutError):
        kind = errors.AcmeErrorKind.CHALLENGE_FAILED
        detail = "timed out waiting for the challenge to be validated"
    elif isinstance(error, messages.Error):
        kind = _problem_kind(error, errors.AcmeErrorKind.NETWORK_ERROR)
    elif isinstance(error, errors.HookCommandFailed):
        kind = errors.AcmeErrorKind.CHALLENGE_FAILED
    elif isinstance(error, errors.ConfigurationError):
        kind = errors.AcmeErrorKind.INVALID_DOMAIN
    return errors.AcmeError(kind, detail)
