"""Challenge solvers proving control of a domain to the CA.

Each solver exposes a ``serve`` context manager. Entering it makes the
challenge answerable (a transient listener for HTTP-01, a published TXT
record for DNS-01) and yields the response to send to the CA. Leaving it,
on success, error or cancellation, always tears the setup down again.
"""
import contextlib
import logging
import time
from typing import Iterator
from typing import Optional
from typing import Union

import josepy as jose

from acme import challenges
from acme import messages
from acme import standalone as acme_standalone
from certproxy import configuration
from certproxy import errors
from certproxy import util

logger = logging.getLogger(__name__)


class HTTP01Solver:
    """Answers HTTP-01 challenges from a transient standalone listener.

    The listener binds ``http01_address:http01_port`` only for the time a
    single challenge is being validated.
    """
    typ = challenges.HTTP01.typ

    def __init__(self, config: configuration.NamespaceConfig) -> None:
        self.config = config

    @contextlib.contextmanager
    def serve(self, challb: messages.ChallengeBody, domain: str,
              account_key: jose.JWK) -> Iterator[challenges.ChallengeResponse]:
        """Serve the key authorization of challb for the duration of the block.

        :raises .errors.StandaloneBindError: if the port cannot be bound

        """
        response, validation = challb.response_and_validation(account_key)
        resource = acme_standalone.HTTP01RequestHandler.HTTP01Resource(
            chall=challb.chall, response=response, validation=validation)
        port = self.config.http01_port
        try:
            servers = acme_standalone.HTTP01DualNetworkedServers(
                (self.config.http01_address, port), {resource})
        except OSError as error:
            raise errors.StandaloneBindError(error, port)

        servers.serve_forever()
        logger.debug("Serving HTTP-01 challenge for %s on port %d", domain, port)
        try:
            yield response
        finally:
            for sockname in servers.getsocknames():
                logger.debug("Stopping server at %s:%d...", *sockname[:2])
            servers.shutdown_and_server_close()


class DNS01HookSolver:
    """Answers DNS-01 challenges through operator supplied hook commands.

    The auth hook must publish a TXT record named ``$CERTPROXY_RECORD_NAME``
    holding ``$CERTPROXY_VALIDATION``; the cleanup hook removes it again.
    The cleanup hook runs even when the auth hook failed.
    """
    typ = challenges.DNS01.typ

    def __init__(self, config: configuration.NamespaceConfig) -> None:
        self.config = config

    @contextlib.contextmanager
    def serve(self, challb: messages.ChallengeBody, domain: str,
              account_key: jose.JWK) -> Iterator[challenges.ChallengeResponse]:
        """Publish the TXT record of challb for the duration of the block.

        :raises .errors.HookCommandFailed: if the auth hook fails

        """
        response, validation = challb.response_and_validation(account_key)
        env = {
            util.HOOK_ENV_PREFIX + "DOMAIN": domain,
            util.HOOK_ENV_PREFIX + "VALIDATION": validation,
            util.HOOK_ENV_PREFIX + "RECORD_NAME": challb.chall.validation_domain_name(domain),
        }
        try:
            _run_hook("dns-auth-hook", self.config.dns_auth_hook, env)
            if self.config.dns_propagation_seconds:
                logger.info("Waiting %d seconds for DNS changes to propagate",
                            self.config.dns_propagation_seconds)
                time.sleep(self.config.dns_propagation_seconds)
            yield response
        finally:
            if self.config.dns_cleanup_hook:
                try:
                    _run_hook("dns-cleanup-hook", self.config.dns_cleanup_hook, env)
                except errors.HookCommandFailed as error:
                    logger.warning("Cleanup of the TXT record for %s failed: %s", domain, error)


def _run_hook(name: str, command: str, env: dict[str, str]) -> str:
    """Run a hook command through the shell.

    :returns: stdout of the command
    :raises .errors.HookCommandFailed: if the command fails

    """
    logger.debug("Running %s command: %s", name, command)
    try:
        out, err = util.run_script(["/bin/sh", "-c", command], log=logger.debug, env=env)
    except errors.SubprocessError as error:
        raise errors.HookCommandFailed(f"{name} command failed: {error}")
    if err:
        logger.warning("%s command %r reported error output: %s", name, command, err.strip())
    return out


Solver = Union[HTTP01Solver, DNS01HookSolver]


def make_solvers(config: configuration.NamespaceConfig) -> dict[str, Solver]:
    """Solvers for the challenge types named in ``pref_challs``."""
    available = {HTTP01Solver.typ: HTTP01Solver, DNS01HookSolver.typ: DNS01HookSolver}
    return {typ: available[typ](config) for typ in config.pref_challs}


def select_challenge(authzr: messages.AuthorizationResource,
                     pref_challs: list[str]) -> Optional[messages.ChallengeBody]:
    """Pick the most preferred challenge offered in authzr.

    :param authzr: pending authorization of a domain
    :param list pref_challs: challenge types, most preferred first

    :returns: the selected challenge, or ``None`` if the CA offers none
        of the preferred types
    :rtype: `acme.messages.ChallengeBody`

    """
    offered = {challb.chall.typ: challb for challb in authzr.body.challenges}
    for typ in pref_challs:
        if typ in offered:
            return offered[typ]
    return None
