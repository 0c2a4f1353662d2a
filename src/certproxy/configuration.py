"""certproxy user-supplied configuration."""
import argparse
import datetime
import logging
import os
import re
from typing import Any
from typing import Optional
from urllib import parse

from acme import challenges
from certproxy import errors
from certproxy import util
from certproxy._internal import constants

logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGES = (challenges.HTTP01.typ, challenges.DNS01.typ)


class NamespaceConfig:
    """Configuration wrapper around :class:`argparse.Namespace`.

    Attributes not defined here are delegated to the wrapped namespace.
    The following paths are resolved relative to
    :attr:`~certproxy.configuration.NamespaceConfig.config_dir`:

      - `accounts_dir`
      - `archive_dir`
      - `live_dir`

    and these relative to
    :attr:`~certproxy.configuration.NamespaceConfig.work_dir`:

      - `locks_dir`
      - `state_path`

    :ivar namespace: Namespace typically produced by
        :meth:`argparse.ArgumentParser.parse_args`.
    :type namespace: :class:`argparse.Namespace`

    """

    def __init__(self, namespace: argparse.Namespace) -> None:
        self.namespace: argparse.Namespace
        # Avoid recursion loop because of the delegation defined in __setattr__
        object.__setattr__(self, 'namespace', namespace)

        self.namespace.config_dir = os.path.abspath(self.namespace.config_dir)
        self.namespace.work_dir = os.path.abspath(self.namespace.work_dir)
        self.namespace.logs_dir = os.path.abspath(self.namespace.logs_dir)

        # Check command line parameters sanity, and error out in case of problem.
        _check_config_sanity(self)

    def to_dict(self) -> dict[str, Any]:
        """Returns a dictionary mapping all argument names to their values"""
        return vars(self.namespace)

    # Delegate any attribute not explicitly defined to the underlying namespace object.

    def __getattr__(self, name: str) -> Any:
        return getattr(self.namespace, name)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self.namespace, name, value)

    @property
    def server(self) -> str:
        """ACME Directory Resource URI."""
        if self.namespace.staging:
            return constants.STAGING_URI
        return self.namespace.server

    @property
    def server_path(self) -> str:
        """File path based on ``server``."""
        parsed = parse.urlparse(self.server)
        return re.sub(r"[^A-Za-z0-9._-]", "_", (parsed.netloc + parsed.path).strip('/'))

    @property
    def accounts_dir(self) -> str:
        """Directory where all account information for ``server`` is stored."""
        return os.path.join(
            self.namespace.config_dir, constants.ACCOUNTS_DIR, self.server_path)

    @property
    def archive_dir(self) -> str:
        """Directory holding every issued certificate version."""
        return os.path.join(self.namespace.config_dir, constants.ARCHIVE_DIR)

    @property
    def live_dir(self) -> str:
        """Directory holding one symlink per domain to its current certificate."""
        return os.path.join(self.namespace.config_dir, constants.LIVE_DIR)

    @property
    def locks_dir(self) -> str:  # pylint: disable=missing-function-docstring
        return os.path.join(self.namespace.work_dir, constants.LOCKS_DIR)

    @property
    def state_path(self) -> str:  # pylint: disable=missing-function-docstring
        return os.path.join(self.namespace.work_dir, constants.STATE_FILE)

    @property
    def staging_conf(self) -> str:
        """Where a candidate proxy configuration is written before validation."""
        return self.namespace.nginx_conf + constants.STAGED_SUFFIX

    @property
    def backup_conf(self) -> str:
        """Copy of the live proxy configuration kept while a new one is verified."""
        return self.namespace.nginx_conf + constants.BACKUP_SUFFIX

    @property
    def harness_conf(self) -> str:
        """Minimal nginx main configuration including the staged file for ``nginx -t``."""
        return self.namespace.nginx_conf + constants.HARNESS_SUFFIX

    @property
    def renewal_window(self) -> datetime.timedelta:
        """How long before expiry a certificate becomes renewable."""
        return util.parse_interval(self.namespace.renew_before)

    @property
    def pass_interval(self) -> datetime.timedelta:
        """Time between two scheduled reconciliation passes."""
        return util.parse_interval(self.namespace.interval)

    @property
    def pref_challs(self) -> list[str]:
        """Challenge types in order of preference."""
        return list(self.namespace.pref_challs)

    @property
    def reload_command(self) -> list[str]:
        """Command signalling the proxy to gracefully reload its configuration."""
        if self.namespace.reload_cmd:
            return self.namespace.reload_cmd.split()
        return [self.namespace.nginx_ctl, "-s", "reload"]

    @property
    def user_agent(self) -> str:
        """User-Agent sent to the ACME server."""
        if self.namespace.user_agent:
            return self.namespace.user_agent
        from certproxy import __version__
        return f"certproxy/{__version__}"

    @property
    def contact_email(self) -> Optional[str]:
        """Default contact email for declarations that do not name one."""
        return self.namespace.contact_email


def _check_config_sanity(config: NamespaceConfig) -> None:
    """Validate command line options and raise an error in case of problem.

    :param config: NamespaceConfig instance holding user configuration
    :type args: :class:`certproxy.configuration.NamespaceConfig`

    :raises .errors.ConfigurationError: if the configuration is unusable

    """
    if not 0 < config.namespace.http01_port < 65536:
        raise errors.ConfigurationError(
            "http01_port must be between 1 and 65535, not {0}".format(
                config.namespace.http01_port))

    unknown = [chall for chall in config.namespace.pref_challs
               if chall not in SUPPORTED_CHALLENGES]
    if unknown:
        raise errors.ConfigurationError(
            "Unsupported challenge types: {0}. Use one of {1}".format(
                ", ".join(unknown), ", ".join(SUPPORTED_CHALLENGES)))
    if not config.namespace.pref_challs:
        raise errors.ConfigurationError("At least one challenge type must be preferred")

    if (challenges.DNS01.typ in config.namespace.pref_challs
            and not config.namespace.dns_auth_hook):
        raise errors.ConfigurationError(
            "The dns-01 challenge requires --dns-auth-hook to publish TXT records")

    if config.namespace.key_type not in ("rsa", "ecdsa"):
        raise errors.ConfigurationError(
            "Invalid key_type specified: {0}.  Use [rsa|ecdsa]".format(
                config.namespace.key_type))

    for name in ("max_attempts", "max_workers", "challenge_timeout", "health_timeout"):
        if getattr(config.namespace, name) <= 0:
            raise errors.ConfigurationError(f"{name} must be a positive number")

    # Fail early on unparseable intervals
    config.renewal_window  # pylint: disable=pointless-statement
    config.pass_interval  # pylint: disable=pointless-statement

    if config.namespace.contact_email and not util.safe_email(config.namespace.contact_email):
        raise errors.ConfigurationError(
            "Invalid contact email: {0}".format(config.namespace.contact_email))
