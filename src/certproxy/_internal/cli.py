"""certproxy command line argument & config processing.

Every flag can also be set in the config files listed in
``CLI_DEFAULTS["config_files"]`` (``flag = value``, without the leading
dashes) or through a ``CERTPROXY_<FLAG>`` environment variable.
"""
import argparse
import copy
import logging
from typing import Any
from typing import Optional
from typing import Sequence
from typing import Union

import configargparse

import certproxy
from certproxy import errors
from certproxy._internal import constants

logger = logging.getLogger(__name__)

ENV_VAR_PREFIX = "CERTPROXY_"

CHALLENGE_ALIASES = {"dns": "dns-01", "http": "http-01"}

USAGE = """
  certproxy [run|daemon|status|render] [options]

  run        reconcile every declared domain once and exit (default)
  daemon     reconcile periodically, on SIGHUP and when declarations change
  status     print the last known state of every domain
  render     print the proxy configuration for the current declarations
"""


def flag_default(name: str) -> Any:
    """Default value for CLI flag."""
    return copy.deepcopy(constants.CLI_DEFAULTS[name])


def nonnegative_int(value: str) -> int:
    """Converts value to an int and checks that it is not negative.

    :raises argparse.ArgumentTypeError: if value isn't a non-negative integer

    """
    try:
        int_value = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("value must be an integer")

    if int_value < 0:
        raise argparse.ArgumentTypeError("value must be non-negative")
    return int_value


def parse_preferred_challenges(pref_challs: Sequence[str]) -> list[str]:
    """Translate and validate preferred challenges.

    :param pref_challs: list of preferred challenge types
    :type pref_challs: `list` of `str`

    :returns: validated list of preferred challenge types
    :rtype: `list` of `str`

    :raises errors.Error: if pref_challs is invalid

    """
    challs = [CHALLENGE_ALIASES.get(c.strip(), c.strip()) for c in pref_challs if c.strip()]
    from certproxy.configuration import SUPPORTED_CHALLENGES
    unrecognized = ", ".join(name for name in challs if name not in SUPPORTED_CHALLENGES)
    if unrecognized:
        raise errors.Error("Unrecognized challenges: {0}".format(unrecognized))
    return challs


class _PrefChallAction(argparse.Action):
    """Action class for parsing preferred challenges."""

    def __call__(self, parser: argparse.ArgumentParser, namespace: argparse.Namespace,
                 pref_challs: Union[str, Sequence[Any], None],
                 option_string: Optional[str] = None) -> None:
        if pref_challs is None:
            raise ValueError("Unexpected null pref_challs.")
        try:
            challs = parse_preferred_challenges(str(pref_challs).split(","))
        except errors.Error as error:
            raise argparse.ArgumentError(self, str(error))
        namespace.pref_challs = challs


class CustomHelpFormatter(argparse.HelpFormatter):
    """ArgumentDefaultsHelpFormatter that leaves suppressed defaults alone."""

    def _get_help_string(self, action: argparse.Action) -> Optional[str]:
        helpstr = action.help
        if action.help and '%(default)' not in action.help and '(default:' not in action.help:
            if action.default != argparse.SUPPRESS:
                defaulting_nargs = [argparse.OPTIONAL, argparse.ZERO_OR_MORE]
                if helpstr and (action.option_strings or action.nargs in defaulting_nargs):
                    helpstr += ' (default: %(default)s)'
        return helpstr


def prepare_and_parse_args(args: list[str]) -> argparse.Namespace:
    """Returns parsed command line arguments.

    :param list args: command line arguments with the program name removed

    :returns: parsed command line arguments
    :rtype: argparse.Namespace

    """
    parser = configargparse.ArgParser(
        prog="certproxy",
        usage=USAGE,
        formatter_class=CustomHelpFormatter,
        args_for_setting_config_path=["-c", "--config"],
        default_config_files=flag_default("config_files"),
        auto_env_var_prefix=ENV_VAR_PREFIX,
        config_arg_help_message="path to config file (default: {0})".format(
            " and ".join(flag_default("config_files"))))

    parser.add_argument(
        "verb", nargs="?", choices=constants.VERBS, default=flag_default("verb"),
        help="what to do")
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {certproxy.__version__}",
        help="show program's version number and exit")
    parser.add_argument(
        "-v", "--verbose", dest="verbose_count", action="count",
        default=flag_default("verbose_count"), help="This flag can be used "
        "multiple times to incrementally increase the verbosity of output, "
        "e.g. -vvv.")
    parser.add_argument(
        "-q", "--quiet", dest="quiet", action="store_true", default=flag_default("quiet"),
        help="Silence all output except errors.")
    parser.add_argument(
        "--debug", action="store_true", default=flag_default("debug"),
        help="Show tracebacks in case of errors")
    parser.add_argument(
        "--max-log-backups", type=nonnegative_int, default=flag_default("max_log_backups"),
        help="Specifies the maximum number of backup logs that should be kept by "
             "the built in log rotation. 0 disables log rotation.")
    parser.add_argument(
        "--strict-permissions", action="store_true",
        default=flag_default("strict_permissions"),
        help="Require that all configuration files are owned by the current "
             "user; only needed if your config is somewhere unsafe like /tmp/")

    decl = parser.add_argument_group("declarations")
    decl.add_argument(
        "--domains-file", default=flag_default("domains_file"),
        help="File declaring one [domain] section per proxied domain")
    decl.add_argument(
        "-m", "--email", dest="contact_email", default=flag_default("contact_email"),
        help="Default contact email for domains that do not declare one")

    acme = parser.add_argument_group("acme")
    acme.add_argument(
        "--server", default=flag_default("server"),
        help="ACME Directory Resource URI.")
    acme.add_argument(
        "--staging", "--test-cert", dest="staging", action="store_true",
        default=flag_default("staging"),
        help="Use the staging server to obtain test (invalid) certificates")
    acme.add_argument(
        "--user-agent", default=flag_default("user_agent"),
        help="Set a custom user agent string for the client")
    acme.add_argument(
        "--key-type", choices=["rsa", "ecdsa"], default=flag_default("key_type"),
        help="Type of generated private keys")
    acme.add_argument(
        "--rsa-key-size", type=int, default=flag_default("rsa_key_size"),
        help="Size of the RSA key.")
    acme.add_argument(
        "--elliptic-curve", default=flag_default("elliptic_curve"),
        help="The SECG elliptic curve name to use.")
    acme.add_argument(
        "--preferred-challenges", dest="pref_challs", action=_PrefChallAction,
        default=flag_default("pref_challs"),
        help="A sorted, comma delimited list of the preferred challenge to use "
             "during authorization, e.g. \"http-01,dns-01\".")
    acme.add_argument(
        "--http-01-port", dest="http01_port", type=int, default=flag_default("http01_port"),
        help="Port used by the built-in http-01 responder. nginx forwards challenge "
             "requests to it. Use 80 only when nginx does not listen on port 80.")
    acme.add_argument(
        "--http-01-address", dest="http01_address", default=flag_default("http01_address"),
        help="The address the built-in http-01 responder binds to.")
    acme.add_argument(
        "--challenge-timeout", type=int, default=flag_default("challenge_timeout"),
        help="Seconds to wait for the ACME server to validate all challenges")
    acme.add_argument(
        "--dns-auth-hook", default=flag_default("dns_auth_hook"),
        help="Shell command publishing the dns-01 TXT record. It receives "
             "CERTPROXY_DOMAIN, CERTPROXY_VALIDATION and CERTPROXY_RECORD_NAME.")
    acme.add_argument(
        "--dns-cleanup-hook", default=flag_default("dns_cleanup_hook"),
        help="Shell command removing the dns-01 TXT record again")
    acme.add_argument(
        "--dns-propagation-seconds", type=nonnegative_int,
        default=flag_default("dns_propagation_seconds"),
        help="Seconds to wait after the auth hook before answering the challenge")

    policy = parser.add_argument_group("renewal")
    policy.add_argument(
        "--renew-before", default=flag_default("renew_before"),
        help="Renew certificates this long before they expire, e.g. \"30 days\"")
    policy.add_argument(
        "--max-attempts", type=int, default=flag_default("max_attempts"),
        help="Consecutive failed issuance attempts before a domain is given up")
    policy.add_argument(
        "--max-workers", type=int, default=flag_default("max_workers"),
        help="Number of domains reconciled concurrently")
    policy.add_argument(
        "--interval", default=flag_default("interval"),
        help="Time between two passes of the daemon, e.g. \"12 hours\"")
    policy.add_argument(
        "--watch-seconds", type=int, default=flag_default("watch_seconds"),
        help="How often the daemon checks the domains file for changes")

    proxy = parser.add_argument_group("proxy")
    proxy.add_argument(
        "--nginx-ctl", default=flag_default("nginx_ctl"),
        help="Path to the 'nginx' binary, used for 'configtest' and reloading")
    proxy.add_argument(
        "--nginx-conf", default=flag_default("nginx_conf"),
        help="Configuration file owned by certproxy, included in the http block of nginx")
    proxy.add_argument(
        "--nginx-pid-file", default=flag_default("nginx_pid_file"),
        help="PID file of the nginx master process, checked after every reload")
    proxy.add_argument(
        "--reload-cmd", default=flag_default("reload_cmd"),
        help="Command reloading nginx (default: NGINX_CTL -s reload)")
    proxy.add_argument(
        "--health-url", default=flag_default("health_url"),
        help="URL that must answer without a server error after a reload")
    proxy.add_argument(
        "--health-timeout", type=int, default=flag_default("health_timeout"),
        help="Seconds nginx has to become healthy after a reload")
    proxy.add_argument(
        "--no-hsts", dest="hsts", action="store_false", default=flag_default("hsts"),
        help="Do not send the Strict-Transport-Security header")

    paths = parser.add_argument_group("paths")
    paths.add_argument(
        "--config-dir", default=flag_default("config_dir"),
        help="Configuration directory holding accounts and certificates.")
    paths.add_argument(
        "--work-dir", default=flag_default("work_dir"),
        help="Working directory holding locks and the status file.")
    paths.add_argument(
        "--logs-dir", default=flag_default("logs_dir"),
        help="Logs directory.")

    parsed = parser.parse_args(args)
    logger.debug("Parsed arguments: %r", parsed)
    return parsed
