"""certproxy main entry point."""
import logging
import sys
from typing import Callable
from typing import Optional
from typing import Union

import certproxy
from certproxy import configuration
from certproxy import errors
from certproxy import util
from certproxy._internal import cli
from certproxy._internal import constants
from certproxy._internal import declarations
from certproxy._internal import log
from certproxy._internal import reconciler as reconciler_mod
from certproxy._internal import scheduler
from certproxy._internal.obj import DomainStatus
from certproxy._internal.state import StatusStore

logger = logging.getLogger(__name__)


def _make_source(config: configuration.NamespaceConfig) -> declarations.FileDeclarationSource:
    return declarations.FileDeclarationSource(config.domains_file, config.contact_email)


def _make_reconciler(config: configuration.NamespaceConfig,
                     source: declarations.DeclarationSource) -> reconciler_mod.Reconciler:
    return reconciler_mod.Reconciler(config, source)


def _report(result: reconciler_mod.PassResult) -> Optional[Union[str, int]]:
    """Exit status for the outcome of a pass."""
    if result.failed:
        return "Reconciliation failed for: {0}".format(", ".join(result.failed))
    if not result.applied:
        return "The proxy configuration could not be applied, see the log for details."
    return None


def run(config: configuration.NamespaceConfig) -> Optional[Union[str, int]]:
    """Reconcile every declared domain once.

    :returns: `None` if every domain is live, otherwise an error message

    """
    reconciler = _make_reconciler(config, _make_source(config))
    return _report(reconciler.run_pass())


def daemon(config: configuration.NamespaceConfig) -> Optional[Union[str, int]]:
    """Reconcile until SIGTERM or SIGINT."""
    source = _make_source(config)
    reconciler = _make_reconciler(config, source)
    sched = scheduler.Scheduler(config, reconciler, source)
    sched.install_signal_handlers()
    logger.info("certproxy %s reconciling %s every %s", certproxy.__version__,
                config.domains_file, config.pass_interval)
    sched.run()
    return None


def format_status(domain: str, status: DomainStatus) -> str:
    """One human readable line describing status."""
    parts = [f"{domain}: {status.state.value}"]
    if status.expires_at is not None:
        parts.append(f"expires {status.expires_at.isoformat()}")
    if status.reason:
        parts.append(f"reason: {status.reason}")
    if status.retryable and status.next_attempt_at is not None:
        parts.append(f"retry after {status.next_attempt_at.isoformat()} "
                     f"(attempt {status.attempts})")
    return ", ".join(parts)


def status(config: configuration.NamespaceConfig) -> Optional[Union[str, int]]:
    """Print the last recorded status of every domain."""
    statuses = StatusStore(config.state_path).load()
    if not statuses:
        print("No domains have been reconciled yet.")
        return None
    for domain in sorted(statuses):
        print(format_status(domain, statuses[domain]))
    return None


def render(config: configuration.NamespaceConfig) -> Optional[Union[str, int]]:
    """Print the proxy configuration for the current declarations."""
    reconciler = _make_reconciler(config, _make_source(config))
    sys.stdout.write(reconciler.preview().text)
    return None


VERBS: dict[str, Callable[[configuration.NamespaceConfig], Optional[Union[str, int]]]] = {
    "run": run,
    "daemon": daemon,
    "status": status,
    "render": render,
}


def make_or_verify_needed_dirs(config: configuration.NamespaceConfig) -> None:
    """Create or verify existence of config and work directories."""
    for directory in (config.config_dir, config.work_dir):
        try:
            util.make_or_verify_dir(directory, constants.CONFIG_DIRS_MODE,
                                    config.strict_permissions)
        except OSError as error:
            raise errors.Error(util.PERM_ERR_FMT.format(error))


def main(cli_args: Optional[list[str]] = None) -> Optional[Union[str, int]]:
    """Run certproxy.

    :param cli_args: command line to certproxy, defaults to ``sys.argv[1:]``
    :type cli_args: `list` of `str`

    :returns: value for `sys.exit` about the exit status of certproxy
    :rtype: `str` or `int` or `None`

    """
    if cli_args is None:
        cli_args = sys.argv[1:]

    log.pre_arg_parse_setup()
    logger.debug("certproxy version: %s", certproxy.__version__)
    logger.debug("Arguments: %r", cli_args)

    # note: arg parser internally handles --help (and exits afterwards)
    args = cli.prepare_and_parse_args(cli_args)
    config = configuration.NamespaceConfig(args)

    log.post_arg_parse_setup(config)
    make_or_verify_needed_dirs(config)

    return VERBS[config.verb](config)
