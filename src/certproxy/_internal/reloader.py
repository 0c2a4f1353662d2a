"""Validation and application of proxy configuration to a running nginx.

`ReloadCoordinator` is the only writer of the live configuration file.
"""
import logging
import os
import shutil
import threading
import time
from typing import Optional

import requests

from certproxy import configuration
from certproxy import crypto_util
from certproxy import errors
from certproxy import util
from certproxy._internal import constants
from certproxy._internal import lock
from certproxy._internal.obj import ProxyConfigArtifact

logger = logging.getLogger(__name__)

HEALTH_POLL_INTERVAL = 0.5
"""Seconds between two health probes."""

HEALTH_REQUEST_TIMEOUT = 2
"""Timeout of a single ``--health-url`` request, in seconds."""

HEALTH_MIN_REQUEST_TIMEOUT = 0.1
"""Timeout of a health request made when the wait is already over."""

HARNESS_TEMPLATE = """\
events {{}}
http {{
    include {staged};
}}
"""


class NginxController:
    """Narrow interface to the nginx binary and its running master process.

    :ivar config: certproxy configuration

    """
    def __init__(self, config: configuration.NamespaceConfig) -> None:
        self.config = config

    def config_test(self, main_conf: str) -> None:
        """Check the configuration for errors.

        :param str main_conf: nginx main configuration file to test

        :raises .errors.ReloadError: InvalidConfig if nginx rejects it

        """
        if not util.exe_exists(self.config.nginx_ctl):
            raise errors.ReloadError(
                errors.ReloadErrorKind.INVALID_CONFIG,
                f"Cannot find an nginx executable at {self.config.nginx_ctl}; "
                "set --nginx-ctl to its path")
        try:
            util.run_script([self.config.nginx_ctl, "-c", main_conf, "-t"], log=logger.debug)
        except errors.SubprocessError as err:
            raise errors.ReloadError(errors.ReloadErrorKind.INVALID_CONFIG, str(err))

    def reload(self) -> None:
        """Ask the running nginx to gracefully reload its configuration.

        :raises .errors.ReloadError: ReloadSignalFailed if the process
            could not be signalled

        """
        try:
            util.run_script(self.config.reload_command, log=logger.debug)
        except errors.SubprocessError as err:
            raise errors.ReloadError(errors.ReloadErrorKind.RELOAD_SIGNAL_FAILED, str(err))

    def _master_alive(self) -> bool:
        pid_file = self.config.nginx_pid_file
        if not pid_file:
            return True
        try:
            with open(pid_file) as f:
                pid = int(f.read().strip())
        except (OSError, ValueError):
            logger.debug("No usable nginx pid in %s", pid_file)
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            logger.debug("nginx master process %d is gone", pid)
            return False
        except PermissionError:
            pass
        return True

    def _url_healthy(self, timeout: float) -> bool:
        url = self.config.health_url
        if not url:
            return True
        try:
            response = requests.get(url, timeout=timeout, allow_redirects=False)
        except requests.exceptions.RequestException as err:
            logger.debug("Health probe of %s failed: %s", url, err)
            return False
        return response.status_code < 500

    def is_healthy(self, timeout: float = HEALTH_REQUEST_TIMEOUT) -> bool:
        """Is nginx running and, if configured, answering the health URL?

        :param float timeout: seconds to wait for the health URL to answer

        """
        return self._master_alive() and self._url_healthy(timeout)

    def wait_healthy(self, timeout: float) -> bool:
        """Probe health until it succeeds or timeout seconds have passed.

        :returns: whether nginx was found healthy in time
        :rtype: bool

        """
        deadline = time.monotonic() + timeout
        while True:
            request_timeout = min(HEALTH_REQUEST_TIMEOUT,
                                  max(deadline - time.monotonic(), HEALTH_MIN_REQUEST_TIMEOUT))
            if self.is_healthy(request_timeout):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(HEALTH_POLL_INTERVAL, remaining))


class ReloadCoordinator:
    """Applies rendered artifacts to the live proxy configuration.

    Artifacts are staged next to the live file and checked with the
    proxy's own validator before the live file is replaced with a rename.
    A reload that leaves the proxy unhealthy is reverted.

    Applications are serialized: a caller arriving while another artifact
    is being applied waits for it to finish.

    :ivar config: certproxy configuration
    :ivar controller: nginx boundary

    """
    def __init__(self, config: configuration.NamespaceConfig,
                 controller: Optional[NginxController] = None) -> None:
        self.config = config
        self.controller = controller if controller is not None else NginxController(config)
        self._lock = threading.Lock()
        # The live file holds configuration nginx has not loaded yet.
        self._reload_pending = False
        util.make_or_verify_dir(config.locks_dir, 0o700)
        util.make_or_verify_dir(os.path.dirname(os.path.abspath(config.nginx_conf)))

    def live_digest(self) -> Optional[str]:
        """Digest of the live configuration file, ``None`` if there is none."""
        try:
            with open(self.config.nginx_conf) as f:
                return crypto_util.sha256sum(f.read())
        except FileNotFoundError:
            return None

    def apply(self, artifact: ProxyConfigArtifact) -> bool:
        """Make artifact the configuration of the running proxy.

        :param .ProxyConfigArtifact artifact: rendered configuration

        :returns: ``False`` if the proxy already runs artifact, else ``True``
        :rtype: bool

        :raises .errors.ReloadError: if artifact could not be applied; the
            live file then holds the previous configuration, except after
            a failed reload signal with the proxy still healthy
        :raises .errors.LockError: if another process is applying

        """
        with self._lock:
            apply_lock = lock.LockFile(
                os.path.join(self.config.locks_dir, constants.APPLY_LOCK))
            try:
                return self._apply(artifact)
            finally:
                apply_lock.release()

    def _apply(self, artifact: ProxyConfigArtifact) -> bool:
        try:
            live_digest = self.live_digest()
        except OSError as err:
            raise errors.ReloadError(errors.ReloadErrorKind.INVALID_CONFIG,
                                     f"Unable to read {self.config.nginx_conf}: {err}")
        if live_digest == artifact.digest:
            if not self._reload_pending:
                logger.debug("Proxy configuration %s is already live", artifact.digest[:12])
                return False
            logger.info("Retrying the reload of proxy configuration %s", artifact.digest[:12])
        else:
            self._validate(artifact)
            self._swap()
        self._reload_and_verify(artifact)
        return True

    def _validate(self, artifact: ProxyConfigArtifact) -> None:
        """Stage artifact and run the proxy's validator against it."""
        staged = self.config.staging_conf
        harness = self.config.harness_conf
        try:
            util.atomic_write(staged, artifact.text)
            util.atomic_write(harness, HARNESS_TEMPLATE.format(staged=staged))
            self.controller.config_test(harness)
        except OSError as err:
            _discard(staged)
            logger.error("Unable to stage proxy configuration %s: %s", artifact.digest[:12], err)
            raise errors.ReloadError(errors.ReloadErrorKind.INVALID_CONFIG,
                                     f"Unable to stage the configuration in {staged}: {err}")
        except errors.ReloadError as err:
            _discard(staged)
            logger.error("Rejected proxy configuration %s: %s", artifact.digest[:12], err.detail)
            raise
        finally:
            _discard(harness)
        logger.debug("Staged proxy configuration %s passed validation", artifact.digest[:12])

    def _swap(self) -> None:
        """Replace the live file with the staged one, keeping a backup.

        :raises .errors.ReloadError: InvalidConfig if the files could not be
            moved; the live file is then unchanged

        """
        live = self.config.nginx_conf
        backup = self.config.backup_conf
        try:
            if os.path.exists(live):
                shutil.copy2(live, backup)
            else:
                util.safely_remove(backup)
            os.replace(self.config.staging_conf, live)
        except OSError as err:
            _discard(self.config.staging_conf, backup)
            logger.error("Unable to install the staged configuration as %s: %s", live, err)
            raise errors.ReloadError(errors.ReloadErrorKind.INVALID_CONFIG,
                                     f"Unable to replace {live}: {err}")

    def _revert(self) -> None:
        """Put the configuration from before the last swap back in place."""
        live = self.config.nginx_conf
        backup = self.config.backup_conf
        try:
            if os.path.exists(backup):
                os.replace(backup, live)
                logger.warning("Restored the previous proxy configuration to %s", live)
            else:
                util.safely_remove(live)
                logger.warning("Removed %s, which did not exist before", live)
        except OSError as err:
            logger.critical("Unable to restore the previous proxy configuration to %s: %s",
                            live, err)
        self._reload_pending = False
        try:
            self.controller.reload()
        except errors.ReloadError as err:
            logger.error("Reloading the restored configuration failed: %s", err)

    def _reload_and_verify(self, artifact: ProxyConfigArtifact) -> None:
        timeout = self.config.health_timeout
        try:
            self.controller.reload()
        except errors.ReloadError as err:
            if self.controller.wait_healthy(timeout):
                self._reload_pending = True
                logger.error("Could not signal the proxy to reload; configuration %s "
                             "is in place but not running: %s", artifact.digest[:12], err.detail)
            else:
                logger.error("Could not signal the proxy to reload and it is not healthy: %s",
                             err.detail)
                self._revert()
            raise

        if not self.controller.wait_healthy(timeout):
            logger.error("Proxy did not become healthy within %s seconds after loading "
                         "configuration %s", timeout, artifact.digest[:12])
            self._revert()
            raise errors.ReloadError(
                errors.ReloadErrorKind.HEALTH_CHECK_FAILED,
                f"proxy unhealthy {timeout} seconds after reload; previous configuration restored")

        self._reload_pending = False
        _discard(self.config.backup_conf)
        logger.info("Proxy is running configuration %s", artifact.digest[:12])


def _discard(*paths: str) -> None:
    """Remove leftover files, logging the ones that cannot be removed."""
    for path in paths:
        try:
            util.safely_remove(path)
        except OSError as err:
            logger.warning("Unable to remove %s: %s", path, err)
