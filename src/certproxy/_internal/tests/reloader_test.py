"""Tests for certproxy._internal.reloader."""
import errno
import os
import socket
import sys
import threading
import time
from unittest import mock

import pytest
import requests

from certproxy import crypto_util
from certproxy import errors
from certproxy._internal.obj import ProxyConfigArtifact
from certproxy.tests import util as test_util


def _artifact(text):
    return ProxyConfigArtifact(text=text, digest=crypto_util.sha256sum(text),
                               domains=("example.com",), tls_domains=())


OLD = _artifact("# old\n")
NEW = _artifact("# new\n")


class FakeClock:
    """Stands in for the time module; sleeping advances the clock."""

    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class NginxControllerTest(test_util.ConfigTestCase):
    """Tests for certproxy._internal.reloader.NginxController."""

    def setUp(self):
        super().setUp()
        from certproxy._internal.reloader import NginxController
        self.controller = NginxController(self.config)

    @mock.patch("certproxy._internal.reloader.util.exe_exists", return_value=True)
    @mock.patch("certproxy._internal.reloader.util.run_script")
    def test_config_test(self, mock_run, unused_exists):
        self.controller.config_test("/tmp/harness.conf")
        mock_run.assert_called_once_with(["nginx", "-c", "/tmp/harness.conf", "-t"],
                                         log=mock.ANY)
        mock_run.side_effect = errors.SubprocessError("emerg")
        with pytest.raises(errors.ReloadError) as exc_info:
            self.controller.config_test("/tmp/harness.conf")
        assert exc_info.value.kind is errors.ReloadErrorKind.INVALID_CONFIG

    @mock.patch("certproxy._internal.reloader.util.exe_exists", return_value=False)
    def test_config_test_without_nginx(self, unused_exists):
        with pytest.raises(errors.ReloadError) as exc_info:
            self.controller.config_test("/tmp/harness.conf")
        assert exc_info.value.kind is errors.ReloadErrorKind.INVALID_CONFIG

    @mock.patch("certproxy._internal.reloader.util.run_script")
    def test_reload(self, mock_run):
        self.controller.reload()
        mock_run.assert_called_once_with(["nginx", "-s", "reload"], log=mock.ANY)
        mock_run.side_effect = errors.SubprocessError("no pid")
        with pytest.raises(errors.ReloadError) as exc_info:
            self.controller.reload()
        assert exc_info.value.kind is errors.ReloadErrorKind.RELOAD_SIGNAL_FAILED

    def test_master_alive(self):
        pid_file = os.path.join(self.tempdir, "nginx.pid")
        self.config.namespace.nginx_pid_file = pid_file
        assert not self.controller.is_healthy()
        with open(pid_file, "w") as f:
            f.write(f"{os.getpid()}\n")
        assert self.controller.is_healthy()
        with mock.patch("certproxy._internal.reloader.os.kill") as mock_kill:
            mock_kill.side_effect = ProcessLookupError
            assert not self.controller.is_healthy()
            mock_kill.side_effect = PermissionError
            assert self.controller.is_healthy()

    @mock.patch("certproxy._internal.reloader.requests.get")
    def test_health_url(self, mock_get):
        self.config.namespace.health_url = "http://127.0.0.1/healthz"
        mock_get.return_value = mock.MagicMock(status_code=404)
        assert self.controller.is_healthy()
        mock_get.return_value = mock.MagicMock(status_code=502)
        assert not self.controller.is_healthy()
        mock_get.side_effect = requests.exceptions.ConnectionError
        assert not self.controller.is_healthy()

    def _fake_clock(self):
        clock = FakeClock()
        patcher = mock.patch("certproxy._internal.reloader.time", new=clock)
        patcher.start()
        self.addCleanup(patcher.stop)
        return clock

    def test_wait_healthy(self):
        clock = self._fake_clock()
        with mock.patch.object(self.controller, "is_healthy") as mock_healthy:
            mock_healthy.side_effect = [False, False, True]
            assert self.controller.wait_healthy(10)
            assert mock_healthy.call_count == 3
            assert clock.now == 1.0

            clock.now = 0.0
            mock_healthy.reset_mock(side_effect=True)
            mock_healthy.return_value = False
            assert not self.controller.wait_healthy(2)
            assert mock_healthy.call_count == 5
            assert clock.now == 2.0

    @mock.patch("certproxy._internal.reloader.requests.get")
    def test_wait_healthy_bounds_slow_requests(self, mock_get):
        clock = self._fake_clock()
        timeouts = []

        def hang(url, timeout, allow_redirects):
            timeouts.append(timeout)
            clock.now += timeout
            raise requests.exceptions.ReadTimeout(url)
        mock_get.side_effect = hang
        self.config.namespace.health_url = "http://127.0.0.1/healthz"

        assert not self.controller.wait_healthy(3)
        assert timeouts == [2, 0.5]
        assert clock.now == 3.0

    def test_wait_healthy_with_unresponsive_url(self):
        server = socket.socket()
        self.addCleanup(server.close)
        server.bind(("127.0.0.1", 0))
        server.listen(5)
        self.config.namespace.health_url = "http://127.0.0.1:{0}/".format(
            server.getsockname()[1])

        start = time.monotonic()
        assert not self.controller.wait_healthy(1)
        assert time.monotonic() - start < 1.5


class ReloadCoordinatorTest(test_util.ConfigTestCase):
    """Tests for certproxy._internal.reloader.ReloadCoordinator."""

    def setUp(self):
        super().setUp()
        from certproxy._internal.reloader import ReloadCoordinator
        self.controller = mock.MagicMock()
        self.controller.wait_healthy.return_value = True
        self.coordinator = ReloadCoordinator(self.config, self.controller)
        self.live = self.config.nginx_conf

    def _write_live(self, artifact):
        with open(self.live, "w") as f:
            f.write(artifact.text)

    def _read_live(self):
        with open(self.live) as f:
            return f.read()

    def _side_files(self):
        return [path for path in (self.config.staging_conf, self.config.backup_conf,
                                  self.config.harness_conf) if os.path.exists(path)]

    def test_first_apply(self):
        assert self.coordinator.live_digest() is None
        assert self.coordinator.apply(NEW)
        assert self._read_live() == NEW.text
        assert self.coordinator.live_digest() == NEW.digest
        self.controller.config_test.assert_called_once_with(self.config.harness_conf)
        self.controller.reload.assert_called_once_with()
        assert self._side_files() == []

    def test_harness_includes_staged_file(self):
        def check(harness):
            with open(harness) as f:
                assert f"include {self.config.staging_conf};" in f.read()
            with open(self.config.staging_conf) as f:
                assert f.read() == NEW.text
        self.controller.config_test.side_effect = check
        self.coordinator.apply(NEW)

    def test_unchanged_is_noop(self):
        self._write_live(NEW)
        assert not self.coordinator.apply(NEW)
        self.controller.config_test.assert_not_called()
        self.controller.reload.assert_not_called()

    def test_invalid_config_leaves_live_untouched(self):
        self._write_live(OLD)
        self.controller.config_test.side_effect = errors.ReloadError(
            errors.ReloadErrorKind.INVALID_CONFIG, "unknown directive")
        with pytest.raises(errors.ReloadError) as exc_info:
            self.coordinator.apply(NEW)
        assert exc_info.value.kind is errors.ReloadErrorKind.INVALID_CONFIG
        assert self._read_live() == OLD.text
        self.controller.reload.assert_not_called()
        assert self._side_files() == []

    def test_disk_full_while_staging(self):
        self._write_live(OLD)
        with mock.patch("certproxy._internal.reloader.util.atomic_write") as mock_write:
            mock_write.side_effect = OSError(errno.ENOSPC, "No space left on device")
            with pytest.raises(errors.ReloadError) as exc_info:
                self.coordinator.apply(NEW)
        assert exc_info.value.kind is errors.ReloadErrorKind.INVALID_CONFIG
        assert "No space left" in str(exc_info.value)
        assert self._read_live() == OLD.text
        self.controller.config_test.assert_not_called()
        self.controller.reload.assert_not_called()
        assert self._side_files() == []

    def test_failed_swap_leaves_live_untouched(self):
        self._write_live(OLD)
        with mock.patch("certproxy._internal.reloader.shutil.copy2") as mock_copy:
            mock_copy.side_effect = OSError(errno.EACCES, "Permission denied")
            with pytest.raises(errors.ReloadError) as exc_info:
                self.coordinator.apply(NEW)
        assert exc_info.value.kind is errors.ReloadErrorKind.INVALID_CONFIG
        assert self._read_live() == OLD.text
        self.controller.reload.assert_not_called()
        assert self._side_files() == []

    def test_unhealthy_after_reload_is_reverted(self):
        self._write_live(OLD)
        self.controller.wait_healthy.return_value = False
        with pytest.raises(errors.ReloadError) as exc_info:
            self.coordinator.apply(NEW)
        assert exc_info.value.kind is errors.ReloadErrorKind.HEALTH_CHECK_FAILED
        assert self._read_live() == OLD.text
        # once for the new configuration, once for the restored one
        assert self.controller.reload.call_count == 2
        assert self._side_files() == []

    def test_unhealthy_first_apply_removes_live(self):
        self.controller.wait_healthy.return_value = False
        with pytest.raises(errors.ReloadError):
            self.coordinator.apply(NEW)
        assert not os.path.exists(self.live)

    def test_signal_failure_while_unhealthy_is_reverted(self):
        self._write_live(OLD)
        self.controller.reload.side_effect = errors.ReloadError(
            errors.ReloadErrorKind.RELOAD_SIGNAL_FAILED, "no such process")
        self.controller.wait_healthy.return_value = False
        with pytest.raises(errors.ReloadError) as exc_info:
            self.coordinator.apply(NEW)
        assert exc_info.value.kind is errors.ReloadErrorKind.RELOAD_SIGNAL_FAILED
        assert self._read_live() == OLD.text

    def test_signal_failure_while_healthy_is_retried(self):
        self._write_live(OLD)
        self.controller.reload.side_effect = errors.ReloadError(
            errors.ReloadErrorKind.RELOAD_SIGNAL_FAILED, "permission denied")
        with pytest.raises(errors.ReloadError):
            self.coordinator.apply(NEW)
        assert self._read_live() == NEW.text

        self.controller.reload.side_effect = None
        self.controller.config_test.reset_mock()
        assert self.coordinator.apply(NEW)
        self.controller.config_test.assert_not_called()
        assert self.controller.reload.call_count == 2
        assert not self.coordinator.apply(NEW)

    def test_concurrent_applies_are_serialized(self):
        active = []
        overlaps = []

        def config_test(unused_harness):
            active.append(1)
            if len(active) > 1:
                overlaps.append(1)  # pragma: no cover
            threading.Event().wait(0.01)
            active.pop()
        self.controller.config_test.side_effect = config_test

        artifacts = [_artifact(f"# {i}\n") for i in range(8)]
        threads = [threading.Thread(target=self.coordinator.apply, args=(artifact,))
                   for artifact in artifacts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        assert overlaps == []
        assert self.controller.config_test.call_count == 8
        assert self._read_live() in [artifact.text for artifact in artifacts]
        assert self._side_files() == []

    @mock.patch("certproxy._internal.reloader.lock.LockFile")
    def test_other_process_applying(self, mock_lock):
        mock_lock.side_effect = errors.LockError("locked")
        with pytest.raises(errors.LockError):
            self.coordinator.apply(NEW)
        assert not os.path.exists(self.live)
        self.controller.config_test.assert_not_called()


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
