"""Tests for certproxy.configuration."""
import copy
import datetime
import os
import sys
from unittest import mock

import pytest

from certproxy import errors
from certproxy._internal import constants
from certproxy.configuration import NamespaceConfig
from certproxy.tests import util as test_util


class NamespaceConfigTest(test_util.ConfigTestCase):
    """Tests for certproxy.configuration.NamespaceConfig."""

    def test_invalid_http01_port(self):
        self.config.namespace.http01_port = 0
        with pytest.raises(errors.ConfigurationError):
            NamespaceConfig(self.config.namespace)

    def test_proxy_getattr(self):
        assert self.config.rsa_key_size == 2048
        assert self.config.nginx_ctl == "nginx"

    def test_server(self):
        assert self.config.server == "https://example.com/directory"
        self.config.namespace.staging = True
        assert self.config.server == constants.STAGING_URI

    def test_server_path(self):
        assert self.config.server_path == "example.com_directory"

    def test_dynamic_dirs(self):
        config_dir = os.path.join(self.tempdir, "config")
        work_dir = os.path.join(self.tempdir, "work")
        assert self.config.accounts_dir == os.path.join(
            config_dir, "accounts", "example.com_directory")
        assert self.config.live_dir == os.path.join(config_dir, "live")
        assert self.config.archive_dir == os.path.join(config_dir, "archive")
        assert self.config.locks_dir == os.path.join(work_dir, "locks")
        assert self.config.state_path == os.path.join(work_dir, "status.json")

    def test_nginx_side_files(self):
        conf = self.config.nginx_conf
        assert self.config.staging_conf == conf + ".staged"
        assert self.config.backup_conf == conf + ".previous"
        assert self.config.harness_conf == conf + ".harness"

    def test_absolute_paths(self):
        namespace = mock.MagicMock(**copy.deepcopy(constants.CLI_DEFAULTS))
        namespace.config_dir = "config"
        namespace.work_dir = "work"
        namespace.logs_dir = "logs"
        config = NamespaceConfig(namespace)
        assert os.path.isabs(config.config_dir)
        assert os.path.isabs(config.work_dir)
        assert os.path.isabs(config.logs_dir)

    def test_intervals(self):
        assert self.config.renewal_window == datetime.timedelta(days=30)
        assert self.config.pass_interval == datetime.timedelta(hours=12)

    def test_reload_command(self):
        assert self.config.reload_command == ["nginx", "-s", "reload"]
        self.config.namespace.reload_cmd = "systemctl reload nginx"
        assert self.config.reload_command == ["systemctl", "reload", "nginx"]

    def test_user_agent(self):
        from certproxy import __version__
        assert self.config.user_agent == f"certproxy/{__version__}"
        self.config.namespace.user_agent = "custom"
        assert self.config.user_agent == "custom"

    def _check(self, **changes):
        namespace = mock.MagicMock(**copy.deepcopy(constants.CLI_DEFAULTS))
        for name, value in changes.items():
            setattr(namespace, name, value)
        return NamespaceConfig(namespace)

    def test_sanity_checks(self):
        bad = [
            {"pref_challs": ["tls-alpn-01"]},
            {"pref_challs": []},
            {"pref_challs": ["dns-01"]},
            {"key_type": "dsa"},
            {"max_attempts": 0},
            {"max_workers": -1},
            {"renew_before": "whenever"},
            {"contact_email": "not an email"},
        ]
        for changes in bad:
            with pytest.raises(errors.ConfigurationError):
                self._check(**changes)

    def test_dns_with_hook(self):
        config = self._check(pref_challs=["dns-01", "http-01"], dns_auth_hook="publish")
        assert config.pref_challs == ["dns-01", "http-01"]


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
