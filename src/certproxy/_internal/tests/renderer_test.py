"""Tests for certproxy._internal.renderer."""
import datetime
import sys

import pytest

from certproxy import crypto_util
from certproxy import errors
from certproxy._internal import nginxparser
from certproxy.tests import util as test_util


class ConfigRendererTest(test_util.ConfigTestCase):
    """Tests for certproxy._internal.renderer.ConfigRenderer."""

    def setUp(self):
        super().setUp()
        from certproxy._internal.renderer import ConfigRenderer
        from certproxy._internal.storage import CertificateStore
        self.store = CertificateStore(self.config)
        self.renderer = ConfigRenderer(self.config, self.store)
        self.com = test_util.make_spec("example.com", "127.0.0.1", 8080)
        self.org = test_util.make_spec("example.org", "::1", 9000)
        self.com_cert = test_util.make_record("example.com", datetime.timedelta(days=60))

    def _render(self, specs, certs=None):
        return self.renderer.render(specs, certs or {}, test_util.NOW)

    def _servers(self, artifact):
        return [entry for entry in nginxparser.loads(artifact.text)
                if nginxparser.is_block(entry)]

    def test_deterministic(self):
        first = self._render([self.com, self.org], {"example.com": self.com_cert})
        second = self._render([self.org, self.com], {"example.com": self.com_cert})
        assert first == second
        assert first.digest == crypto_util.sha256sum(first.text)
        assert first.domains == ("example.com", "example.org")
        assert first.tls_domains == ("example.com",)

    def test_stub_without_certificate(self):
        artifact = self._render([self.org])
        servers = self._servers(artifact)
        assert len(servers) == 1
        body = servers[0][1]
        assert ["listen", "80"] in body
        assert ["listen", "[::]:80"] in body
        assert ["server_name", "example.org"] in body
        location = [entry for entry in body if entry[0] == ["location", "/"]][0]
        assert ["proxy_pass", "http://[::1]:9000"] in location[1]
        assert "ssl_certificate" not in artifact.text

    def test_tls_with_certificate(self):
        artifact = self._render([self.com], {"example.com": self.com_cert})
        plain, tls = self._servers(artifact)
        redirect = [entry for entry in plain[1] if entry[0] == ["location", "/"]][0]
        assert redirect[1] == [["return", "301", "https://$host$request_uri"]]

        body = tls[1]
        assert ["listen", "443", "ssl"] in body
        assert ["ssl_certificate", self.store.fullchain_path("example.com")] in body
        assert ["ssl_certificate_key", self.store.privkey_path("example.com")] in body
        assert ["ssl_protocols", "TLSv1.2", "TLSv1.3"] in body
        assert ["add_header", "Strict-Transport-Security", '"max-age=31536000"',
                "always"] in body
        location = [entry for entry in body if entry[0] == ["location", "/"]][0]
        assert ["proxy_pass", "http://127.0.0.1:8080"] in location[1]
        assert ["proxy_set_header", "X-Forwarded-Proto", "$scheme"] in location[1]

    def test_no_hsts(self):
        self.config.namespace.hsts = False
        artifact = self._render([self.com], {"example.com": self.com_cert})
        assert "Strict-Transport-Security" not in artifact.text

    def test_renewed_certificate_changes_digest(self):
        renewed = test_util.make_record("example.com", datetime.timedelta(days=89))
        before = self._render([self.com], {"example.com": self.com_cert})
        after = self._render([self.com], {"example.com": renewed})
        assert before.digest != after.digest

    def test_expired_certificate_is_not_served(self):
        expired = test_util.make_record("example.com", datetime.timedelta(days=-1))
        artifact = self._render([self.com], {"example.com": expired})
        assert artifact.tls_domains == ()
        assert len(self._servers(artifact)) == 1

    def test_challenge_forwarding(self):
        artifact = self._render([self.com, self.org], {"example.com": self.com_cert})
        redirect, _, stub = self._servers(artifact)
        for body in (redirect[1], stub[1]):
            acme = [entry for entry in body
                    if entry[0] == ["location", "/.well-known/acme-challenge/"]][0]
            assert ["proxy_pass", "http://127.0.0.1:8402"] in acme[1]

        self.config.namespace.http01_port = 80
        assert "acme-challenge" not in self._render([self.org]).text

    def test_empty(self):
        artifact = self._render([])
        assert artifact.domains == ()
        assert artifact.text.startswith("# Managed by certproxy")

    def test_missing_backend(self):
        broken = test_util.make_spec("example.net", "", 8080)
        with pytest.raises(errors.RenderError) as exc_info:
            self._render([self.com, broken])
        assert exc_info.value.kind is errors.RenderErrorKind.MISSING_BACKEND
        assert exc_info.value.domain == "example.net"

    def test_duplicate_domain(self):
        with pytest.raises(errors.RenderError) as exc_info:
            self._render([self.com, self.com])
        assert exc_info.value.kind is errors.RenderErrorKind.TEMPLATE_ERROR
        assert exc_info.value.domain == "example.com"


class CheckSpecTest(test_util.TempDirTestCase):
    """Tests for certproxy._internal.renderer.check_spec."""

    @classmethod
    def _call(cls, spec):
        from certproxy._internal.renderer import check_spec
        check_spec(spec)

    def test_valid(self):
        self._call(test_util.make_spec())
        self._call(test_util.make_spec(address="backend.internal", port=65535))

    def test_bad_port(self):
        for port in (0, 65536, -1, True, "8080"):
            with pytest.raises(errors.RenderError) as exc_info:
                self._call(test_util.make_spec(port=port))
            assert exc_info.value.kind is errors.RenderErrorKind.MISSING_BACKEND

    def test_untemplatable_values(self):
        for address in ("127.0.0.1; evil", "a b", "host{"):
            with pytest.raises(errors.RenderError) as exc_info:
                self._call(test_util.make_spec(address=address))
            assert exc_info.value.kind is errors.RenderErrorKind.TEMPLATE_ERROR


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
