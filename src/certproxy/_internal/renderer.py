"""Renders the reverse-proxy configuration for a set of declared domains."""
import datetime
import logging
import re
from typing import Any
from typing import Iterable
from typing import Mapping
from typing import Optional

from certproxy import configuration
from certproxy import crypto_util
from certproxy import errors
from certproxy import util
from certproxy._internal import constants
from certproxy._internal import nginxparser
from certproxy._internal import storage
from certproxy._internal.obj import CertificateRecord
from certproxy._internal.obj import DomainSpec
from certproxy._internal.obj import ProxyConfigArtifact

logger = logging.getLogger(__name__)

HEADER = " Managed by certproxy. Changes will be overwritten."

_TOKEN_RE = re.compile(r"^[A-Za-z0-9._:\[\]-]+$")


class ConfigRenderer:
    """Turns domain declarations and certificates into nginx configuration.

    Every domain gets a plain HTTP server on port 80. A domain with a
    valid certificate additionally gets a TLS server on port 443, and
    its plain server only redirects to it. A domain without one is
    proxied over plain HTTP until its certificate is issued.

    Unless the http-01 responder itself listens on port 80, every plain
    server forwards ACME challenge requests to it, so certificates can be
    issued and renewed while nginx holds port 80.

    :ivar config: certproxy configuration
    :ivar store: certificate store the TLS servers read their files from

    """
    def __init__(self, config: configuration.NamespaceConfig,
                 store: storage.CertificateStore) -> None:
        self.config = config
        self.store = store

    def render(self, specs: Iterable[DomainSpec], certs: Mapping[str, CertificateRecord],
               now: Optional[datetime.datetime] = None) -> ProxyConfigArtifact:
        """Render the configuration serving specs.

        The text is built completely in memory, and the same inputs always
        produce byte-identical output.

        :param specs: declared domains
        :param dict certs: current certificate of each domain that has one
        :param datetime.datetime now: time used to discard expired certificates

        :returns: the rendered configuration
        :rtype: `.ProxyConfigArtifact`

        :raises .errors.RenderError: if a declaration cannot be rendered

        """
        if now is None:
            now = util.now()
        ordered = sorted(specs, key=lambda spec: spec.domain)
        seen: set[str] = set()
        tree: list[Any] = [["#", HEADER]]
        tls_domains = []
        for spec in ordered:
            if spec.domain in seen:
                raise errors.RenderError(errors.RenderErrorKind.TEMPLATE_ERROR,
                                         f"{spec.domain} is declared more than once",
                                         domain=spec.domain)
            seen.add(spec.domain)
            check_spec(spec)
            cert = certs.get(spec.domain)
            if cert is not None and cert.is_expired(now):
                logger.warning("Certificate for %s expired on %s, serving it over plain HTTP",
                               spec.domain, cert.expires_at)
                cert = None
            tree.append(self._http_server(spec, tls=cert is not None))
            if cert is not None:
                tree.append(self._tls_server(spec, cert))
                tls_domains.append(spec.domain)

        if not nginxparser.roundtrips(tree):
            raise errors.RenderError(errors.RenderErrorKind.TEMPLATE_ERROR,
                                     "rendered configuration does not parse back")
        text = nginxparser.dumps(tree)
        return ProxyConfigArtifact(
            text=text,
            digest=crypto_util.sha256sum(text),
            domains=tuple(spec.domain for spec in ordered),
            tls_domains=tuple(tls_domains),
        )

    def _listen(self, port: int, *params: str) -> list[list[str]]:
        return [["listen", str(port), *params], ["listen", f"[::]:{port}", *params]]

    def _proxy_location(self, spec: DomainSpec) -> list[Any]:
        body: list[Any] = [["proxy_pass", f"http://{spec.upstream}"]]
        body.extend(["proxy_set_header", name, value]
                    for name, value in constants.PROXY_HEADERS)
        return [["location", "/"], body]

    def _http_server(self, spec: DomainSpec, tls: bool) -> list[Any]:
        body: list[Any] = self._listen(80)
        body.append(["server_name", spec.domain])
        if self.config.http01_port != 80:
            body.append([["location", constants.ACME_CHALLENGE_PATH],
                         [["proxy_pass", f"http://127.0.0.1:{self.config.http01_port}"],
                          ["proxy_set_header", "Host", "$host"]]])
        if tls:
            body.append([["location", "/"], [["return", "301", "https://$host$request_uri"]]])
        else:
            body.append(self._proxy_location(spec))
        return [["server"], body]

    def _tls_server(self, spec: DomainSpec, cert: CertificateRecord) -> list[Any]:
        # identifies the certificate, so that a renewal changes the digest
        body: list[Any] = [["#", " certificate {0} expires {1}".format(
            crypto_util.sha256sum(cert.cert_pem)[:16], cert.expires_at.isoformat())]]
        body.extend(self._listen(443, "ssl"))
        body.append(["server_name", spec.domain])
        body.append(["ssl_certificate", self.store.fullchain_path(spec.domain)])
        body.append(["ssl_certificate_key", self.store.privkey_path(spec.domain)])
        body.extend([directive, *value.split()] for directive, value in constants.SSL_OPTIONS)
        if self.config.hsts:
            body.append(["add_header", *constants.HSTS_ARGS])
        body.append(self._proxy_location(spec))
        return [["server"], body]


def check_spec(spec: DomainSpec) -> None:
    """Reject declarations that cannot be turned into server blocks.

    :raises .errors.RenderError: MissingBackend for an unusable backend,
        TemplateError for values that are not single nginx tokens

    """
    if not spec.backend_address:
        raise errors.RenderError(errors.RenderErrorKind.MISSING_BACKEND,
                                 f"{spec.domain} has no backend address", domain=spec.domain)
    if (not isinstance(spec.backend_port, int) or isinstance(spec.backend_port, bool)
            or not 0 < spec.backend_port < 65536):
        raise errors.RenderError(errors.RenderErrorKind.MISSING_BACKEND,
                                 f"{spec.domain} has an invalid backend port {spec.backend_port!r}",
                                 domain=spec.domain)
    for value in (spec.domain, spec.backend_address):
        if not _TOKEN_RE.match(value):
            raise errors.RenderError(errors.RenderErrorKind.TEMPLATE_ERROR,
                                     f"{value!r} cannot be used in the configuration of "
                                     f"{spec.domain}", domain=spec.domain)
