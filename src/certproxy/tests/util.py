"""Test utilities."""
import copy
import datetime
import logging
import os
import shutil
import tempfile
import unittest
from typing import Optional
from unittest import mock

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.hazmat.primitives.serialization import NoEncryption
from cryptography.hazmat.primitives.serialization import PrivateFormat
from cryptography.x509.oid import NameOID

from certproxy import configuration
from certproxy import util
from certproxy._internal import constants
from certproxy._internal.obj import CertificateRecord
from certproxy._internal.obj import DomainSpec

# 2026-01-01T00:00:00Z, without microseconds so that it survives RFC 3339
NOW = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

CHAIN_SUBJECT = "test intermediate"


def make_cert(domain: str, not_before: datetime.datetime,
              not_after: datetime.datetime) -> tuple[str, str]:
    """Self-signed certificate for domain.

    :returns: certificate and private key in PEM form
    :rtype: tuple

    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    return cert.public_bytes(Encoding.PEM).decode("ascii"), key_pem.decode("ascii")


def make_record(domain: str, expires_in: datetime.timedelta,
                lifetime: datetime.timedelta = datetime.timedelta(days=90),
                now: datetime.datetime = NOW) -> CertificateRecord:
    """Certificate record for domain expiring expires_in after now."""
    not_after = now + expires_in
    not_before = not_after - lifetime
    cert_pem, key_pem = make_cert(domain, not_before, not_after)
    chain_pem, _ = make_cert(CHAIN_SUBJECT, not_before, not_after + lifetime)
    return CertificateRecord(
        domain=domain,
        cert_pem=cert_pem,
        key_pem=key_pem,
        chain_pem=chain_pem,
        issued_at=not_before,
        expires_at=not_after,
        issuer=f"CN={domain}",
    )


def make_spec(domain: str = "example.com", address: str = "127.0.0.1", port: int = 8080,
              email: Optional[str] = "admin@example.com") -> DomainSpec:
    """Declaration of domain proxied to address:port."""
    return DomainSpec(domain=domain, backend_address=address, backend_port=port,
                      contact_email=email)


class TempDirTestCase(unittest.TestCase):
    """Base test class which sets up and tears down a temporary directory"""

    def setUp(self) -> None:
        """Execute before test"""
        self.tempdir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        """Execute after test"""
        logging.shutdown()
        # Remove logging handlers that have been closed so they won't be
        # accidentally used in future tests.
        logging.getLogger().handlers = []
        shutil.rmtree(self.tempdir)


class ConfigTestCase(TempDirTestCase):
    """Test class which sets up a NamespaceConfig object."""
    def setUp(self) -> None:
        super().setUp()
        self.config = configuration.NamespaceConfig(
            mock.MagicMock(**copy.deepcopy(constants.CLI_DEFAULTS))
        )
        self.config.namespace.config_dir = os.path.join(self.tempdir, 'config')
        self.config.namespace.work_dir = os.path.join(self.tempdir, 'work')
        self.config.namespace.logs_dir = os.path.join(self.tempdir, 'logs')
        self.config.namespace.nginx_conf = os.path.join(self.tempdir, 'nginx', 'certproxy.conf')
        self.config.namespace.domains_file = os.path.join(self.tempdir, 'domains.conf')
        self.config.namespace.nginx_pid_file = None
        self.config.namespace.server = "https://example.com/directory"
        for directory in (self.config.config_dir, self.config.work_dir):
            util.make_or_verify_dir(directory)
