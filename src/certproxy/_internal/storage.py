"""Certificate material storage.

Every issued certificate is written to a new numbered version directory
under ``archive/<domain>/`` and never modified afterwards. The current
version of a domain is selected by the symlink ``live/<domain>``, which is
replaced atomically, so the proxy configuration can keep referring to the
stable ``live/<domain>/fullchain.pem`` and ``live/<domain>/privkey.pem``
paths across renewals.

"""
import logging
import os
import re
import shutil
from typing import Iterable
from typing import Optional

from certproxy import configuration
from certproxy import crypto_util
from certproxy import errors
from certproxy import util
from certproxy._internal.obj import CertificateRecord

logger = logging.getLogger(__name__)

CERT = "cert.pem"
PRIVKEY = "privkey.pem"
CHAIN = "chain.pem"
FULLCHAIN = "fullchain.pem"
ALL_FOUR = (CERT, PRIVKEY, CHAIN, FULLCHAIN)
BASE_PRIVKEY_MODE = 0o600

_VERSION_RE = re.compile(r"^\d+$")


class CertificateStore:
    """Persists `.CertificateRecord` objects per domain.

    :ivar str live_dir: directory of per-domain symlinks
    :ivar str archive_dir: directory of per-domain version directories

    """
    def __init__(self, config: configuration.NamespaceConfig) -> None:
        self.live_dir = config.live_dir
        self.archive_dir = config.archive_dir
        for directory in (self.live_dir, self.archive_dir):
            util.make_or_verify_dir(directory, 0o700, config.strict_permissions)

    def live_path(self, domain: str) -> str:
        """Stable path of the current version directory of domain."""
        return os.path.join(self.live_dir, domain)

    def fullchain_path(self, domain: str) -> str:  # pylint: disable=missing-function-docstring
        return os.path.join(self.live_path(domain), FULLCHAIN)

    def privkey_path(self, domain: str) -> str:  # pylint: disable=missing-function-docstring
        return os.path.join(self.live_path(domain), PRIVKEY)

    def domains(self) -> list[str]:
        """Domains that currently have a live certificate, sorted."""
        try:
            names = os.listdir(self.live_dir)
        except FileNotFoundError:
            return []
        return sorted(name for name in names
                      if os.path.islink(os.path.join(self.live_dir, name)))

    def _versions(self, domain: str) -> list[int]:
        try:
            entries = os.listdir(os.path.join(self.archive_dir, domain))
        except FileNotFoundError:
            return []
        return sorted(int(entry) for entry in entries if _VERSION_RE.match(entry))

    def save(self, record: CertificateRecord) -> str:
        """Write record as the new current version of its domain.

        :param .CertificateRecord record: freshly issued certificate

        :returns: path of the archive version directory that was created
        :rtype: str

        :raises .errors.CertStorageError: if the files could not be written

        """
        domain_archive = os.path.join(self.archive_dir, record.domain)
        versions = self._versions(record.domain)
        version = versions[-1] + 1 if versions else 1
        version_dir = os.path.join(domain_archive, str(version))
        try:
            util.make_or_verify_dir(domain_archive, 0o700)
            os.mkdir(version_dir, 0o755)
            contents = {
                CERT: record.cert_pem,
                PRIVKEY: record.key_pem,
                CHAIN: record.chain_pem,
                FULLCHAIN: record.fullchain_pem,
            }
            for filename, data in contents.items():
                mode = BASE_PRIVKEY_MODE if filename == PRIVKEY else 0o644
                with util.safe_open(os.path.join(version_dir, filename), chmod=mode) as f:
                    f.write(data)
            self._point_live_to(record.domain, version_dir)
        except OSError as error:
            logger.debug("Exception was:", exc_info=True)
            shutil.rmtree(version_dir, ignore_errors=True)
            raise errors.CertStorageError(
                f"Unable to store certificate for {record.domain}: {error}")
        logger.debug("Saved certificate for %s as version %d", record.domain, version)
        return version_dir

    def _point_live_to(self, domain: str, version_dir: str) -> None:
        link = self.live_path(domain)
        target = os.path.relpath(version_dir, self.live_dir)
        tmp_link = link + ".new"
        util.safely_remove(tmp_link)
        os.symlink(target, tmp_link)
        # rename(2) replaces the old symlink atomically
        os.replace(tmp_link, link)

    def load(self, domain: str) -> Optional[CertificateRecord]:
        """Read the current record of domain.

        :returns: the record, or ``None`` if domain has no usable certificate
        :rtype: `.CertificateRecord` or `None`

        """
        live = self.live_path(domain)
        if not os.path.islink(live):
            return None
        try:
            with open(os.path.join(live, CERT)) as f:
                cert_pem = f.read()
            with open(os.path.join(live, PRIVKEY)) as f:
                key_pem = f.read()
            with open(os.path.join(live, CHAIN)) as f:
                chain_pem = f.read()
            return CertificateRecord(
                domain=domain,
                cert_pem=cert_pem,
                key_pem=key_pem,
                chain_pem=chain_pem,
                issued_at=crypto_util.notBefore(cert_pem),
                expires_at=crypto_util.notAfter(cert_pem),
                issuer=crypto_util.issuer(cert_pem),
            )
        except (OSError, errors.CertStorageError) as error:
            logger.error("Certificate files for %s are broken: %s. "
                         "A new certificate will be requested.", domain, error)
            logger.debug("Exception was:", exc_info=True)
            return None

    def load_all(self, domains: Iterable[str]) -> dict[str, CertificateRecord]:
        """Current records of every domain in domains that has one."""
        records = {}
        for domain in domains:
            record = self.load(domain)
            if record is not None:
                records[domain] = record
        return records

    def delete(self, domain: str) -> None:
        """Delete every certificate version of domain.

        Missing files are ignored.
        """
        live = self.live_path(domain)
        try:
            os.unlink(live)
            logger.debug("Removed %s", live)
        except FileNotFoundError:
            pass
        archive = os.path.join(self.archive_dir, domain)
        shutil.rmtree(archive, ignore_errors=True)
        logger.info("Deleted certificate material for %s", domain)
