"""ACME accounts, one per contact email."""
import datetime
import hashlib
import logging
import os
import socket
from typing import Any
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import josepy as jose
import pyrfc3339

from acme import client
from acme import fields as acme_fields
from acme import messages
from certproxy import configuration
from certproxy import errors
from certproxy import util

logger = logging.getLogger(__name__)

ACCOUNT_KEY_BITS = 2048
NO_EMAIL = "default"
"""Directory name of the account used by declarations without a contact email."""


class Account:
    """ACME protocol registration.

    :ivar .RegistrationResource regr: Registration Resource
    :ivar .JWK key: Authorized Account Key
    :ivar .Meta: Account metadata
    :ivar str id: Globally unique account identifier.

    """

    class Meta(jose.JSONObjectWithFields):
        """Account metadata

        :ivar datetime.datetime creation_dt: Creation date and time (UTC).
        :ivar str creation_host: FQDN of host, where account has been created.

        """
        creation_dt: datetime.datetime = acme_fields.rfc3339("creation_dt")
        creation_host: str = jose.field("creation_host")

    def __init__(self, regr: messages.RegistrationResource, key: jose.JWK,
                 meta: Optional['Meta'] = None) -> None:
        self.key = key
        self.regr = regr
        self.meta = self.Meta(
            # pyrfc3339 drops microseconds, make sure __eq__ is sane
            creation_dt=datetime.datetime.now(tz=datetime.timezone.utc).replace(microsecond=0),
            creation_host=socket.gethostname()) if meta is None else meta

        hasher = hashlib.md5(usedforsecurity=False)
        hasher.update(self.key.key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo)
        )
        self.id = hasher.hexdigest()

    @property
    def slug(self) -> str:
        """Short account identification string, useful for logs."""
        return "{1}@{0} ({2})".format(pyrfc3339.generate(
            self.meta.creation_dt), self.meta.creation_host, self.id[:4])

    def __repr__(self) -> str:
        return "<{0}({1}, {2}, {3})>".format(
            self.__class__.__name__, self.regr, self.id, self.meta)

    def __eq__(self, other: Any) -> bool:
        return (isinstance(other, self.__class__) and
                self.key == other.key and self.regr == other.regr and
                self.meta == other.meta)


class AccountFileStorage:
    """Accounts file storage, keyed by contact email.

    :ivar certproxy.configuration.NamespaceConfig config: Client configuration

    """
    def __init__(self, config: configuration.NamespaceConfig) -> None:
        self.config = config
        util.make_or_verify_dir(config.accounts_dir, 0o700, self.config.strict_permissions)

    def _account_dir_path(self, email: Optional[str]) -> str:
        return os.path.join(self.config.accounts_dir, email or NO_EMAIL)

    @classmethod
    def _regr_path(cls, account_dir_path: str) -> str:
        return os.path.join(account_dir_path, "regr.json")

    @classmethod
    def _key_path(cls, account_dir_path: str) -> str:
        return os.path.join(account_dir_path, "private_key.json")

    @classmethod
    def _metadata_path(cls, account_dir_path: str) -> str:
        return os.path.join(account_dir_path, "meta.json")

    def load(self, email: Optional[str]) -> Optional[Account]:
        """Load the account registered for email.

        :returns: the account, or ``None`` if none was saved yet
        :raises .errors.AccountStorageError: if the saved files are unreadable

        """
        account_dir_path = self._account_dir_path(email)
        if not os.path.isdir(account_dir_path):
            return None
        try:
            with open(self._regr_path(account_dir_path)) as regr_file:
                regr = messages.RegistrationResource.json_loads(regr_file.read())
            with open(self._key_path(account_dir_path)) as key_file:
                key = jose.JWK.json_loads(key_file.read())
            with open(self._metadata_path(account_dir_path)) as metadata_file:
                meta = Account.Meta.json_loads(metadata_file.read())
        except (OSError, ValueError, jose.DeserializationError) as error:
            raise errors.AccountStorageError(error)
        return Account(regr, key, meta)

    def save(self, account: Account, email: Optional[str]) -> None:
        """Persist a newly registered account.

        :param Account account: account to persist
        :param str email: contact email the account was registered with

        """
        account_dir_path = self._account_dir_path(email)
        try:
            util.make_or_verify_dir(account_dir_path, 0o700, self.config.strict_permissions)
            with util.safe_open(self._key_path(account_dir_path), "w", chmod=0o400) as key_file:
                key_file.write(account.key.json_dumps())
            with open(self._metadata_path(account_dir_path), "w") as metadata_file:
                metadata_file.write(account.meta.json_dumps())
            with open(self._regr_path(account_dir_path), "w") as regr_file:
                regr = messages.RegistrationResource(
                    body={},
                    uri=account.regr.uri)
                regr_file.write(regr.json_dumps())
        except OSError as error:
            raise errors.AccountStorageError(error)


def client_for(config: configuration.NamespaceConfig, storage: AccountFileStorage,
               email: Optional[str]) -> client.ClientV2:
    """Build an ACME client authenticated with the account of email.

    The account is registered, agreeing to the terms of service, the
    first time email is seen, and reused on every later call.

    :raises .errors.AccountStorageError: if the account cannot be read or saved
    :raises acme.errors.Error: on ACME protocol failures

    """
    acc = storage.load(email)
    if acc is not None:
        net = client.ClientNetwork(acc.key, account=acc.regr, user_agent=config.user_agent)
        directory = client.ClientV2.get_directory(config.server, net)
        logger.debug("Using account %s for %s", acc.slug, email or NO_EMAIL)
        return client.ClientV2(directory, net)

    key = jose.JWKRSA(key=rsa.generate_private_key(
        public_exponent=65537, key_size=ACCOUNT_KEY_BITS))
    net = client.ClientNetwork(key, user_agent=config.user_agent)
    directory = client.ClientV2.get_directory(config.server, net)
    acme = client.ClientV2(directory, net)
    if email:
        new_reg = messages.NewRegistration.from_data(
            email=email, terms_of_service_agreed=True)
    else:
        new_reg = messages.NewRegistration.from_data(terms_of_service_agreed=True)
    regr = acme.new_account(new_reg)
    net.account = regr
    acc = Account(regr, key)
    storage.save(acc, email)
    logger.info("Registered ACME account %s for %s", acc.slug, email or NO_EMAIL)
    return acme
