"""Sources of the declared domain set."""
import abc
import logging
import os
from typing import Optional

import configobj

from certproxy import errors
from certproxy import util
from certproxy._internal.obj import DomainSpec

logger = logging.getLogger(__name__)


class DeclarationSource(metaclass=abc.ABCMeta):
    """Where the reconciler reads the declared domains from."""

    @abc.abstractmethod
    def load(self) -> list[DomainSpec]:
        """Read the current declarations.

        :returns: declared domains, each domain at most once
        :rtype: `list` of `.DomainSpec`

        :raises .errors.DeclarationError: if the declarations cannot be read

        """

    def changed(self) -> bool:
        """Have the declarations changed since the last `load`?"""
        return False


class FileDeclarationSource(DeclarationSource):
    """Declarations kept in a configobj file.

    The file holds one section per domain::

        contact_email = ops@example.com

        [example.com]
        backend_address = 127.0.0.1
        backend_port = 8080
        contact_email = admin@example.com

    The top level ``contact_email`` is the default for sections that do
    not set one.

    :ivar str path: location of the file
    :ivar str default_email: contact email used when the file sets none

    """
    def __init__(self, path: str, default_email: Optional[str] = None) -> None:
        self.path = path
        self.default_email = default_email
        self._mtime: Optional[float] = None

    def _current_mtime(self) -> Optional[float]:
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def changed(self) -> bool:
        return self._current_mtime() != self._mtime

    def load(self) -> list[DomainSpec]:
        mtime = self._current_mtime()
        try:
            conf = configobj.ConfigObj(
                self.path, encoding='utf-8', default_encoding='utf-8', file_error=True)
        except OSError as error:
            raise errors.DeclarationError(f"Unable to read {self.path}: {error}")
        except configobj.ConfigObjError as error:
            raise errors.DeclarationError(f"Error parsing {self.path}: {error}")
        self._mtime = mtime

        default_email = conf.get("contact_email") or self.default_email
        specs: dict[str, DomainSpec] = {}
        for name in conf.sections:
            try:
                spec = _spec_from_section(name, conf[name], default_email)
            except errors.ConfigurationError as error:
                logger.error("Skipping [%s] in %s: %s", name, self.path, error)
                continue
            if spec.domain in specs:
                logger.error("Skipping [%s] in %s: %s is already declared",
                             name, self.path, spec.domain)
                continue
            specs[spec.domain] = spec
        logger.debug("Loaded %d domain declarations from %s", len(specs), self.path)
        return list(specs.values())


def _spec_from_section(name: str, section: configobj.Section,
                       default_email: Optional[str]) -> DomainSpec:
    """Build a `.DomainSpec` from one configobj section.

    Missing backend values are kept empty so that rendering reports
    the domain as having no backend.

    :raises .errors.ConfigurationError: if the section is unusable

    """
    domain = util.enforce_domain_sanity(name)
    try:
        port = int(section.get("backend_port", 0))
    except (TypeError, ValueError):
        raise errors.ConfigurationError(
            "backend_port must be a number, not {0!r}".format(section.get("backend_port")))
    email = section.get("contact_email") or default_email
    if email and not util.safe_email(email):
        raise errors.ConfigurationError(f"invalid contact_email {email!r}")
    return DomainSpec(
        domain=domain,
        backend_address=str(section.get("backend_address", "")).strip(),
        backend_port=port,
        contact_email=email or None,
    )
