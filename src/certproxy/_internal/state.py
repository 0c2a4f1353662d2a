"""Persistence of per-domain reconciliation status for the status query."""
import datetime
import json
import logging
from typing import Any
from typing import Optional

import pyrfc3339

from certproxy import errors
from certproxy import util
from certproxy._internal.obj import DomainStatus
from certproxy._internal.obj import ReconciliationState

logger = logging.getLogger(__name__)

_TIMESTAMPS = ("next_attempt_at", "expires_at", "updated_at")


def _generate(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return pyrfc3339.generate(value)


def _parse(value: Optional[str]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    return pyrfc3339.parse(value)


def status_to_json(status: DomainStatus) -> dict[str, Any]:
    """Serializable form of status."""
    data: dict[str, Any] = {
        "state": status.state.value,
        "reason": status.reason,
        "retryable": status.retryable,
        "attempts": status.attempts,
        "declaration": status.declaration,
    }
    for name in _TIMESTAMPS:
        data[name] = _generate(getattr(status, name))
    return data


def status_from_json(data: dict[str, Any]) -> DomainStatus:
    """Inverse of `status_to_json`.

    :raises KeyError, ValueError: if data is not a serialized status

    """
    return DomainStatus(
        state=ReconciliationState(data["state"]),
        reason=data.get("reason"),
        retryable=bool(data.get("retryable", False)),
        attempts=int(data.get("attempts", 0)),
        declaration=data.get("declaration"),
        **{name: _parse(data.get(name)) for name in _TIMESTAMPS})


class StatusStore:
    """JSON file mapping each domain to its last known `.DomainStatus`.

    :ivar str path: location of the status file

    """
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> dict[str, DomainStatus]:
        """Read every saved status.

        :returns: statuses by domain, empty if nothing was saved yet
        :raises .errors.Error: if the file exists but cannot be read

        """
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as error:
            raise errors.Error(f"Unable to read status file {self.path}: {error}")
        statuses = {}
        for domain, entry in data.get("domains", {}).items():
            try:
                statuses[domain] = status_from_json(entry)
            except (KeyError, ValueError, TypeError) as error:
                logger.warning("Ignoring unreadable status of %s in %s: %s",
                               domain, self.path, error)
        return statuses

    def save(self, statuses: dict[str, DomainStatus]) -> None:
        """Replace the status file with statuses."""
        data = {
            "updated_at": _generate(util.now()),
            "domains": {domain: status_to_json(statuses[domain])
                        for domain in sorted(statuses)},
        }
        util.atomic_write(self.path, json.dumps(data, indent=2, sort_keys=True) + "\n")
