"""Utilities for all of certproxy."""
import atexit
import datetime
import errno
import logging
import os
import re
import socket
import subprocess
import tempfile
from typing import Any
from typing import Callable
from typing import IO
from typing import Optional
from typing import Union

import parsedatetime
import pytz

from certproxy import errors

logger = logging.getLogger(__name__)

_INITIAL_PID = os.getpid()

# Prefix of environment variables handed to hook commands.
HOOK_ENV_PREFIX = "CERTPROXY_"

PERM_ERR_FMT = os.linesep.join((
    "The following error was encountered:", "{0}",
    "Either run as root, or set --config-dir, "
    "--work-dir, and --logs-dir to writeable paths."))

# ANSI SGR escape codes
ANSI_SGR_RED = "\033[31m"
ANSI_SGR_RESET = "\033[0m"


def run_script(params: list[str], log: Callable[[str], None] = logger.error,
               env: Optional[dict[str, str]] = None) -> tuple[str, str]:
    """Run the script with the given params.

    :param list params: List of parameters to pass to subprocess.run
    :param callable log: Logger method to use for errors
    :param dict env: extra environment variables for the child process

    :returns: stdout and stderr of the process
    :rtype: tuple

    :raises .errors.SubprocessError: if the command could not be run or
        exited with a non-zero status

    """
    child_env = os.environ.copy()
    if env:
        child_env.update(env)
    try:
        proc = subprocess.run(params,
                              check=False,
                              stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE,
                              universal_newlines=True,
                              env=child_env)

    except (OSError, ValueError):
        msg = "Unable to run the command: %s" % " ".join(params)
        log(msg)
        raise errors.SubprocessError(msg)

    if proc.returncode != 0:
        msg = "Error while running %s.\n%s\n%s" % (
            " ".join(params), proc.stdout, proc.stderr)
        log(msg)
        raise errors.SubprocessError(msg)

    return proc.stdout, proc.stderr


def exe_exists(exe: str) -> bool:
    """Determine whether path/name refers to an executable.

    :param str exe: Executable path or name

    :returns: If exe is a valid executable
    :rtype: bool

    """
    path, _ = os.path.split(exe)
    if path:
        return os.path.isfile(exe) and os.access(exe, os.X_OK)
    for path in os.environ.get("PATH", "").split(os.pathsep):
        candidate = os.path.join(path, exe)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return True
    return False


def make_or_verify_dir(directory: str, mode: int = 0o755, strict: bool = False) -> None:
    """Make sure directory exists with proper permissions.

    :param str directory: Path to a directory.
    :param int mode: Directory mode.
    :param bool strict: require directory to be owned by current user

    :raises .errors.Error: if a directory already exists,
        but has wrong permissions or owner

    :raises OSError: if invalid or inaccessible file names and
        paths, or other arguments that have the correct type,
        but are not accepted by the operating system.

    """
    try:
        os.makedirs(directory, mode)
    except OSError as exception:
        if exception.errno == errno.EEXIST:
            if strict and not _check_permissions(directory, mode):
                raise errors.Error(
                    "%s exists, but it should be owned by current user with"
                    " permissions %s" % (directory, oct(mode)))
        else:
            raise


def _check_permissions(path: str, mode: int) -> bool:
    stats = os.stat(path)
    return stats.st_uid == os.geteuid() and (stats.st_mode & 0o777) == mode


def safe_open(path: str, mode: str = "w", chmod: Optional[int] = None) -> IO:
    """Safely open a file that must not exist yet.

    :param str path: Path to a file.
    :param str mode: Same os `mode` for `open`.
    :param int chmod: Same as `mode` for `os.open`, uses Python defaults
        if ``None``.

    """
    open_args: Union[tuple[()], tuple[int]] = ()
    if chmod is not None:
        open_args = (chmod,)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_RDWR, *open_args)
    return os.fdopen(fd, mode)


def atomic_write(path: str, data: Union[str, bytes], chmod: int = 0o644) -> None:
    """Replace the file at path with data so that readers never see a partial write.

    The data is written to a temporary file in the same directory, flushed
    to disk and then renamed over `path`.

    :param str path: destination path
    :param data: new file contents
    :param int chmod: mode of the resulting file

    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix="." + os.path.basename(path) + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb" if isinstance(data, bytes) else "w") as tmp_file:
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.chmod(tmp_path, chmod)
        os.replace(tmp_path, path)
    except BaseException:
        safely_remove(tmp_path)
        raise


def safely_remove(path: str) -> None:
    """Remove a file that may not exist."""
    try:
        os.remove(path)
    except OSError as err:
        if err.errno != errno.ENOENT:
            raise


# Email validation from Let's Encrypt: a bit more strict than RFC 5322.
EMAIL_REGEX = re.compile("[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+$")


def safe_email(email: str) -> bool:
    """Scrub email address before using it."""
    if EMAIL_REGEX.match(email) is not None:
        return not email.startswith(".") and ".." not in email
    logger.error("Invalid email address: %s.", email)
    return False


def enforce_domain_sanity(domain: Union[str, bytes]) -> str:
    """Method which validates domain value and errors out if
    the requirements are not met.

    :param domain: Domain to check
    :type domain: `str` or `bytes`
    :raises ConfigurationError: for invalid domains and cases where a public
                                certificate authority will not issue certificates

    :returns: The domain cast to `str`, with ASCII-only contents
    :rtype: str
    """
    # Unicode
    try:
        if isinstance(domain, bytes):
            domain = domain.decode('utf-8')
        domain.encode('ascii')
    except UnicodeError:
        raise errors.ConfigurationError("Non-ASCII domain names not supported. "
            "To issue for an Internationalized Domain Name, use Punycode.")

    domain = domain.lower()

    # Remove trailing dot
    domain = domain[:-1] if domain.endswith('.') else domain

    for scheme in ["http", "https"]:
        if domain.startswith("{0}://".format(scheme)):
            raise errors.ConfigurationError(
                "Requested name {0} appears to be a URL, not a FQDN. "
                "Try again without the leading \"{1}://\".".format(
                    domain, scheme
                )
            )

    if is_ipaddress(domain):
        raise errors.ConfigurationError(
            "Requested name {0} is an IP address. Certificates are "
            "only requested for domain names.".format(domain))

    if domain.startswith("*."):
        raise errors.ConfigurationError(
            "Wildcard domain {0} cannot be served by a single backend "
            "declaration.".format(domain))

    if not re.match("^[a-z0-9.-]*$", domain):
        raise errors.ConfigurationError(
            "{0} contains an invalid character. "
            "Valid characters are A-Z, a-z, 0-9, ., and -.".format(domain))

    # FQDN checks according to RFC 2181: domain name should be less than 255
    # octets (inclusive). And each label is 1 - 63 octets (inclusive).
    # https://tools.ietf.org/html/rfc2181#section-11
    msg = "Requested domain {0} is not a FQDN because".format(domain)
    if len(domain) > 255:
        raise errors.ConfigurationError("{0} it is too long.".format(msg))
    labels = domain.split('.')
    if len(labels) < 2:
        raise errors.ConfigurationError("{0} it needs at least two labels.".format(msg))
    for label in labels:
        if not label:
            raise errors.ConfigurationError("{0} it contains an empty label.".format(msg))
        if len(label) > 63:
            raise errors.ConfigurationError("{0} label {1} is too long.".format(msg, label))
        if label.startswith("-") or label.endswith("-"):
            raise errors.ConfigurationError(
                'label "{0}" in domain "{1}" cannot start or end with "-"'.format(
                    label, domain))

    return domain


def is_ipaddress(address: str) -> bool:
    """Is given address string form of IP(v4 or v6) address?

    :param address: address to check
    :type address: `str`

    :returns: True if address is valid IP address, otherwise return False.
    :rtype: bool

    """
    try:
        socket.inet_pton(socket.AF_INET, address)
        # If this line runs it was ip address (ipv4)
        return True
    except OSError:
        # It wasn't an IPv4 address, so try ipv6
        try:
            socket.inet_pton(socket.AF_INET6, address)
            return True
        except OSError:
            return False


def parse_interval(interval: str,
                   textparser: parsedatetime.Calendar = parsedatetime.Calendar()
                   ) -> datetime.timedelta:
    """Parse a human readable time interval.

    The interval can be in the English-language format understood by
    parsedatetime, e.g., '10 days', '3 weeks', '9 hours', or a sequence
    of such intervals like '1 week 3 days'. If an integer is found with
    no associated unit, it is interpreted by default as a number of days.

    :param str interval: The time interval to parse.

    :returns: the length of the interval
    :rtype: :class:`datetime.timedelta`

    :raises .errors.ConfigurationError: if the interval cannot be understood

    """
    if interval.strip().isdigit():
        interval += " days"

    base_time = datetime.datetime(2000, 1, 1, tzinfo=pytz.UTC)
    parsed = textparser.parseDT(interval + " after", base_time, tzinfo=pytz.UTC)[0]
    delta = parsed - base_time
    if delta <= datetime.timedelta(0):
        raise errors.ConfigurationError(f"Unable to parse time interval: {interval!r}")
    return delta


def now() -> datetime.datetime:
    """Current time as an aware UTC datetime."""
    return datetime.datetime.now(tz=pytz.UTC)


def atexit_register(func: Callable, *args: Any, **kwargs: Any) -> None:
    """Sets func to be called before the program exits.

    Special care is taken to ensure func is only called when the process
    that first imports this module exits rather than any child processes.

    :param function func: function to be called in case of an error

    """
    atexit.register(_atexit_call, func, *args, **kwargs)


def _atexit_call(func: Callable, *args: Any, **kwargs: Any) -> None:
    if _INITIAL_PID == os.getpid():
        func(*args, **kwargs)
