"""File and in-process locks keeping per-domain work mutually exclusive."""
import contextlib
import errno
import fcntl
import logging
import os
import threading
from typing import Iterator
from typing import Optional

from certproxy import errors
from certproxy import util

logger = logging.getLogger(__name__)


class LockFile:
    """
    POSIX file lock.

    LockFile accepts a parameter, the path to a file acting as a lock. Once the
    LockFile instance is created, the associated file is locked from the point
    of view of the OS, meaning that if another certproxy process tries at the
    same time to acquire the same lock, it will raise an Exception. Calling the
    release method releases the lock and makes it available again.

    The lock only synchronizes processes. Threads of a single process must
    also hold a :class:`DomainLocks` entry.
    """
    def __init__(self, path: str) -> None:
        """
        Create a LockFile instance on the given file path, and acquire lock.
        :param str path: the path to the file that will hold a lock
        """
        self._path = path
        self._fd: Optional[int] = None

        self.acquire()

    def __repr__(self) -> str:
        repr_str = '{0}({1}) <'.format(self.__class__.__name__, self._path)
        if self.is_locked():
            repr_str += 'acquired>'
        else:
            repr_str += 'released>'
        return repr_str

    def acquire(self) -> None:
        """
        Acquire the lock on the file, forbidding any other process to acquire it.
        :raises errors.LockError: if unable to acquire the lock
        """
        while self._fd is None:
            # Open the file
            fd = os.open(self._path, os.O_CREAT | os.O_WRONLY, 0o600)
            try:
                self._try_lock(fd)
                if self._lock_success(fd):
                    self._fd = fd
            finally:
                # Close the file if it is not the required one
                if self._fd is None:
                    os.close(fd)

    def _try_lock(self, fd: int) -> None:
        """
        Try to acquire the lock file without blocking.
        :param int fd: file descriptor of the opened file to lock
        """
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as err:
            if err.errno in (errno.EACCES, errno.EAGAIN):
                logger.debug('A lock on %s is held by another process.', self._path)
                raise errors.LockError(f'{self._path} is locked by another process.')
            raise

    def _lock_success(self, fd: int) -> bool:
        """
        Did we successfully grab the lock?
        Because this class deletes the locked file when the lock is
        released, it is possible another process removed and recreated
        the file between us opening the file and acquiring the lock.
        :param int fd: file descriptor of the opened file to lock
        :returns: True if the lock was successfully acquired
        :rtype: bool
        """
        try:
            stat1 = os.stat(self._path)
        except OSError as err:
            if err.errno == errno.ENOENT:
                return False
            raise

        stat2 = os.fstat(fd)
        # If our locked file descriptor and the file on disk refer to
        # the same device and inode, they're the same file.
        return stat1.st_dev == stat2.st_dev and stat1.st_ino == stat2.st_ino

    def release(self) -> None:
        """Remove, close, and release the lock file."""
        # The lock file is removed before it is released, otherwise another
        # process could lock a file that is about to disappear.
        if self._fd is None:
            return
        try:
            os.remove(self._path)
        finally:
            try:
                os.close(self._fd)
            finally:
                self._fd = None

    def is_locked(self) -> bool:
        """
        Check if the file is currently locked.
        :return: True if the file is locked, False otherwise
        """
        return self._fd is not None


class DomainLocks:
    """Registry of per-domain locks.

    Holding a domain gives the caller the only right to run an ACME
    operation for it, both inside this process (a non-blocking
    :class:`threading.Lock`) and across processes sharing `locks_dir`
    (a :class:`LockFile`).

    :ivar str locks_dir: directory where lock files are created

    """
    def __init__(self, locks_dir: str) -> None:
        self.locks_dir = locks_dir
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        util.make_or_verify_dir(locks_dir, 0o700)

    def _thread_lock(self, domain: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(domain, threading.Lock())

    def is_held(self, domain: str) -> bool:
        """Whether some thread of this process currently holds domain."""
        return self._thread_lock(domain).locked()

    @contextlib.contextmanager
    def hold(self, domain: str) -> Iterator[None]:
        """Hold the lock for domain for the duration of the block.

        :raises errors.LockError: if another thread or process holds it

        """
        thread_lock = self._thread_lock(domain)
        if not thread_lock.acquire(blocking=False):
            raise errors.LockError(f"An operation for {domain} is already in progress.")
        try:
            file_lock = LockFile(os.path.join(self.locks_dir, f"{domain}.lock"))
            try:
                yield
            finally:
                file_lock.release()
        finally:
            thread_lock.release()

    def forget(self, domain: str) -> None:
        """Drop the registry entry of a domain that is no longer declared."""
        with self._registry_lock:
            lock = self._locks.get(domain)
            if lock is not None and not lock.locked():
                del self._locks[domain]
