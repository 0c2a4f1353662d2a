"""Runs reconciliation passes on a schedule and on demand."""
import datetime
import logging
import signal
import threading
from types import FrameType
from typing import Callable
from typing import Optional

from certproxy import configuration
from certproxy import util
from certproxy._internal import declarations
from certproxy._internal.reconciler import PassResult
from certproxy._internal.reconciler import Reconciler

logger = logging.getLogger(__name__)


class Scheduler:
    """Triggers a reconciliation pass periodically and whenever asked to.

    A pass starts:

    - every `~.NamespaceConfig.pass_interval`,
    - when the declarations change on disk, checked every
      ``watch_seconds``,
    - when a failed domain becomes due for a retry,
    - when `trigger` is called, e.g. from a ``SIGHUP`` handler.

    Triggers arriving while a pass runs are coalesced into one further pass.

    :ivar config: certproxy configuration
    :ivar reconciler: runs the passes
    :ivar source: declarations watched for changes

    """
    def __init__(self, config: configuration.NamespaceConfig, reconciler: Reconciler,
                 source: declarations.DeclarationSource,
                 clock: Callable[[], datetime.datetime] = util.now) -> None:
        self.config = config
        self.reconciler = reconciler
        self.source = source
        self._clock = clock
        self._wake = threading.Event()
        self._stop = threading.Event()
        self.passes = 0

    def trigger(self) -> None:
        """Ask for a pass as soon as possible."""
        self._wake.set()

    def stop(self) -> None:
        """Ask `run` to return once the current pass has finished."""
        self._stop.set()
        self._wake.set()

    @property
    def stopped(self) -> bool:  # pylint: disable=missing-function-docstring
        return self._stop.is_set()

    def install_signal_handlers(self) -> None:
        """Reconcile on ``SIGHUP``, stop on ``SIGTERM`` and ``SIGINT``."""
        signal.signal(signal.SIGHUP, self._handle_hup)
        signal.signal(signal.SIGTERM, self._handle_stop)
        signal.signal(signal.SIGINT, self._handle_stop)

    def _handle_hup(self, signum: int, unused_frame: Optional[FrameType]) -> None:
        logger.info("Received signal %d, reconciling now", signum)
        self.trigger()

    def _handle_stop(self, signum: int, unused_frame: Optional[FrameType]) -> None:
        logger.info("Received signal %d, stopping after the current pass", signum)
        self.stop()

    def run(self, max_passes: Optional[int] = None) -> Optional[PassResult]:
        """Run passes until stopped.

        :param int max_passes: return after this many passes

        :returns: result of the last pass, if any ran
        :rtype: `.PassResult` or `None`

        """
        result = None
        while not self._stop.is_set():
            self._wake.clear()
            result = self.reconciler.run_pass()
            self.passes += 1
            if max_passes is not None and self.passes >= max_passes:
                break
            self._wait()
        logger.debug("Scheduler stopped after %d passes", self.passes)
        return result

    def _next_deadline(self) -> datetime.datetime:
        deadline = self._clock() + self.config.pass_interval
        retry_at = self.reconciler.next_retry_at()
        if retry_at is not None and retry_at < deadline:
            deadline = retry_at
        return deadline

    def _wait(self) -> None:
        """Sleep until the next pass is due."""
        deadline = self._next_deadline()
        logger.debug("Next reconciliation pass at %s at the latest", deadline)
        while not self._stop.is_set():
            remaining = (deadline - self._clock()).total_seconds()
            if remaining <= 0:
                return
            if self._wake.wait(min(remaining, self.config.watch_seconds)):
                return
            if self.source.changed():
                logger.info("Declarations changed, reconciling now")
                return
