"""Tests for certproxy._internal.scheduler."""
import datetime
import signal
import sys
import threading
from unittest import mock

import pytest

from certproxy._internal.reconciler import PassResult
from certproxy.tests import util as test_util


class SchedulerTest(test_util.ConfigTestCase):
    """Tests for certproxy._internal.scheduler.Scheduler."""

    def setUp(self):
        super().setUp()
        from certproxy._internal.scheduler import Scheduler
        self.now = test_util.NOW
        self.config.namespace.interval = "1 hour"
        self.config.namespace.watch_seconds = 30
        self.reconciler = mock.MagicMock()
        self.reconciler.run_pass.return_value = PassResult({}, True)
        self.reconciler.next_retry_at.return_value = None
        self.source = mock.MagicMock()
        self.source.changed.return_value = False
        self.scheduler = Scheduler(self.config, self.reconciler, self.source,
                                   clock=lambda: self.now)
        # pylint: disable=protected-access
        self.wake = mock.MagicMock(wraps=self.scheduler._wake)
        self.scheduler._wake = self.wake

    def test_max_passes(self):
        with mock.patch.object(self.scheduler, "_wait") as mock_wait:
            result = self.scheduler.run(max_passes=3)
        assert result == PassResult({}, True)
        assert self.reconciler.run_pass.call_count == 3
        assert mock_wait.call_count == 2

    def test_stop_after_current_pass(self):
        def run_pass():
            self.scheduler.stop()
            return PassResult({}, False)
        self.reconciler.run_pass.side_effect = run_pass
        assert self.scheduler.run() == PassResult({}, False)
        assert self.scheduler.passes == 1
        assert self.scheduler.stopped

    def test_stopped_before_start(self):
        self.scheduler.stop()
        assert self.scheduler.run() is None
        self.reconciler.run_pass.assert_not_called()

    def _advance(self, timeout):
        self.now += datetime.timedelta(seconds=timeout)
        return False

    def test_wait_until_interval(self):
        self.wake.wait.side_effect = self._advance
        self.scheduler._wait()  # pylint: disable=protected-access
        assert self.wake.wait.call_count == 120
        assert self.source.changed.call_count == 120

    def test_wait_until_retry(self):
        self.reconciler.next_retry_at.return_value = self.now + datetime.timedelta(seconds=45)
        self.wake.wait.side_effect = self._advance
        self.scheduler._wait()  # pylint: disable=protected-access
        assert [call[0][0] for call in self.wake.wait.call_args_list] == [30, 15]

    def test_retry_after_interval_is_ignored(self):
        self.reconciler.next_retry_at.return_value = self.now + datetime.timedelta(days=1)
        assert self.scheduler._next_deadline() == (  # pylint: disable=protected-access
            self.now + datetime.timedelta(hours=1))

    def test_wait_ends_on_change(self):
        self.wake.wait.side_effect = self._advance
        self.source.changed.side_effect = [False, True]
        self.scheduler._wait()  # pylint: disable=protected-access
        assert self.wake.wait.call_count == 2

    def test_wait_ends_on_trigger(self):
        self.wake.wait.return_value = True
        self.scheduler._wait()  # pylint: disable=protected-access
        self.source.changed.assert_not_called()

    def test_trigger_from_other_thread(self):
        started = threading.Event()

        def run_pass():
            started.set()
            return PassResult({}, True)
        self.reconciler.run_pass.side_effect = run_pass
        thread = threading.Thread(target=self.scheduler.run, kwargs={"max_passes": 2})
        thread.start()
        assert started.wait(timeout=10)
        self.scheduler.trigger()
        thread.join(timeout=10)
        assert not thread.is_alive()
        assert self.reconciler.run_pass.call_count == 2

    @mock.patch("certproxy._internal.scheduler.signal.signal")
    def test_signal_handlers(self, mock_signal):
        self.scheduler.install_signal_handlers()
        handlers = {call[0][0]: call[0][1] for call in mock_signal.call_args_list}
        assert set(handlers) == {signal.SIGHUP, signal.SIGTERM, signal.SIGINT}

        handlers[signal.SIGHUP](signal.SIGHUP, None)
        assert self.scheduler._wake.is_set()  # pylint: disable=protected-access
        assert not self.scheduler.stopped
        handlers[signal.SIGTERM](signal.SIGTERM, None)
        assert self.scheduler.stopped


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
