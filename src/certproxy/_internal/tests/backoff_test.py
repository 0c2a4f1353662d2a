"""Tests for certproxy._internal.backoff."""
import datetime
import sys
import unittest

import pytest

from certproxy._internal import backoff


def _no_jitter(low, high):
    return (low + high) / 2


class DelayTest(unittest.TestCase):
    """Tests for certproxy._internal.backoff.delay."""

    def _seconds(self, attempts, **kwargs):
        kwargs.setdefault("rand", _no_jitter)
        return backoff.delay(attempts, **kwargs).total_seconds()

    def test_doubles(self):
        assert [self._seconds(n, base=2) for n in range(1, 5)] == [2, 4, 8, 16]

    def test_capped(self):
        assert self._seconds(30, base=1, cap=100) == 100
        assert self._seconds(10 ** 6, base=1, cap=100) == 100

    def test_no_failures_yet(self):
        assert self._seconds(0, base=5) == 5

    def test_jitter_bounds(self):
        assert self._seconds(1, base=10, jitter=0.2, rand=lambda low, high: low) == 8
        assert self._seconds(1, base=10, jitter=0.2, rand=lambda low, high: high) == 12

    def test_default_rand(self):
        for _ in range(20):
            value = backoff.delay(3, base=10, jitter=0.5)
            assert datetime.timedelta(seconds=20) <= value <= datetime.timedelta(seconds=60)


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
