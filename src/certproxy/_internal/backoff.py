"""Retry delays for domains whose issuance failed with a retryable error."""
import datetime
import random
from typing import Callable

from certproxy._internal import constants


def delay(attempts: int, base: float = constants.BACKOFF_BASE,
          cap: float = constants.BACKOFF_CAP, jitter: float = constants.BACKOFF_JITTER,
          rand: Callable[[float, float], float] = random.uniform) -> datetime.timedelta:
    """Delay before the next attempt after `attempts` consecutive failures.

    The delay doubles with every failure, starting at `base` seconds and
    never exceeding `cap`, and is then scattered by up to ``±jitter``.

    :param int attempts: number of consecutive failures so far, at least 1
    :param float base: delay after the first failure, in seconds
    :param float cap: upper bound of the delay before jitter, in seconds
    :param float jitter: relative amount of random scatter
    :param rand: ``random.uniform`` compatible callable

    :rtype: datetime.timedelta

    """
    exponent = min(max(attempts - 1, 0), 32)
    seconds = min(cap, base * 2 ** exponent)
    return datetime.timedelta(seconds=seconds * rand(1 - jitter, 1 + jitter))
