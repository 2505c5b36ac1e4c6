"""Reconnect backoff policy and its interactive and supervised presets."""

import random
from typing import Optional, Tuple

from bletether.interfaces.ble.constants import BLEConfig


class ReconnectPolicy:
    """
    Reconnection policy with linear backoff: the n-th retry waits `base_delay * n`.

    The policy also owns the reconnect attempt counter. `supervised` selects
    what happens once `max_attempts` is exhausted: an interactive policy gives
    the target up, a supervised one resets the counter and keeps the target for
    an external supervisor to retry later.
    """

    def __init__(
        self,
        *,
        base_delay: float = 2.0,
        max_attempts: int = 5,
        max_delay: Optional[float] = None,
        jitter_ratio: float = 0.0,
        supervised: bool = False,
        random_source=None,
    ):
        if base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got {base_delay}")
        if max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {max_attempts}")
        if max_delay is not None and max_delay < base_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must be >= base_delay ({base_delay})"
            )
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError(
                f"jitter_ratio must be between 0.0 and 1.0, got {jitter_ratio}"
            )
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.supervised = supervised
        self._random = random_source or random
        self._attempt_count = 0

    def reset(self) -> None:
        """Forget previous failures; the next attempt waits `base_delay` again."""
        self._attempt_count = 0

    def get_delay(self, attempt: Optional[int] = None) -> float:
        """
        Compute the delay in seconds before retry number `attempt` (1-based; defaults to the current count).
        """
        if attempt is None:
            attempt = self._attempt_count
        delay = self.base_delay * max(attempt, 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter_ratio:
            delay += delay * self.jitter_ratio * (self._random.random() * 2.0 - 1.0)
        return delay

    def should_retry(self, attempt: Optional[int] = None) -> bool:
        """
        Determine whether another retry is allowed after `attempt` retries.
        """
        if attempt is None:
            attempt = self._attempt_count
        return attempt < self.max_attempts

    def next_attempt(self) -> Tuple[float, bool]:
        """
        Advance the attempt counter and return (delay, should_retry).

        The counter only advances when a retry is allowed, so it never exceeds `max_attempts`.
        """
        if not self.should_retry():
            return 0.0, False
        self._attempt_count += 1
        return self.get_delay(), True

    def get_attempt_count(self) -> int:
        """Failed attempts since the last reset."""
        return self._attempt_count

    def __repr__(self) -> str:
        return (
            f"ReconnectPolicy(base_delay={self.base_delay}, "
            f"max_attempts={self.max_attempts}, supervised={self.supervised})"
        )


class _PolicyFactory:
    """Class attribute that builds a new ReconnectPolicy every time it is read, so presets never share counters."""

    def __init__(self, **kwargs):
        self._kwargs = kwargs

    def __get__(self, instance, owner):
        return ReconnectPolicy(**self._kwargs)


class RetryPolicy:
    """
    Named ReconnectPolicy presets.
    """

    INTERACTIVE = _PolicyFactory(
        base_delay=BLEConfig.RECONNECT_BASE_DELAY,
        max_attempts=BLEConfig.RECONNECT_MAX_ATTEMPTS,
    )

    SUPERVISED = _PolicyFactory(
        base_delay=BLEConfig.RECONNECT_BASE_DELAY,
        max_attempts=BLEConfig.SUPERVISED_RECONNECT_MAX_ATTEMPTS,
        supervised=True,
    )
