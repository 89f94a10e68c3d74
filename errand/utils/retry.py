from __future__ import annotations

import random
from abc import ABC, abstractmethod

from ..constants import DEFAULT_MAX_DELAY


def compute_backoff(attempt: int, base: float = 1.0, jitter: float = 0.0) -> float:
    """Compute exponential backoff with optional jitter."""
    delay = base * (2 ** (attempt - 1))
    return delay + random.uniform(0, jitter) if jitter else delay


class BackoffStrategy(ABC):
    """Delay policy between retry attempts."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = DEFAULT_MAX_DELAY):
        self.base_delay = base_delay
        self.max_delay = max_delay

    @abstractmethod
    def raw_delay(self, attempt: int) -> float:
        """Uncapped delay in seconds after the given 1-based failed attempt."""

    def delay(self, attempt: int) -> float:
        return min(self.raw_delay(attempt), self.max_delay)


class ConstantBackoff(BackoffStrategy):
    def raw_delay(self, attempt: int) -> float:
        return self.base_delay


class LinearBackoff(BackoffStrategy):
    def raw_delay(self, attempt: int) -> float:
        return self.base_delay * attempt


class ExponentialBackoff(BackoffStrategy):
    def raw_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay)


class JitteredBackoff(BackoffStrategy):
    """Exponential backoff plus up to ``jitter`` seconds of random noise."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: float = 0.5,
    ):
        super().__init__(base_delay, max_delay)
        self.jitter = jitter

    def raw_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.jitter)


_STRATEGIES = {
    "constant": ConstantBackoff,
    "linear": LinearBackoff,
    "exponential": ExponentialBackoff,
    "jittered": JitteredBackoff,
}


def make_backoff(
    name: str | BackoffStrategy,
    base_delay: float = 1.0,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> BackoffStrategy:
    """Build a backoff strategy by name, passing instances through."""
    if isinstance(name, BackoffStrategy):
        return name
    try:
        cls = _STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown backoff policy: {name}") from None
    return cls(base_delay=base_delay, max_delay=max_delay)
