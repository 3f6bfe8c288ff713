"""
Exponential reconnect backoff with jitter.

Jitter keeps a fleet of clients that lost the same server from reconnecting
in lockstep.
"""

import random

from ..config.models import RealtimeConfig


class ReconnectBackoff:
    """
    Tracks consecutive failed attempts and derives the next delay.

    delay = min(base * 2**attempts, cap), then perturbed by ±jitter.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        jitter: float = 0.25,
        max_attempts: int = 10,
        rng: random.Random | None = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.attempts = 0
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RealtimeConfig, rng: random.Random | None = None) -> "ReconnectBackoff":
        return cls(
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            jitter=config.reconnect_jitter,
            max_attempts=config.max_reconnect_attempts,
            rng=rng,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay for a given attempt number (0-indexed). Non-decreasing in attempt."""
        # Cap the exponent so large attempt counts cannot overflow
        return min(self.base_delay * (2 ** min(attempt, 32)), self.max_delay)

    def calculate_delay(self, attempt: int) -> float:
        """Jittered delay for a given attempt number (0-indexed)."""
        delay = self.base_delay_for(attempt)
        spread = delay * self.jitter
        return max(0.0, delay + self._rng.uniform(-spread, spread))

    def record_failure(self) -> float:
        """
        Count a failed attempt and return the delay before the next one.

        Returns:
            Delay in seconds
        """
        delay = self.calculate_delay(self.attempts)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
