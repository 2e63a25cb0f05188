"""Backoff policy used between watch and heartbeat retries."""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass


class RetryStrategy(str, enum.Enum):
    """Retry delay calculation strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Delay between consecutive retry attempts.

    Retries never stop; the policy only decides how long to wait. The delay is
    bounded by ``max_delay_ms`` whatever the strategy.
    """

    strategy: RetryStrategy = RetryStrategy.FIXED
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: float = 0.0

    def compute_delay(self, attempt: int) -> float:
        """Return the delay in seconds before retry number ``attempt`` (1-based)."""
        initial_ms = max(0, int(self.initial_delay_ms))
        max_ms = max(initial_ms, int(self.max_delay_ms))
        multiplier = max(1.0, float(self.backoff_multiplier))
        jitter = max(0.0, min(1.0, float(self.jitter)))
        attempt = max(1, int(attempt))

        base_ms = float(initial_ms)
        if self.strategy == RetryStrategy.EXPONENTIAL:
            # cap the exponent so huge attempt counts cannot overflow
            exponent = min(attempt - 1, 64)
            base_ms = initial_ms * (multiplier**exponent)
        elif self.strategy == RetryStrategy.LINEAR:
            base_ms = float(initial_ms * attempt)

        base_ms = min(float(max_ms), base_ms)
        if jitter > 0 and base_ms > 0:
            delta = (random.random() * 2 - 1) * (jitter * base_ms)
            base_ms = max(0.0, base_ms + delta)

        return base_ms / 1000.0
