"""Exponential backoff with jitter for reconnects and host reporting."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    base_delay_ms: float = 100
    max_delay_ms: float = 5000
    max_attempts: int = 5
    backoff_multiplier: float = 2
    jitter_factor: float = 0.3


class RetryBackoff:
    """Tracks consecutive failures and computes the next delay.

    retry_in() returns None before the first failure and once
    max_attempts failures have been recorded.
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()
        self.retry_attempt = 0

    def reset(self) -> None:
        self.retry_attempt = 0

    def increment(self) -> None:
        self.retry_attempt += 1

    def retry_in(self) -> float | None:
        """Delay in milliseconds before the next attempt, or None to give up."""
        cfg = self.config
        if self.retry_attempt == 0 or self.retry_attempt >= cfg.max_attempts:
            return None
        delay = cfg.base_delay_ms * cfg.backoff_multiplier ** (self.retry_attempt - 1)
        delay = min(delay, cfg.max_delay_ms)
        return delay + random.uniform(0, delay * cfg.jitter_factor)  # noqa: S311
