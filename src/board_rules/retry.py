"""Backoff configuration for throttled board API calls."""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False
    backoff_strategy: str = "exponential"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_strategy not in ("exponential", "linear", "fixed"):
            raise ValueError(f"Unknown backoff strategy: {self.backoff_strategy}")


def calculate_delay(attempt: int, config: RetryConfig, retry_after: float | None = None) -> float:
    """Calculate the delay after a failed attempt.

    Args:
        attempt: Number of the attempt that just failed, starting at 1
        config: Retry configuration
        retry_after: Server-provided wait, used as a lower bound

    Returns:
        Delay in seconds
    """
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)

    if retry_after is not None:
        delay = max(delay, retry_after)

    return max(0.0, delay)
