"""
Exponential backoff schedule for session store reconnection.

Delay before reconnect attempt n (1-indexed) is ``base_delay * 2 ** (n - 1)``,
capped at ``max_delay``. All values are float seconds.
"""

from dataclasses import dataclass
from typing import List, Optional


def calculate_delay(
    attempt: int,
    initial_delay: float,
    exponential_base: float,
    max_delay: Optional[float] = None
) -> float:
    """
    Calculate the delay for a given retry attempt using exponential backoff.

    The delay is calculated as: initial_delay * (exponential_base ^ attempt)

    For initial_delay=1.0 and exponential_base=2.0:
    - Attempt 0: 1.0 second
    - Attempt 1: 2.0 seconds
    - Attempt 2: 4.0 seconds

    Args:
        attempt: The current attempt number (0-indexed)
        initial_delay: The initial delay in seconds
        exponential_base: The base for exponential calculation
        max_delay: Optional maximum delay cap

    Returns:
        The calculated delay in seconds
    """
    delay = initial_delay * (exponential_base ** attempt)

    if max_delay is not None:
        delay = min(delay, max_delay)

    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Reconnection schedule used by the ConnectionManager.

    Attributes:
        base_delay: Delay before the first reconnect attempt, in seconds.
        max_attempts: Number of reconnect attempts before giving up.
        exponential_base: Growth factor between consecutive delays.
        max_delay: Ceiling for a single delay, in seconds. None means uncapped.
    """
    base_delay: float = 1.0
    max_attempts: int = 10
    exponential_base: float = 2.0
    max_delay: Optional[float] = 60.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")

    @classmethod
    def from_config(cls, config) -> "BackoffPolicy":
        """Build the policy from a StoreConfig."""
        return cls(
            base_delay=config.base_backoff_seconds,
            max_attempts=config.max_reconnect_attempts,
            max_delay=config.max_backoff_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt ``attempt`` (1-indexed)."""
        if attempt < 1:
            raise ValueError("attempt is 1-indexed")
        return calculate_delay(attempt - 1, self.base_delay, self.exponential_base, self.max_delay)

    def delays(self) -> List[float]:
        """The full schedule, one delay per permitted attempt."""
        return [self.delay_for(n) for n in range(1, self.max_attempts + 1)]

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
