"""
Back-off configuration for resilient operations.
"""


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    @property
    def max_retries(self) -> int:
        """Attempts allowed after the initial one."""
        return max(0, self.max_attempts - 1)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Linear delay before retry number ``attempt`` (1-based): ``base_delay * attempt``."""
    return max(0.0, min(config.base_delay * attempt, config.max_delay))


def linear_retry_config(max_retries: int, base_delay: float) -> RetryConfig:
    """Linear back-off: ``base_delay``, ``2 * base_delay``, ..."""
    return RetryConfig(max_attempts=max_retries + 1, base_delay=base_delay)
