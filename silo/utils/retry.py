"""Exponential backoff for transient cloud API failures."""

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RateLimitError(Exception):
    """The remote API asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServiceUnavailableError(Exception):
    """The remote API is temporarily unreachable or overloaded (503/504, timeouts)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RetryConfig:
    """Retry policy for a single call site."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (RateLimitError, ServiceUnavailableError),
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Retry attempt number (0-indexed)
            retry_after: Server-provided Retry-After in seconds, if any

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            delay = min(retry_after, self.max_delay)
        else:
            delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

        if self.jitter and delay > 0:
            spread = delay * 0.25
            delay = max(0.0, delay + random.uniform(-spread, spread))

        return delay


def retry_sync(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    label: str = "call",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs
) -> Any:
    """
    Call ``func`` and retry on the configured transient exceptions.

    Args:
        func: Function to call
        config: Retry policy (defaults to RetryConfig())
        label: Name used in log messages (e.g. ``"huggingface chat"``)
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of func

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_retries:
                logger.error(f"{label}: giving up after {attempt + 1} attempts: {e}")
                raise

            delay = config.calculate_delay(attempt, getattr(e, "retry_after", None))
            logger.warning(
                f"{label}: attempt {attempt + 1}/{config.max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            sleep(delay)


DEFAULT_CLOUD_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=1.0)
