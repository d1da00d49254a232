"""
Retry utilities for transient store failures (deadlocks, lock timeouts).
"""
import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type

from bundlewallet.config import settings
from bundlewallet.errors import TransientStoreError
from bundlewallet.metrics import transient_retries

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (TransientStoreError,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay


def run_with_retry(operation: str, func: Callable[[], Any], config: Optional[RetryConfig] = None) -> Any:
    """
    Call ``func`` and retry it on retryable exceptions with exponential backoff.

    ``func`` must open its own unit of work so that every attempt starts from a
    clean transaction. Business errors are never retried.
    """
    config = config or STORE_RETRY_CONFIG

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func()
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(f"{operation}: giving up after {attempt} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            transient_retries.labels(operation).inc()
            logger.warning(
                f"{operation}: attempt {attempt}/{config.max_attempts} failed ({e}). "
                f"Retrying in {delay:.2f}s"
            )
            time.sleep(delay)


STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=settings.retry_max_attempts,
    base_delay=settings.retry_base_delay,
    max_delay=settings.retry_max_delay,
)
