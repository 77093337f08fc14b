"""Back-off policy and retry strategy for cluster operations."""

import time
import random
from dataclasses import dataclass
from typing import Callable, TypeVar, Optional
from functools import wraps

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as URLLibHTTPError

from phased_deploy.utils.errors import ClusterError
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential back-off: base * multiplier**attempt, capped at max_interval."""

    base_interval: float = 2.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    jitter: bool = False

    def delay(self, attempt: int) -> float:
        """Calculate the delay before the next attempt.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_interval * (self.multiplier ** attempt),
            self.max_interval
        )

        # Jitter adds up to 10% and never pushes past the cap
        if self.jitter:
            delay = min(delay + random.uniform(0, delay * 0.1), self.max_interval)

        return delay


class RetryStrategy:
    """Retries transient cluster API errors with exponential back-off."""

    # HTTP statuses from the API server that are worth retrying
    RETRYABLE_STATUS_CODES = {409, 429, 500, 502, 503, 504}

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        URLLibHTTPError,
    )

    def __init__(
        self,
        max_retries: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            backoff: Delay policy between attempts
            sleep: Function used to wait between attempts (default ``time.sleep``)
        """
        self.max_retries = max_retries
        self.backoff = backoff or BackoffPolicy(base_interval=1.0, max_interval=10.0, jitter=True)
        self.sleep = sleep or time.sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(error, ClusterError):
            return error.transient

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ApiException):
            return error.status in self.RETRYABLE_STATUS_CODES

        return False

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if it is not retryable or retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.backoff.delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)
                attempt += 1


def with_retry(
    max_retries: int = 3,
    base_interval: float = 1.0,
    max_interval: float = 10.0,
    multiplier: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Example:
        @with_retry(max_retries=3, base_interval=2.0)
        def read_lease(api, name, namespace):
            return api.read_namespaced_lease(name, namespace)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                backoff=BackoffPolicy(
                    base_interval=base_interval,
                    max_interval=max_interval,
                    multiplier=multiplier,
                    jitter=jitter
                )
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
