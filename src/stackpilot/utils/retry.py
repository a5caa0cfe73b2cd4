"""Retry strategy with exponential backoff for driver calls."""

import random
import threading
import time
from typing import Callable, TypeVar, Optional

from stackpilot.utils.errors import EngineError, TransientDriverError, error_handler
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors.

    Only ``TransientDriverError`` is retried; exceptions that are not yet
    engine errors are classified first, so a botocore throttling error or a
    ``ConnectionError`` is retried while an ``AccessDenied`` is not.
    """

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Maximum number of attempts, including the first one
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Number of attempts made so far (1-indexed)

        Returns:
            True if the error is transient and attempts remain
        """
        if attempt >= self.max_attempts:
            return False
        if not isinstance(error, EngineError):
            error = error_handler.classify(error)
        return isinstance(error, TransientDriverError)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Number of attempts made so far (1-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        # Add jitter if enabled (random value between 0 and 10% of delay)
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[[], T],
        cancel_event: Optional[threading.Event] = None,
        on_attempt: Optional[Callable[[int], None]] = None
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Zero-argument callable to execute
            cancel_event: When set, no further attempts are started
            on_attempt: Called with the attempt number before each attempt

        Returns:
            Result of the function call

        Raises:
            The last exception if it is not retryable, the attempt budget is
            exhausted, or the run was cancelled while backing off
        """
        attempt = 0

        while True:
            attempt += 1
            if on_attempt:
                on_attempt(attempt)

            try:
                result = func()
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt > 1:
                        logger.error(f"Giving up after {attempt} attempts: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )

                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        logger.warning("Run cancelled while waiting to retry")
                        raise
                elif delay > 0:
                    time.sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Operation succeeded after {attempt - 1} retries")
            return result
