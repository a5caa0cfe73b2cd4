"""Tests for retry strategy."""

import threading

import pytest
from botocore.exceptions import ClientError

from stackpilot.utils.errors import PermanentDriverError, TransientDriverError
from stackpilot.utils.retry import RetryStrategy


def client_error(code, status=400):
    return ClientError(
        {'Error': {'Code': code, 'Message': code}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        'TestOperation'
    )


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures, error_factory):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return 'ok'


class TestRetryStrategy:
    """Test retry decisions and backoff."""

    def test_rejects_zero_attempts(self):
        """Test that at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryStrategy(max_attempts=0)

    def test_retries_transient_until_success(self, fast_retry):
        """Test that transient failures are retried."""
        func = Flaky(2, lambda: TransientDriverError("throttled"))
        attempts = []

        assert fast_retry.execute_with_retry(func, on_attempt=attempts.append) == 'ok'
        assert func.calls == 3
        assert attempts == [1, 2, 3]

    def test_gives_up_after_max_attempts(self, fast_retry):
        """Test that the attempt budget is respected."""
        func = Flaky(10, lambda: TransientDriverError("throttled"))

        with pytest.raises(TransientDriverError):
            fast_retry.execute_with_retry(func)
        assert func.calls == 3

    def test_permanent_errors_are_not_retried(self, fast_retry):
        """Test that permanent failures fail immediately."""
        func = Flaky(1, lambda: PermanentDriverError("bad request"))

        with pytest.raises(PermanentDriverError):
            fast_retry.execute_with_retry(func)
        assert func.calls == 1

    def test_classifies_raw_exceptions(self, fast_retry):
        """Test that botocore throttling is retried and access denied is not."""
        assert fast_retry.should_retry(client_error('ThrottlingException'), 1)
        assert fast_retry.should_retry(client_error('Whatever', status=503), 1)
        assert fast_retry.should_retry(ConnectionError("reset"), 1)
        assert not fast_retry.should_retry(client_error('AccessDenied', status=403), 1)
        assert not fast_retry.should_retry(ValueError("bug"), 1)

    def test_no_retry_on_last_attempt(self, fast_retry):
        """Test that the final attempt is never retried."""
        assert not fast_retry.should_retry(TransientDriverError("x"), 3)

    def test_exponential_delay_is_capped(self):
        """Test backoff growth and ceiling."""
        strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, exponential_base=2.0, jitter=False)

        assert strategy.get_delay(1) == 1.0
        assert strategy.get_delay(2) == 2.0
        assert strategy.get_delay(3) == 4.0
        assert strategy.get_delay(4) == 5.0

    def test_jitter_stays_within_ten_percent(self):
        """Test jitter bounds."""
        strategy = RetryStrategy(base_delay=10.0, max_delay=100.0, jitter=True)

        for _ in range(20):
            assert 10.0 <= strategy.get_delay(1) <= 11.0

    def test_cancellation_interrupts_backoff(self):
        """Test that a set cancel event stops retrying."""
        strategy = RetryStrategy(max_attempts=5, base_delay=30.0, max_delay=30.0, jitter=False)
        cancel_event = threading.Event()
        cancel_event.set()
        func = Flaky(10, lambda: TransientDriverError("throttled"))

        with pytest.raises(TransientDriverError):
            strategy.execute_with_retry(func, cancel_event=cancel_event)
        assert func.calls == 1
