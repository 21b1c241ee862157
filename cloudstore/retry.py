import logging
import time

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when every attempt allowed by a RetryPolicy has failed."""

    def __init__(self, attempts, last_error):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """Bounded retries with exponential backoff.

    Args:
        max_attempts: total number of calls, including the first
        base_delay: seconds to wait after the first failure
        max_delay: upper bound on any single wait
        retry_on: exception types that are worth retrying; anything else
            propagates immediately
        sleep: injectable for tests
    """

    def __init__(self, max_attempts=3, base_delay=0.5, max_delay=8.0,
                 retry_on=(Exception,), sleep=time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_on = tuple(retry_on)
        self.sleep = sleep

    def delay_for(self, attempt):
        """Wait before attempt number ``attempt + 1`` (attempts count from 1)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(self, fn, *args, **kwargs):
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except self.retry_on as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(f"Attempt {attempt}/{self.max_attempts} failed ({e}), retrying in {delay:.2f}s")
                self.sleep(delay)
        raise RetryExhausted(self.max_attempts, last_error)
