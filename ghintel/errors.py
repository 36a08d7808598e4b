"""Exception taxonomy shared by the clients, the storage layer and the orchestrator."""
import time
from functools import wraps
from typing import Optional, Callable, Any

from common.logging import LoggingManager

logger = LoggingManager.get_logger('ghintel.errors')


class GhIntelError(Exception):
    """Base class for errors raised while processing a repository."""
    pass


class RateLimitExceeded(GhIntelError):
    """Raised when a call is refused because a rate limit is exhausted."""
    def __init__(self, message: str, retry_after_ms: Optional[int] = None):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class UpstreamError(GhIntelError):
    """Non-success response (or no response at all) from an external API."""
    def __init__(self, service: str, status: Optional[int] = None, body: Any = None, message: Optional[str] = None):
        super().__init__(message or f"{service} request failed with status {status}: {body}")
        self.service = service
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        # Connection failures carry no status.
        return self.status is None or self.status >= 500


class UpstreamRateLimited(UpstreamError, RateLimitExceeded):
    """HTTP 429 (or GitHub's 403 rate limit variant) from an external API."""
    def __init__(self, service: str, status: Optional[int] = 429, body: Any = None, retry_after_ms: Optional[int] = None):
        UpstreamError.__init__(self, service, status, body,
                               message=f"{service} rate limit hit (status {status})")
        self.retry_after_ms = retry_after_ms

    @property
    def retryable(self) -> bool:
        return False


class ModelResponseError(GhIntelError):
    """The model answered, but not with the structured JSON we asked for."""
    def __init__(self, message: str, raw_response: str):
        super().__init__(message)
        self.raw_response = raw_response


class PersistenceError(GhIntelError):
    """A database operation failed."""
    pass


RETRY_DELAY_SECONDS = 1.0


def retry_on_failure(max_retries: int = 1, delay: float = RETRY_DELAY_SECONDS, backoff: float = 2.0):
    """Decorator to retry a function on transient upstream failure.

    Only UpstreamError instances that are retryable (5xx or no response) are
    retried. Client errors and rate limits propagate immediately.

    When the call passes a `time_budget` keyword (seconds), the retry is
    only made if time is left after the delay, and the retried call gets
    the reduced budget.

    Args:
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            current_delay = delay
            budget = kwargs.get("time_budget")
            started = time.monotonic()
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except UpstreamError as e:
                    if not e.retryable or attempt >= max_retries:
                        raise
                    logger.warning(f"Attempt {attempt + 1}/{max_retries + 1} of {func.__name__} failed: {e}")
                    if budget is not None:
                        left = budget - (time.monotonic() - started) - current_delay
                        if left <= 0:
                            logger.warning(f"Not retrying {func.__name__}: time budget of {budget:.1f}s used up")
                            raise
                        kwargs["time_budget"] = left
                    logger.info(f"Retrying in {current_delay:.2f} seconds...")
                    time.sleep(current_delay)
                    current_delay *= backoff
            return None

        return wrapper

    return decorator
