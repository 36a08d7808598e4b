"""Fixed-window call budget per external API."""
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from common.logging import LoggingManager

logger = LoggingManager.get_logger('ghintel.rate_limiter')


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: Optional[int] = None


class _Window:
    __slots__ = ("limit", "remaining", "started_at")

    def __init__(self, limit: int, started_at: float):
        self.limit = limit
        self.remaining = limit
        self.started_at = started_at


class RateLimiter:
    """Tracks remaining calls per named API inside a fixed time window.

    Every API gets `limit` tokens at the start of a window. `try_acquire`
    takes one token per request if enough are left and never blocks:
    callers decide whether to skip or come back later.
    """

    def __init__(self, limits: Dict[str, int], window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        now = clock()
        self._windows = {name: _Window(int(limit), now) for name, limit in limits.items()}

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        return cls(config.rate_limits, window_seconds=config.rate_limit_window_seconds, clock=clock)

    def _current(self, api_name: str, now: float) -> _Window:
        # KeyError for unknown names is intentional.
        window = self._windows[api_name]
        elapsed = now - window.started_at
        if elapsed >= self.window_seconds:
            # Align to window boundaries so long idle periods do not drift.
            periods = math.floor(elapsed / self.window_seconds)
            window.started_at += periods * self.window_seconds
            window.remaining = window.limit
        return window

    def _retry_after_ms(self, window: _Window, now: float) -> int:
        remaining_s = window.started_at + self.window_seconds - now
        return max(1, math.ceil(remaining_s * 1000))

    def try_acquire(self, api_name: str, tokens: int = 1) -> RateLimitDecision:
        """Take `tokens` call tokens for `api_name` if the current window has that many left."""
        with self._lock:
            now = self._clock()
            window = self._current(api_name, now)
            if window.remaining >= tokens:
                window.remaining -= tokens
                return RateLimitDecision(allowed=True)
            retry_after_ms = self._retry_after_ms(window, now)
        logger.debug(f"Rate limit for '{api_name}' exhausted, retry after {retry_after_ms} ms")
        return RateLimitDecision(allowed=False, retry_after_ms=retry_after_ms)

    def status(self, api_name: str) -> dict:
        with self._lock:
            now = self._clock()
            window = self._current(api_name, now)
            return {
                "limit": window.limit,
                "remaining": window.remaining,
                "reset_in_ms": self._retry_after_ms(window, now),
            }

    def status_all(self) -> Dict[str, dict]:
        return {name: self.status(name) for name in self._windows}

    def reconcile(self, api_name: str, upstream_remaining: int,
                  reset_at: Optional[datetime] = None) -> None:
        """Lower the local budget when the upstream service reports less quota.

        The upstream quota (e.g. GitHub's X-RateLimit-Remaining) is shared with
        every other consumer of the same token, so the local count may only go
        down here, never up. When the upstream quota is gone, the window is
        held until `reset_at` if that lies beyond the current window.
        """
        with self._lock:
            now = self._clock()
            window = self._current(api_name, now)
            if upstream_remaining < window.remaining:
                logger.info(f"Reconciling '{api_name}' budget from {window.remaining} to {upstream_remaining} "
                            f"remaining upstream")
                window.remaining = max(0, upstream_remaining)
            if upstream_remaining <= 0 and reset_at is not None:
                if reset_at.tzinfo is None:
                    reset_at = reset_at.replace(tzinfo=timezone.utc)
                seconds_to_reset = (reset_at - datetime.now(timezone.utc)).total_seconds()
                window_end = window.started_at + self.window_seconds
                if now + seconds_to_reset > window_end:
                    # Shift the window so it ends at the upstream reset.
                    window.started_at = now + seconds_to_reset - self.window_seconds

    def reset(self, api_name: Optional[str] = None) -> None:
        with self._lock:
            now = self._clock()
            names = [api_name] if api_name else list(self._windows)
            for name in names:
                window = self._windows[name]
                window.started_at = now
                window.remaining = window.limit
