"""
In-memory sliding window rate limiting for the auth endpoints.

Each limiter keeps, per key, the timestamps of the recent attempts. State is
per process: a restart forgets every window.
"""
from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from . import config
from .exceptions import RateLimitError
from .logger import get_logger

logger = get_logger(__name__)


class SlidingWindowLimiter:
    def __init__(self, prefix: str, max_attempts: int, window_seconds: int,
                 clock: Callable[[], float] = time.monotonic):
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = defaultdict(list)

    def _cleanup(self, key: str, now: float) -> None:
        cutoff = now - self.window_seconds
        self._hits[key] = [t for t in self._hits[key] if t > cutoff]

    def hit(self, key: str) -> int:
        """
        Register an attempt for key. Returns the attempts left in the window,
        raises RateLimitError when the window is already full.
        """
        full_key = f"{self.prefix}:{key}"
        now = self._clock()
        self._cleanup(full_key, now)
        hits = self._hits[full_key]

        if len(hits) >= self.max_attempts:
            reset_in = int(hits[0] + self.window_seconds - now) + 1
            logger.warning("Rate limit hit for %s (retry in %ss)", full_key, reset_in)
            raise RateLimitError(f"Too many attempts. Try again in {reset_in} seconds.", reset_in)

        hits.append(now)
        return self.max_attempts - len(hits)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(f"{self.prefix}:{key}", None)


login_limiter = SlidingWindowLimiter("login", config.LOGIN_RATE_LIMIT, config.LOGIN_RATE_WINDOW_SECONDS)
otp_send_limiter = SlidingWindowLimiter("otp_send", config.OTP_SEND_RATE_LIMIT, config.OTP_SEND_RATE_WINDOW_SECONDS)
otp_verify_limiter = SlidingWindowLimiter(
    "otp_verify", config.OTP_VERIFY_RATE_LIMIT, config.OTP_VERIFY_RATE_WINDOW_SECONDS
)


def reset_all() -> None:
    for limiter in (login_limiter, otp_send_limiter, otp_verify_limiter):
        limiter.reset()
