# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting for auth endpoints (brute-force protection).

One limiter instance lives on app.state; it is not module state, so tests can
build their own with a fake clock. Counters are per process: a multi-worker
deployment gets one budget per worker.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from tessera_server.config import settings
from tessera_server.services.audit import client_ip


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Fixed-window attempt counter per key. Every check counts as an attempt."""

    # Sweep stale windows at most this often (seconds)
    SWEEP_INTERVAL = 60

    def __init__(
        self,
        max_attempts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, _Window] = {}
        self._last_sweep = clock()

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()
        self._maybe_sweep(now)
        window = self._windows.get(key)
        if window is None or window.reset_at <= now:
            window = _Window(count=0, reset_at=now + self.window_seconds)
            self._windows[key] = window
        window.count += 1
        if window.count > self.max_attempts:
            return RateLimitResult(allowed=False, remaining=0, reset_at=window.reset_at)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_attempts - window.count,
            reset_at=window.reset_at,
        )

    def retry_after(self, result: RateLimitResult) -> int:
        return max(1, math.ceil(result.reset_at - self.clock()))

    def sweep(self, now: float | None = None) -> int:
        """Drop expired windows. Returns how many were dropped."""
        now = self.clock() if now is None else now
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        return len(expired)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.SWEEP_INTERVAL:
            self.sweep(now)

    def __len__(self) -> int:
        return len(self._windows)


def login_limiter_from_settings() -> RateLimiter:
    return RateLimiter(
        max_attempts=settings.login_rate_limit_max,
        window_seconds=settings.login_rate_limit_window_seconds,
    )


def get_login_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "login_limiter", None)
    if limiter is None:
        limiter = request.app.state.login_limiter = login_limiter_from_settings()
    return limiter


def enforce_login_rate_limit(request: Request) -> None:
    """Raise 429 with Retry-After once this client address is over the login budget."""
    limiter = get_login_limiter(request)
    result = limiter.check(f"login:{client_ip(request) or 'unknown'}")
    if not result.allowed:
        retry_after = limiter.retry_after(result)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "Too many requests. Please try again later.", "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
