"""
Rate limiting for Repair Assist.

Each endpoint has a sliding window keyed by client IP, checked before
identity and entitlement. /diagnose also has a window keyed by the verified
user id, so one account cannot spread paid provider calls across many
addresses. X-Forwarded-For is only honoured behind a trusted proxy.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request

from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 10
    window_seconds: int = 60


@dataclass
class LimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindow:
    """Hit timestamps per key for one endpoint.

    Keys whose window has emptied are swept at most once per window, so
    memory is bounded by the callers seen in roughly the last two windows.
    """

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.hits: dict[str, deque] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self.hits)

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, hits in self.hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self.hits[key]

    def hit(self, key: str) -> LimitDecision:
        now = self.clock()
        cutoff = now - self.config.window_seconds
        if now - self._last_sweep >= self.config.window_seconds:
            self._sweep(cutoff)
            self._last_sweep = now

        hits = self.hits.get(key)
        if hits is None:
            hits = self.hits[key] = deque()
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.config.max_requests:
            if hits:
                retry_after = int(hits[0] + self.config.window_seconds - now) + 1
            else:
                retry_after = self.config.window_seconds
            return LimitDecision(False, 0, retry_after)

        hits.append(now)
        return LimitDecision(True, self.config.max_requests - len(hits))


# Diagnosis can fan out to several paid provider calls, so it gets the lowest limits
ENDPOINT_LIMITS = {
    "diagnose": RateLimitConfig(max_requests=10, window_seconds=60),
    "analysis": RateLimitConfig(max_requests=15, window_seconds=60),
    "sessions": RateLimitConfig(max_requests=20, window_seconds=60),
    "session-read": RateLimitConfig(max_requests=60, window_seconds=60),
    "entitlement": RateLimitConfig(max_requests=30, window_seconds=60),
}

USER_LIMITS = {
    "diagnose": RateLimitConfig(max_requests=6, window_seconds=60),
}


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    if trust_forwarded_for:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and forwarded_for.split(",")[0].strip():
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitManager:
    """Per-endpoint windows for IP and user keys."""

    def __init__(
        self,
        trust_forwarded_for: bool = False,
        endpoint_limits: Optional[dict[str, RateLimitConfig]] = None,
        user_limits: Optional[dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.trust_forwarded_for = trust_forwarded_for
        self.endpoint_limits = ENDPOINT_LIMITS if endpoint_limits is None else endpoint_limits
        self.user_limits = USER_LIMITS if user_limits is None else user_limits
        self.clock = clock
        self.windows: dict[tuple[str, str], SlidingWindow] = {}

    def window(self, scope: str, endpoint: str) -> SlidingWindow:
        key = (scope, endpoint)
        if key not in self.windows:
            limits = self.user_limits if scope == "user" else self.endpoint_limits
            self.windows[key] = SlidingWindow(limits.get(endpoint, RateLimitConfig()), self.clock)
        return self.windows[key]

    def _enforce(self, scope: str, endpoint: str, key: str) -> dict:
        window = self.window(scope, endpoint)
        decision = window.hit(key)
        headers = {
            "X-RateLimit-Limit": str(window.config.max_requests),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Window": str(window.config.window_seconds),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after)
            logger.warning(
                "rate limit exceeded",
                endpoint=endpoint,
                scope=scope,
                limit=window.config.max_requests,
                window_s=window.config.window_seconds,
                retry_after_s=decision.retry_after,
            )
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {decision.retry_after} seconds.",
                headers=headers,
            )
        return headers

    def check_ip(self, endpoint: str, request: Request) -> dict:
        """Count a request against the caller's IP. Raises HTTPException(429)."""
        return self._enforce("ip", endpoint, client_ip(request, self.trust_forwarded_for))

    def check_user(self, endpoint: str, user_id: str) -> dict:
        """Count a request against a verified user, where the endpoint has a user limit."""
        if endpoint not in self.user_limits:
            return {}
        return self._enforce("user", endpoint, user_id)
