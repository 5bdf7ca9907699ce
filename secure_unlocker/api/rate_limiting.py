"""
Failure Rate Limiting

Per-client failure budgets for two independent classes:
- auth: failed signature checks (default 20 per 15 minutes)
- mount: failed mount/unmount operations (default 10 per 15 minutes)

Only failures are counted; successful requests neither increment nor reset
a window. Each window is a fixed bucket anchored at the client's first
failure and expires as a whole.
"""
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from secure_unlocker.core.signing.verify import is_exempt_path

logger = logging.getLogger(__name__)

# Routes whose responses report the mount class
MOUNT_ROUTE_PREFIXES = ("/mount/", "/unmount/")


class LimitClass(str, Enum):
    """Rate-limit counter classes."""
    AUTH = "auth"
    MOUNT = "mount"


@dataclass
class RateWindow:
    """Failure count of one client for one class."""
    started_at: float
    failures: int = 0


@dataclass
class RateDecision:
    """
    Admission decision plus the numbers exposed in RateLimit-* headers.

    Attributes:
        allowed: Whether the request may proceed
        limit: Failure budget of the class
        remaining: Failures left before requests are denied
        reset_seconds: Seconds until the current window expires
    """
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    @property
    def retry_after(self) -> int:
        return max(1, self.reset_seconds)

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


class FailureRateLimiter:
    """
    Fixed-window failure counter keyed by (client, class).

    All reads and writes go through one lock; the counters are the only
    state mutated by concurrent requests.
    """

    def __init__(
        self,
        limits: Optional[Dict[LimitClass, int]] = None,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = limits or {LimitClass.AUTH: 20, LimitClass.MOUNT: 10}
        self.window_seconds = window_seconds
        self.clock = clock
        self.windows: Dict[Tuple[str, LimitClass], RateWindow] = {}
        self.lock = Lock()

        logger.info(
            "Rate limiter initialized: "
            + ", ".join(f"{cls.value}={limit}" for cls, limit in self.limits.items())
            + f" failures per {window_seconds}s"
        )

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "FailureRateLimiter":
        return cls(
            limits={
                LimitClass.AUTH: settings.auth_failure_limit,
                LimitClass.MOUNT: settings.mount_failure_limit,
            },
            window_seconds=settings.rate_limit_window_seconds,
            clock=clock,
        )

    def _window(self, client: str, limit_class: LimitClass, now: float) -> Optional[RateWindow]:
        key = (client, limit_class)
        window = self.windows.get(key)
        if window is not None and now - window.started_at >= self.window_seconds:
            del self.windows[key]
            return None
        return window

    def _decision(self, window: Optional[RateWindow], limit_class: LimitClass, now: float) -> RateDecision:
        limit = self.limits[limit_class]
        if window is None:
            return RateDecision(True, limit, limit, self.window_seconds)
        reset = max(0, math.ceil(window.started_at + self.window_seconds - now))
        return RateDecision(
            allowed=window.failures < limit,
            limit=limit,
            remaining=max(0, limit - window.failures),
            reset_seconds=reset,
        )

    def status(self, client: str, limit_class: LimitClass) -> RateDecision:
        """Current quota without changing anything."""
        with self.lock:
            now = self.clock()
            return self._decision(self._window(client, limit_class, now), limit_class, now)

    def admit(self, client: str, limit_class: LimitClass) -> RateDecision:
        """Decide whether a request from client may proceed for limit_class."""
        decision = self.status(client, limit_class)
        if not decision.allowed:
            logger.warning(
                f"SECURITY: {limit_class.value} rate limit exceeded for {client} "
                f"(retry in {decision.retry_after}s)"
            )
        return decision

    def record_outcome(self, client: str, limit_class: LimitClass, succeeded: bool) -> RateDecision:
        """Record an outcome. Successes are not counted."""
        if succeeded:
            return self.status(client, limit_class)

        with self.lock:
            now = self.clock()
            window = self._window(client, limit_class, now)
            if window is None:
                window = RateWindow(started_at=now)
                self.windows[(client, limit_class)] = window
            window.failures += 1
            failures = window.failures
            decision = self._decision(window, limit_class, now)

        logger.warning(
            f"SECURITY: {limit_class.value} failure from {client} "
            f"({failures}/{decision.limit} in window)"
        )
        return decision

    def record_failure(self, client: str, limit_class: LimitClass) -> RateDecision:
        return self.record_outcome(client, limit_class, succeeded=False)

    def cleanup_old_entries(self) -> int:
        """Remove expired windows. Returns the number removed."""
        with self.lock:
            now = self.clock()
            expired = [
                key for key, window in self.windows.items()
                if now - window.started_at >= self.window_seconds
            ]
            for key in expired:
                del self.windows[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired rate-limit windows")
        return len(expired)


def limit_class_for_path(path: str) -> LimitClass:
    """Rate-limit class reported for a route."""
    if path.startswith(MOUNT_ROUTE_PREFIXES):
        return LimitClass.MOUNT
    return LimitClass.AUTH


def client_key(request: Request) -> str:
    """Rate-limit key of a request: the peer address of the connection."""
    return request.client.host if request.client else "unknown"


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add RateLimit-Limit / -Remaining / -Reset to responses of limited routes.

    Values reflect the quota after the request was handled, for the class
    the route belongs to.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        path = request.url.path
        limiter: Optional[FailureRateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or is_exempt_path(path) or request.method == "OPTIONS":
            return response

        decision = limiter.status(client_key(request), limit_class_for_path(path))
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
