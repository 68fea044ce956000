"""Fixed-window request limiting per caller key.

Each key gets a `{count, reset_at}` window held in a bounded TTL cache, so
idle callers fall out on their own and memory stays capped however many
distinct keys show up. A burst straddling a window boundary can get up to
twice the limit through; that is the accepted cost of a fixed window.

State is per process. Several app instances each enforce their own quota.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from taxqueue.config import settings
from taxqueue.services.ttl_cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass
class WindowState:
    count: int
    reset_at: float
    first_request: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    window_ms: int
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
            "X-RateLimit-Window": str(math.ceil(self.window_ms / 1000)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        cache_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_requests < 0:
            raise ValueError("max_requests must be non-negative")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock
        self._cache = TTLCache(max_size=cache_size, ttl=window_ms / 1000, clock=clock)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int | None = None) -> RateLimitDecision:
        """Count one request for `key` and decide whether it is admitted."""
        limit = self.max_requests if limit is None else limit
        now = self._clock()
        with self._lock:
            state = self._cache.get(key)
            if state is None or now > state.reset_at:
                state = WindowState(count=0, reset_at=now + self.window_ms / 1000, first_request=now)
            state.count += 1
            self._cache.set(key, state)
            count, reset_at = state.count, state.reset_at

        remaining = max(0, limit - count)
        if count > limit:
            retry_after = math.ceil(reset_at - now)
            logger.warning(f"Rate limit exceeded for {key}: {count}/{limit}, retry after {retry_after}s")
            return RateLimitDecision(False, limit, remaining, reset_at, self.window_ms, retry_after)
        return RateLimitDecision(True, limit, remaining, reset_at, self.window_ms)

    def get_status(self, key: str) -> WindowState | None:
        return self._cache.get(key)

    def reset(self, key: str) -> None:
        self._cache.delete(key)

    def stats(self) -> dict[str, int]:
        """Live window count (expired windows are dropped first) and capacity."""
        self._cache.cleanup_expired()
        return {"size": self._cache.size(), "max": self._cache.max_size}


class AdaptiveRateLimiter:
    """Shrinks the effective limit while the key cache is filling up.

    Occupancy is re-sampled at most once per `check_interval` seconds:
    above 80% the limit is halved, above 60% it drops to 75%, otherwise the
    nominal limit applies.
    """

    def __init__(self, base: RateLimiter, check_interval: float = 30.0):
        self.base = base
        self.check_interval = check_interval
        self.load_factor = 1.0
        self._last_check: float | None = None

    def _update_load_factor(self) -> None:
        now = self.base._clock()
        if self._last_check is not None and now - self._last_check < self.check_interval:
            return
        self._last_check = now

        stats = self.base.stats()
        load = stats["size"] / stats["max"]
        if load > 0.8:
            factor = 0.5
        elif load > 0.6:
            factor = 0.75
        else:
            factor = 1.0
        if factor != self.load_factor:
            logger.info(f"Adaptive rate limit factor {self.load_factor} -> {factor} (cache load {load:.0%})")
        self.load_factor = factor

    @property
    def effective_limit(self) -> int:
        return max(1, math.floor(self.base.max_requests * self.load_factor))

    def check(self, key: str) -> RateLimitDecision:
        self._update_load_factor()
        return self.base.check(key, limit=self.effective_limit)

    def stats(self) -> dict:
        return {**self.base.stats(), "loadFactor": self.load_factor, "effectiveLimit": self.effective_limit}


@dataclass
class NamedLimiter:
    """A limiter plus the key prefix and denial message of one endpoint class."""

    name: str
    limiter: RateLimiter | AdaptiveRateLimiter
    prefix: str = ""
    message: str = "Too many requests, please try again later"

    def check(self, caller: str) -> RateLimitDecision:
        key = f"{self.prefix}:{caller}" if self.prefix else caller
        return self.limiter.check(key)


class RateLimiters:
    """Independent quota pools, one per endpoint class.

    `global` guards every request (see the middleware in main), `burst` every
    jobs route, `job` job creation and `sensitive` maintenance operations.
    """

    def __init__(self, limiters: dict[str, NamedLimiter]):
        self._limiters = limiters

    def __getitem__(self, name: str) -> NamedLimiter:
        return self._limiters[name]

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def names(self) -> list[str]:
        return sorted(self._limiters)

    @classmethod
    def from_settings(cls, clock: Callable[[], float] = time.time) -> "RateLimiters":
        size = settings.RATE_LIMIT_CACHE_SIZE

        def limiter(window_ms: int, max_requests: int) -> RateLimiter:
            return RateLimiter(window_ms, max_requests, cache_size=size, clock=clock)

        window, maximum = settings.RATE_LIMIT_WINDOW_MS, settings.RATE_LIMIT_MAX_REQUESTS
        limiters = [
            NamedLimiter(
                "global",
                AdaptiveRateLimiter(limiter(window, maximum), settings.RATE_LIMIT_ADAPTIVE_INTERVAL),
                message="Too many requests from this IP, please try again later",
            ),
            NamedLimiter("job", limiter(60 * 1000, settings.RATE_LIMIT_JOB_MAX), "job", "Job creation rate limit exceeded"),
            NamedLimiter(
                "burst", limiter(1000, settings.RATE_LIMIT_BURST_MAX), "burst",
                "Request burst limit exceeded, please slow down",
            ),
            NamedLimiter(
                "sensitive", limiter(15 * 60 * 1000, settings.RATE_LIMIT_SENSITIVE_MAX), "sensitive",
                "Too many attempts for sensitive operation, please try again later",
            ),
        ]
        return cls({named.name: named for named in limiters})
