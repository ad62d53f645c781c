"""Fixed-window rate limiting for identity-proving operations.

Redis is the shared store when ``REDIS_URL`` is configured. The first request
in a window increments and sets the expiry inside one Lua script, so two
concurrent "first" requests can never both skip the expiry. Without Redis an
in-process window table with the same semantics is used, unless a shared
store is required, in which case every check is denied.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any, Final

import redis
from redis.exceptions import RedisError

from nostr_stage.core.errors import RateLimited
from nostr_stage.core.settings import settings

logger = logging.getLogger(__name__)

KEY_PREFIX: Final[str] = "ratelimit:"

_INCR_WITH_EXPIRY: Final[str] = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


@dataclass(frozen=True)
class RateLimit:
    limit: int
    window_seconds: int


RATE_LIMITS: Final[dict[str, RateLimit]] = {
    # Per pubkey.
    "auth_nostr": RateLimit(limit=10, window_seconds=60),
    # Per client IP, plus a global backstop against distributed creation.
    "auth_anonymous_per_ip": RateLimit(limit=5, window_seconds=3600),
    "auth_anonymous_global": RateLimit(limit=50, window_seconds=3600),
    # Per token hash.
    "auth_reconnect": RateLimit(limit=10, window_seconds=60),
    # Per client IP.
    "auth_recovery": RateLimit(limit=5, window_seconds=900),
    "link_nostr": RateLimit(limit=10, window_seconds=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: int


class WindowTable:
    """In-process ``key -> (count, reset_at)`` table with bounded size."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.time) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[int, int]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self, now: int) -> None:
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        # Still full: evict the windows closest to expiry.
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            for key, _ in sorted(self._entries.items(), key=lambda item: item[1][1])[:overflow]:
                del self._entries[key]

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = int(self._clock())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[1] <= now:
                if key not in self._entries and len(self._entries) >= self.max_entries:
                    self._prune(now)
                self._entries[key] = (1, now + window_seconds)
                return RateLimitResult(True, max(0, limit - 1), window_seconds)

            count, reset_at = entry[0] + 1, entry[1]
            self._entries[key] = (count, reset_at)
        return RateLimitResult(count <= limit, max(0, limit - count), max(0, reset_at - now))


class RateLimiter:
    """Guard for externally triggered, security-sensitive operations."""

    def __init__(
        self,
        redis_client: Any | None = None,
        *,
        require_shared_store: bool = False,
        memory: WindowTable | None = None,
    ) -> None:
        self._redis = redis_client
        self._script = redis_client.register_script(_INCR_WITH_EXPIRY) if redis_client else None
        self.require_shared_store = require_shared_store
        self.memory = memory if memory is not None else WindowTable()
        self._logged_missing_store = False

    @property
    def shared(self) -> bool:
        return self._redis is not None

    def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        fail_open: bool = False,
    ) -> RateLimitResult:
        """Count one attempt against ``key`` and report whether it is allowed."""
        window_key = f"{KEY_PREFIX}{key}"

        if self._script is not None:
            try:
                count, ttl = self._script(keys=[window_key], args=[window_seconds])
            except RedisError as exc:
                logger.error("Rate limit check failed for %s: %s", key, exc)
                return self._fallback_decision(limit, window_seconds, fail_open)
            count, ttl = int(count), int(ttl)
            return RateLimitResult(count <= limit, max(0, limit - count), ttl)

        if self.require_shared_store:
            if not self._logged_missing_store:
                logger.error(
                    "Rate limiting misconfigured: REDIS_URL is required when "
                    "RATE_LIMIT_REQUIRE_SHARED_STORE is set. Denying requests."
                )
                self._logged_missing_store = True
            return self._fallback_decision(limit, window_seconds, fail_open)

        return self.memory.hit(window_key, limit, window_seconds)

    @staticmethod
    def _fallback_decision(limit: int, window_seconds: int, fail_open: bool) -> RateLimitResult:
        if fail_open:
            return RateLimitResult(True, limit, window_seconds)
        return RateLimitResult(False, 0, window_seconds)

    def enforce(self, name: str, subject: str, *, fail_open: bool = False) -> RateLimitResult:
        """Check a named limit for ``subject`` and raise when it is exceeded.

        Raises:
            RateLimited: Carrying the number of seconds until the window resets.
        """
        rule = RATE_LIMITS[name]
        result = self.check(f"{name}:{subject}", rule.limit, rule.window_seconds, fail_open=fail_open)
        if not result.allowed:
            logger.warning("Rate limit %s exceeded for %s", name, subject[:32])
            raise RateLimited(result.reset_seconds, key=name)
        return result


class _Singleton:
    instance: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter configured from settings."""
    if _Singleton.instance is None:
        client = redis.from_url(settings.redis_url) if settings.redis_url else None
        _Singleton.instance = RateLimiter(
            client,
            require_shared_store=settings.rate_limit_require_shared_store,
        )
    return _Singleton.instance
