from __future__ import annotations

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from fastapi import Response
from redis import Redis

from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    """A per-client budget of ``limit`` requests every ``window_seconds``."""

    name: str
    limit: int
    window_seconds: int
    message: str

    @classmethod
    def build(cls, name: str, limit: int, window_seconds: int, message: str) -> "RateLimitPolicy":
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=name,
                window_seconds=window_seconds,
                fallback=DEFAULT_WINDOW_SECONDS,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        return cls(name, limit, window_seconds, message)

    @classmethod
    def api(cls, settings: Settings) -> "RateLimitPolicy":
        return cls.build(
            "api",
            settings.api_rate_limit,
            settings.api_rate_window_seconds,
            "Too many requests from this IP, please try again later",
        )

    @classmethod
    def login(cls, settings: Settings) -> "RateLimitPolicy":
        return cls.build(
            "login",
            settings.login_rate_limit,
            settings.login_rate_window_seconds,
            "Too many login attempts, please try again later",
        )

    @property
    def unlimited(self) -> bool:
        return self.limit <= 0

    @property
    def refill_per_second(self) -> float:
        return self.limit / self.window_seconds

    def key(self, subject: str) -> str:
        """Bucket key for ``subject``; the subject is hashed so it cannot forge other keys."""
        digest = hashlib.sha256(subject.encode("utf-8", "surrogateescape")).hexdigest()
        return f"rate:{self.name}:{digest[:32]}"

    def seconds_until_token(self, level: float) -> int:
        if level >= 1:
            return 0
        return max(1, math.ceil((1 - level) / self.refill_per_second))


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    @classmethod
    def from_level(cls, policy: RateLimitPolicy, allowed: bool, level: float) -> "RateLimitDecision":
        retry_after = 0 if allowed else policy.seconds_until_token(level)
        return cls(allowed, policy.limit, max(0, int(level)), retry_after)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(self.remaining)
        response.headers["X-RateLimit-Reset"] = str(self.retry_after)


class LocalBuckets:
    """Token buckets held in this process.

    Buckets that have refilled to capacity carry no state worth keeping, so
    they are swept every ``sweep_interval`` seconds. If the table still grows
    past ``max_keys`` the least recently used buckets are evicted.
    """

    def __init__(
        self,
        *,
        max_keys: int = 10_000,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_keys = max_keys
        self.sweep_interval = sweep_interval
        self._clock = clock
        # key -> (level, updated_at, full_at); insertion order tracks recency
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def take(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        now = self._clock()
        rate = policy.refill_per_second
        with self._lock:
            level, updated_at, _ = self._buckets.pop(key, (float(policy.limit), now, now))
            level = min(float(policy.limit), level + max(0.0, now - updated_at) * rate)
            allowed = level >= 1
            if allowed:
                level -= 1
            self._buckets[key] = (level, now, now + (policy.limit - level) / rate)
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)
            while len(self._buckets) > self.max_keys:
                self._buckets.pop(next(iter(self._buckets)))
        return RateLimitDecision.from_level(policy, allowed, level)

    def _sweep(self, now: float) -> None:
        full = [key for key, (_, _, full_at) in self._buckets.items() if full_at <= now]
        for key in full:
            del self._buckets[key]
        self._last_sweep = now
        if full:
            logger.debug("rate_limit_buckets_swept", removed=len(full), remaining=len(self._buckets))


class RedisBuckets:
    """Token buckets shared by every process through Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # KEYS[1] bucket hash. ARGV: now in ms, capacity, tokens regained per ms.
    # The level is returned as a string because Redis truncates Lua numbers.
    _TAKE_SCRIPT = """
local now_ms = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local per_ms = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now_ms
level = math.min(capacity, level + math.max(0, now_ms - at) * per_ms)

local granted = 0
if level >= 1 then
  level = level - 1
  granted = 1
end

redis.call('HSET', KEYS[1], 'level', tostring(level), 'at', tostring(now_ms))
redis.call('PEXPIRE', KEYS[1], math.max(1, math.ceil((capacity - level) / per_ms)))
return {granted, tostring(level)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._take = self.client.register_script(self._TAKE_SCRIPT)

    def ping(self) -> None:
        """Blocking connectivity check for startup and ``/health``."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        client = Redis.from_url(
            self.redis_url,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            client.ping()
        finally:
            client.close()

    async def take(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        granted, level = await self._take(
            keys=[key],
            args=[
                int(time.time() * 1000),
                policy.limit,
                policy.refill_per_second / 1000.0,
            ],
        )
        return RateLimitDecision.from_level(policy, bool(int(granted)), float(level))

    async def close(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """Applies the API and login policies against Redis or local buckets."""

    def __init__(
        self,
        settings: Settings,
        *,
        redis: Optional[RedisBuckets] = None,
        local: Optional[LocalBuckets] = None,
    ) -> None:
        self.enabled = settings.rate_limit_enabled
        self.redis = redis
        self.local = local or LocalBuckets()
        self.api = RateLimitPolicy.api(settings)
        self.login = RateLimitPolicy.login(settings)

    @property
    def shared(self) -> bool:
        return self.redis is not None

    async def hit(self, policy: RateLimitPolicy, subject: str) -> Optional[RateLimitDecision]:
        """Spend one request from ``subject``'s budget.

        Returns ``None`` when limiting is off or the policy is unlimited.
        """
        if not self.enabled or policy.unlimited:
            return None
        key = policy.key(subject)
        if self.redis is not None:
            decision = await self.redis.take(policy, key)
        else:
            decision = self.local.take(policy, key)
        if not decision.allowed:
            logger.warning("rate_limited", policy=policy.name, retry_after=decision.retry_after)
        return decision

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
