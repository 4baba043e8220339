"""
Sliding window rate limiting for the access endpoints.

Two interchangeable backends sit behind the ``RateLimiter`` protocol:

* ``InMemoryRateLimiter`` keeps per-key timestamp windows in process memory.
  Limits are per instance only.
* ``RedisRateLimiter`` keeps each window in a Redis sorted set so every
  instance shares the same counts. Redis errors fail open.

Routes opt in through the ``rate_limit(policy)`` dependency, which keys the
window on (policy, actor, route template).
"""

from __future__ import annotations

import inspect
import ipaddress
import math
import secrets
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Annotated, Literal, Protocol

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request, Response, status

from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.core.security.oidc import CurrentUser

logger = get_logger(__name__)

PolicyName = Literal["api", "download", "query"]

# Module-level Redis connection shared across requests
_redis: redis.Redis | None = None


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    reset_after: int


def get_policy(name: PolicyName) -> RateLimitPolicy:
    """Resolve a named policy from settings."""
    settings = get_settings()
    if name == "api":
        return RateLimitPolicy(
            "api", settings.rate_limit_api_max_requests, settings.rate_limit_api_window_seconds
        )
    if name == "download":
        return RateLimitPolicy(
            "download",
            settings.rate_limit_download_max_requests,
            settings.rate_limit_download_window_seconds,
        )
    if name == "query":
        return RateLimitPolicy(
            "query",
            settings.rate_limit_query_max_requests,
            settings.rate_limit_query_window_seconds,
        )
    raise ValueError(f"Unknown rate limit policy: {name}")


def build_rate_limit_key(policy: str, user_id: str, endpoint: str) -> str:
    return f"{policy}:{user_id}:{endpoint}"


class RateLimiter(Protocol):
    async def hit(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision: ...


class InMemoryRateLimiter:
    """
    Process-local sliding window limiter.

    Windows are shared by every request handled by this process and guarded
    by a lock. Each instance counts independently, so N instances allow up
    to N times the configured limit.
    """

    SWEEP_EVERY = 1000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, deque[float]] = {}
        self._window_seconds: dict[str, int] = {}
        self._hits = 0

    async def hit(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._window_seconds[key] = policy.window_seconds
            self._prune(window, now - policy.window_seconds)

            if len(window) >= policy.max_requests:
                retry_after = max(1, math.ceil(window[0] + policy.window_seconds - now))
                return RateLimitDecision(
                    allowed=False,
                    limit=policy.max_requests,
                    remaining=0,
                    retry_after=retry_after,
                    reset_after=retry_after,
                )

            window.append(now)
            self._hits += 1
            if self._hits % self.SWEEP_EVERY == 0:
                self._sweep(now)

            return RateLimitDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests - len(window),
                retry_after=0,
                reset_after=max(1, math.ceil(window[0] + policy.window_seconds - now)),
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
                self._window_seconds.clear()
            else:
                self._windows.pop(key, None)
                self._window_seconds.pop(key, None)

    @staticmethod
    def _prune(window: deque[float], cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()

    def _sweep(self, now: float) -> None:
        """Drop idle keys so the map does not grow with every actor ever seen."""
        for key in list(self._windows):
            window = self._windows[key]
            self._prune(window, now - self._window_seconds.get(key, 0))
            if not window:
                del self._windows[key]
                self._window_seconds.pop(key, None)


# KEYS[1] window key; ARGV: now_ms, window_ms, max_requests, member
_SLIDING_WINDOW_LUA = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1] - ARGV[2])
local count = redis.call('ZCARD', KEYS[1])
if count < tonumber(ARGV[3]) then
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    count = count + 1
    local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
    return {1, count, oldest[2]}
end
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
return {0, count, oldest[2]}
"""


class RedisRateLimiter:
    """Sliding window limiter shared across instances through Redis sorted sets."""

    KEY_PREFIX = "rl:access:"

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[redis.Redis | None]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_factory = client_factory or get_redis
        self._clock = clock

    async def hit(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        client = await self._client_factory()
        if client is None:
            return self._fail_open(policy)

        now_ms = int(self._clock() * 1000)
        window_ms = policy.window_seconds * 1000
        member = f"{now_ms}-{secrets.token_hex(4)}"
        try:
            result = client.eval(
                _SLIDING_WINDOW_LUA,
                1,
                self.KEY_PREFIX + key,
                now_ms,
                window_ms,
                policy.max_requests,
                member,
            )
            allowed, count, oldest = await result if inspect.isawaitable(result) else result
        except Exception:
            logger.warning(
                "rate_limit_redis_error", key=key, policy=policy.name, exc_info=True
            )
            return self._fail_open(policy)

        oldest_ms = float(oldest) if oldest is not None else float(now_ms)
        reset_after = max(1, math.ceil((oldest_ms + window_ms - now_ms) / 1000))
        if int(allowed) != 1:
            return RateLimitDecision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                retry_after=reset_after,
                reset_after=reset_after,
            )
        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - int(count)),
            retry_after=0,
            reset_after=reset_after,
        )

    @staticmethod
    def _fail_open(policy: RateLimitPolicy) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            retry_after=0,
            reset_after=policy.window_seconds,
        )


def _get_rate_limit_redis_url() -> str:
    """Return the Redis URL for rate limiting (separate DB to avoid LRU eviction)."""
    settings = get_settings()
    if settings.redis_rate_limit_url:
        return str(settings.redis_rate_limit_url)
    # Default: use DB 1 of the same Redis instance (cache uses DB 0)
    base = str(settings.redis_url)
    if base.endswith("/0"):
        return base[:-1] + "1"
    return base


async def get_redis() -> redis.Redis | None:
    """Get or create the module-level Redis connection for rate limiting."""
    global _redis
    if _redis is None:
        try:
            url = _get_rate_limit_redis_url()
            _redis = redis.from_url(url, decode_responses=True)  # type: ignore[no-untyped-call]
            ping_result = _redis.ping()
            if inspect.isawaitable(ping_result):
                await ping_result
        except Exception:
            logger.warning("rate_limit_redis_unavailable")
            _redis = None
    return _redis


async def close_redis() -> None:
    """Close the Redis connection (call at shutdown)."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Dependency returning the process-wide limiter for the configured backend."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        if settings.rate_limit_backend == "redis":
            _limiter = RedisRateLimiter()
        else:
            _limiter = InMemoryRateLimiter()
    return _limiter


def _is_trusted_proxy(remote_ip: str) -> bool:
    """Check whether *remote_ip* falls within a configured trusted proxy CIDR."""
    settings = get_settings()
    try:
        addr = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    return any(
        addr in ipaddress.ip_network(cidr, strict=False) for cidr in settings.trusted_proxy_cidrs
    )


def get_client_ip(request: Request) -> str:
    """Extract real client IP, only trusting proxy headers from known proxies.

    If the direct connection comes from a trusted proxy CIDR, the
    X-Forwarded-For / X-Real-IP headers are honoured.  Otherwise the
    connection's remote address is returned directly, preventing IP spoofing.
    """
    connection_ip = request.client.host if request.client else "unknown"

    if connection_ip == "unknown" or not _is_trusted_proxy(connection_ip):
        return connection_ip

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Leftmost entry is the originating client
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return connection_ip


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return str(path) if path else request.url.path


async def enforce_rate_limit(
    limiter: RateLimiter,
    policy_name: PolicyName,
    subject: str,
    request: Request,
) -> dict[str, str]:
    """
    Count one request for ``subject`` on the current route.

    Returns the ``X-RateLimit-*`` headers for the response, or raises 429
    with ``retryAfter`` seconds in the body and the ``Retry-After`` header.
    """
    policy = get_policy(policy_name)
    endpoint = _route_template(request)
    decision = await limiter.hit(build_rate_limit_key(policy.name, subject, endpoint), policy)

    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_after),
    }
    if not decision.allowed:
        logger.warning(
            "rate_limit_exceeded",
            policy=policy.name,
            subject=subject,
            endpoint=endpoint,
            client_ip=get_client_ip(request),
            retry_after=decision.retry_after,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": "Too many requests, please try again later",
                "retryAfter": decision.retry_after,
            },
            headers={**headers, "Retry-After": str(decision.retry_after)},
        )
    return headers


def rate_limit(policy_name: PolicyName) -> Callable[..., Awaitable[None]]:
    """Build a route dependency enforcing the named policy per actor and route."""

    async def _enforce(
        request: Request,
        response: Response,
        user: CurrentUser,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> None:
        if not get_settings().rate_limit_enabled:
            return
        headers = await enforce_rate_limit(limiter, policy_name, user.sub, request)
        response.headers.update(headers)

    return _enforce
