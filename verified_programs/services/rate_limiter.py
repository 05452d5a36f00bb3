"""
Rate Limiter for the public intake

Fixed-window counters in Redis, checked before any orchestrator work:
- verify: 1 request per client per 30s, 1 request per second overall
- status: 100 requests per client per second, 10000 per second overall

Design:
- Key: ratelimit:{scope}:{client}:{window index}
- INCR and EXPIRE run in one Lua script (no counter without expiry)
- The (N+1)th request inside a window is rejected; the next window starts
  from zero
- Redis unavailable -> fail open (logged), a cache outage must not take the
  API down with it
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import HTTPException, Request, status
from loguru import logger

from verified_programs.core.config import settings

SCOPE_VERIFY = "verify"
SCOPE_STATUS = "status"
GLOBAL_KEY = "global"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    counted: bool = True


def default_rules() -> Dict[str, Dict[str, RateLimitRule]]:
    return {
        SCOPE_VERIFY: {
            "client": RateLimitRule(settings.VERIFY_RATE_LIMIT, settings.VERIFY_RATE_WINDOW_SECONDS),
            "global": RateLimitRule(settings.VERIFY_GLOBAL_RATE_LIMIT, settings.VERIFY_GLOBAL_RATE_WINDOW_SECONDS),
        },
        SCOPE_STATUS: {
            "client": RateLimitRule(settings.STATUS_RATE_LIMIT, settings.STATUS_RATE_WINDOW_SECONDS),
            "global": RateLimitRule(settings.STATUS_GLOBAL_RATE_LIMIT, settings.STATUS_GLOBAL_RATE_WINDOW_SECONDS),
        },
    }


def counter_key(scope: str, key: str, rule: RateLimitRule, now: float) -> str:
    return f"ratelimit:{scope}:{key}:{int(now // rule.window_seconds)}"


class RateLimiter:
    def __init__(
        self,
        cache,
        rules: Optional[Dict[str, Dict[str, RateLimitRule]]] = None,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ):
        self.cache = cache
        self.rules = rules or default_rules()
        self.clock = clock
        self.metrics = metrics

    async def allow(self, client_key: str, scope: str = SCOPE_VERIFY) -> RateLimitDecision:
        """
        Count one request from ``client_key`` in ``scope``.

        The per-client bucket is checked first; a request it rejects does not
        consume the global budget, and a request the global bucket rejects
        gets its client slot back.
        """
        rules = self.rules[scope]
        now = self.clock()
        decision = await self._hit(scope, client_key, rules["client"], now)
        if decision.allowed and "global" in rules:
            global_decision = await self._hit(scope, GLOBAL_KEY, rules["global"], now)
            if not global_decision.allowed:
                if decision.counted:
                    await self.cache.decr(counter_key(scope, client_key, rules["client"], now))
                decision = global_decision

        if not decision.allowed:
            logger.warning(f"Rate limited {scope} request from {client_key} (retry in {decision.retry_after}s)")
            if self.metrics:
                self.metrics.rate_limited.labels(scope=scope).inc()
        return decision

    async def _hit(self, scope: str, key: str, rule: RateLimitRule, now: float) -> RateLimitDecision:
        window_index = int(now // rule.window_seconds)
        count = await self.cache.incr_with_expiry(counter_key(scope, key, rule, now), rule.window_seconds + 1)
        if count is None:
            logger.warning(f"Rate limiter cache unavailable, admitting {scope} request from {key}")
            return RateLimitDecision(allowed=True, limit=rule.limit, remaining=rule.limit, counted=False)

        if count > rule.limit:
            window_end = (window_index + 1) * rule.window_seconds
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                remaining=0,
                retry_after=max(1, math.ceil(window_end - now)),
            )
        return RateLimitDecision(allowed=True, limit=rule.limit, remaining=rule.limit - count)


def client_key_from_request(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: str):
    """FastAPI dependency rejecting requests over the ``scope`` limits with 429."""

    async def dependency(request: Request):
        limiter: RateLimiter = request.app.state.services.rate_limiter
        decision = await limiter.allow(client_key_from_request(request), scope)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded for {scope} requests",
                headers={"Retry-After": str(decision.retry_after)},
            )

    return dependency
