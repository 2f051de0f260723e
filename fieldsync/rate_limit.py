"""
Fixed-window request limits keyed by caller identity and endpoint class.

Counting is delegated to `limits`. With the default memory:// storage each
process counts on its own; point RATE_LIMIT_STORAGE_URI at redis:// to share
windows across workers. The storage increments atomically per key.
"""

import math
import time
from typing import Dict, NamedTuple, Optional

from fastapi import HTTPException, Request, status
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from .auth import get_session_user_id
from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)


class RateLimit(NamedTuple):
    limit: int
    window_seconds: int

    @property
    def item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.limit, self.window_seconds)


RATE_LIMITS: Dict[str, RateLimit] = {
    # Login / registration handlers of the auth provider
    "auth": RateLimit(5, 60),
    "api": RateLimit(60, 60),
    # Routes that call the satellite provider
    "data_fetch": RateLimit(10, 60),
    "cron": RateLimit(5, 60),
}


class RateLimitResult(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    reset_at: float


class RateLimiter:
    def __init__(self, storage_uri: Optional[str] = None):
        self.storage = storage_from_string(storage_uri or settings.RATE_LIMIT_STORAGE_URI)
        self.strategy = FixedWindowRateLimiter(self.storage)

    def hit(self, kind: str, identity: str, rule: Optional[RateLimit] = None) -> RateLimitResult:
        """Count one request of class `kind` for `identity` and report whether it is allowed"""
        rule = rule or RATE_LIMITS[kind]
        item = rule.item
        allowed = self.strategy.hit(item, kind, identity)
        reset_at, remaining = self.strategy.get_window_stats(item, kind, identity)
        return RateLimitResult(allowed, rule.limit, remaining if allowed else 0, reset_at)

    def reset(self):
        self.storage.reset()


# Process-wide limiter shared by every route
rate_limiter = RateLimiter()


def client_address(request: Request) -> str:
    """Socket peer, or the proxy-reported client when the peer is a trusted proxy"""
    peer = request.client.host if request.client and request.client.host else None
    if peer and peer in settings.TRUSTED_PROXIES:
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return peer or "unknown"


def client_identifier(request: Request) -> str:
    """Signed-in user when there is a valid session, otherwise the client address"""
    user_id = get_session_user_id(request)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_address(request)}"


def rate_limit_headers(result: RateLimitResult, now: Optional[float] = None) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_at))),
    }
    if not result.allowed:
        now = time.time() if now is None else now
        headers["Retry-After"] = str(max(1, int(math.ceil(result.reset_at - now))))
    return headers


def rate_limit(kind: str, limiter: Optional[RateLimiter] = None):
    """
    Build a FastAPI dependency enforcing the `kind` limit

    The dependency raises 429 itself, so a limited request never reaches the handler.
    """
    rule = RATE_LIMITS[kind]

    async def guard(request: Request):
        active = limiter or rate_limiter
        identity = client_identifier(request)
        result = active.hit(kind, identity, rule)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"extra": {
                    "kind": kind,
                    "identity": identity,
                    "limit": rule.limit,
                    "window_seconds": rule.window_seconds,
                }},
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers=rate_limit_headers(result),
            )
        return result

    return guard
