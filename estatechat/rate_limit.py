# Redis-backed fixed-window rate limiter for the REST surface.
# - Authenticated callers are counted per user, anonymous callers per IP.
# - Keys: rl:v2:{subject}:{scope} where subject is "user:{id}" or "ip:{addr}".
# - Fail-open if Redis is unavailable; socket events have their own in-process token bucket.
import logging
import os
from typing import Callable, Dict, Literal, Optional

import jwt
from fastapi import HTTPException, Request, status

from .redis_client import get_redis, is_redis_enabled
from .security import JWT_ALG, JWT_SECRET

logger = logging.getLogger("estatechat.rate_limit")

Scope = Literal["login", "signup", "write", "message", "call"]

# Per-window caps; each overridable with RATE_LIMIT_{SCOPE}_PER_WINDOW
_DEFAULT_LIMITS: Dict[str, int] = {
    "login": 10,
    "signup": 5,
    "write": 30,
    "message": 120,
    "call": 20,
}


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


def _window_seconds() -> int:
    return _to_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60)


def _limit_for_scope(scope: Scope) -> int:
    return _to_int(os.getenv(f"RATE_LIMIT_{scope.upper()}_PER_WINDOW"), _DEFAULT_LIMITS[scope])


def _subject(request: Request) -> str:
    """
    Identify who is being counted.

    The bearer token is only decoded here, not checked against the database;
    the route's own auth dependency still rejects unknown users.
    """
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        try:
            payload = jwt.decode(auth.split(" ", 1)[1], JWT_SECRET, algorithms=[JWT_ALG])
            if payload.get("sub"):
                return f"user:{payload['sub']}"
        except jwt.InvalidTokenError:
            pass
    # X-Forwarded-For is not parsed; only the socket peer is trusted
    host = request.client.host if request.client and request.client.host else "unknown"
    return f"ip:{host}"


def rate_limit(scope: Scope) -> Callable[[Request], None]:
    """
    Build a FastAPI dependency enforcing a fixed-window cap for `scope`.

    The first hit in a window sets the TTL; later hits share that expiry.
    Over the cap the request fails with 429 and a retry_after hint.
    """
    window = _window_seconds()
    limit = _limit_for_scope(scope)

    def _dependency(request: Request) -> None:
        if not is_redis_enabled():
            return
        r = get_redis()
        if r is None:
            return

        subject = _subject(request)
        key = f"rl:v2:{subject}:{scope}"
        try:
            pipe = r.pipeline()
            pipe.incr(key, 1)
            pipe.ttl(key)
            current, ttl = pipe.execute()
            if current == 1 or ttl == -1:
                r.expire(key, window)
                ttl = window
        except Exception as exc:
            logger.warning("rate_limit.fail_open", extra={"scope": scope, "subject": subject, "error": str(exc)})
            return

        if current > limit:
            retry_after = ttl if isinstance(ttl, int) and ttl > 0 else window
            logger.info("rate_limit.exceeded", extra={"scope": scope, "subject": subject, "limit": limit})
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limited",
                    "scope": scope,
                    "limit": limit,
                    "window_seconds": window,
                    "retry_after": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
