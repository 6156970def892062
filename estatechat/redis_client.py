# Shared Redis connection for rate limiting and the cross-process room relay.
# Opt-in via REDIS_ENABLED; every caller must tolerate get_redis() returning None.
import logging
import os
import threading
import time
from typing import Optional

import redis

_logger = logging.getLogger("estatechat.redis")

# After a failed connect, wait this long before trying again
_RETRY_SECONDS = float(os.getenv("REDIS_RETRY_SECONDS", "30"))


def _truthy(val: Optional[str]) -> bool:
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def is_redis_enabled() -> bool:
    return _truthy(os.getenv("REDIS_ENABLED", "false"))


# The relay subscriber thread and request threads share this client
_lock = threading.Lock()
_client: Optional[redis.Redis] = None
_last_failure: Optional[float] = None


def get_redis() -> Optional[redis.Redis]:
    """
    Return a connected client, or None when Redis is disabled or unreachable.

    A failed connect is remembered for REDIS_RETRY_SECONDS so a missing server
    does not add a connect timeout to every request.
    """
    global _client, _last_failure
    if not is_redis_enabled():
        return None
    with _lock:
        if _client is not None:
            return _client
        if _last_failure is not None and time.monotonic() - _last_failure < _RETRY_SECONDS:
            return None

        url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        try:
            client = redis.Redis.from_url(
                url,
                socket_timeout=0.25,
                socket_connect_timeout=0.25,
                retry_on_timeout=False,
                health_check_interval=30,
            )
            client.ping()
        except redis.RedisError as exc:
            _last_failure = time.monotonic()
            _logger.warning("redis.unavailable", extra={"url": url, "error": str(exc)})
            return None
        _client = client
        _last_failure = None
        _logger.info("redis.connected", extra={"url": url})
        return _client


def reset_redis() -> None:
    """Drop the cached client so the next get_redis() reconnects."""
    global _client, _last_failure
    with _lock:
        if _client is not None:
            try:
                _client.close()
            except redis.RedisError:
                _logger.debug("redis.close.failed")
        _client = None
        _last_failure = None
