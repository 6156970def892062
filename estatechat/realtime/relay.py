"""Optional Redis Pub/Sub relay so processes sharing a Redis fan out to each other's sockets."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from typing import List, Optional
from uuid import uuid4

from ..redis_client import get_redis, is_redis_enabled, reset_redis
from .rooms import RoomRouter, room_from_key
from .transport import json_default

logger = logging.getLogger("estatechat.realtime")

CHANNEL = "estatechat:rooms"
# Published envelopes carry this id so a process skips its own messages
PROCESS_ID = uuid4().hex


def publish(keys: Optional[List[str]], event: str, data: dict) -> None:
    r = get_redis()
    if r is None:
        return
    envelope = {"origin": PROCESS_ID, "rooms": keys, "event": event, "data": data}
    r.publish(CHANNEL, json.dumps(envelope, default=json_default))


def deliver_envelope(router: RoomRouter, raw: object) -> bool:
    """Apply one envelope received from another process to local transports."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    envelope = json.loads(str(raw))
    if envelope.get("origin") == PROCESS_ID:
        return False
    event = envelope["event"]
    data = envelope.get("data") or {}
    keys = envelope.get("rooms")
    if keys is None:
        router.broadcast(event, data, publish=False)
    else:
        router.emit(event, data, rooms=[room_from_key(k) for k in keys], publish=False)
    return True


def start_redis_subscriber(router: RoomRouter, loop: asyncio.AbstractEventLoop) -> None:
    """
    Install the publisher on the router and start a background thread that
    subscribes to the room channel. Deliveries are handed to the event loop,
    which owns every transport. Best-effort fail-open.
    """
    if not is_redis_enabled():
        logger.info("redis.subscriber.disabled")
        return

    router.publisher = publish

    def _run() -> None:
        backoff = 0.5
        max_backoff = 5.0
        while True:
            try:
                r = get_redis()
                if r is None:
                    time.sleep(min(backoff, max_backoff))
                    backoff = min(max_backoff, backoff * 2)
                    continue

                pubsub = r.pubsub()
                pubsub.subscribe(CHANNEL)
                logger.info("redis.subscriber.started", extra={"channel": CHANNEL})
                backoff = 0.5
                for message in pubsub.listen():
                    if message is None or message.get("type") != "message":
                        continue
                    loop.call_soon_threadsafe(_deliver_logged, router, message.get("data"))
            except Exception as exc:
                logger.warning("redis.subscriber.reconnect", extra={"error": str(exc)})
                reset_redis()
                time.sleep(min(backoff, max_backoff))
                backoff = min(max_backoff, backoff * 2)

    t = threading.Thread(target=_run, name="redis-subscriber", daemon=True)
    t.start()


def _deliver_logged(router: RoomRouter, raw: object) -> None:
    try:
        deliver_envelope(router, raw)
    except Exception:
        logger.exception("redis.subscriber.bad_envelope")
