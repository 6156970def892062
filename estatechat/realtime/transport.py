"""Transport handles: one per connected real-time client."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..models import is_approved_admin

logger = logging.getLogger("estatechat.realtime")


@dataclass(frozen=True)
class Identity:
    """Resolved caller identity of an authenticated connection."""

    user_id: int
    role: str
    approval_status: Optional[str] = None
    username: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return is_approved_admin(self.role, self.approval_status)


class TokenBucket:
    """
    Simple token bucket limiter.
    - rate: tokens per second (refill)
    - capacity: max burst tokens
    consume(1) returns True if allowed, False if throttled.
    """
    def __init__(self, rate: float, capacity: int) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self.ts = time.monotonic()

    def consume(self, amount: float = 1.0) -> bool:
        now = time.monotonic()
        delta = now - self.ts
        self.ts = now
        self.tokens = min(self.capacity, self.tokens + delta * self.rate)
        if self.tokens >= amount:
            self.tokens -= amount
            return True
        return False


class Transport:
    """Abstract handle for one connected client endpoint.

    Sending never blocks: concrete transports queue the frame and flush it
    from their own writer task.
    """

    def __init__(self, identity: Optional[Identity] = None, sid: Optional[str] = None) -> None:
        self.sid = sid or uuid4().hex
        self.identity = identity
        # User id this transport announced presence for (set by the presence registry)
        self.presence_user_id: Optional[int] = None
        self.limiter = TokenBucket(rate=20.0, capacity=40)

    @property
    def user_id(self) -> Optional[int]:
        return self.identity.user_id if self.identity else None

    @property
    def is_admin(self) -> bool:
        return bool(self.identity and self.identity.is_admin)

    def send(self, event: str, data: dict) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} sid={self.sid} user={self.user_id}>"


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_frame(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data}, default=json_default)


class WebSocketTransport(Transport):
    """Transport backed by a Starlette WebSocket and an outbound queue."""

    def __init__(self, websocket: WebSocket, identity: Optional[Identity] = None) -> None:
        super().__init__(identity)
        self.websocket = websocket
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()

    def send(self, event: str, data: dict) -> None:
        self._queue.put_nowait(encode_frame(event, data))

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def pump(self) -> None:
        """Writer task: flush queued frames in order until closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                if self.websocket.application_state != WebSocketState.CONNECTED:
                    return
                await self.websocket.send_text(frame)
            except Exception as exc:
                # Peer went away; the reader loop performs the cleanup
                logger.debug("realtime.ws.send_failed", extra={"sid": self.sid, "error": str(exc)})
                return
