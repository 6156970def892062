"""Presence tracking: online set, last-seen stamps and the inactivity timeout."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..timeutils import isoformat, utcnow
from .rooms import RoomRouter, UserRoom
from .scheduling import OwnedTimer, Scheduler
from .transport import Transport

logger = logging.getLogger("estatechat.presence")

PRESENCE_TIMEOUT_SECONDS = float(os.getenv("PRESENCE_TIMEOUT_SECONDS", "5"))

OnlineListener = Callable[[int, Optional[Transport]], None]


@dataclass
class PresenceRecord:
    user_id: int
    online: bool = False
    last_seen: Optional[datetime] = None
    # Transport that sent the most recent ping
    sid: Optional[str] = None
    timer: OwnedTimer = field(default_factory=OwnedTimer)


@dataclass(frozen=True)
class PresenceStatus:
    online: bool
    last_seen: Optional[datetime]

    def as_payload(self, user_id: int) -> dict:
        return {"user_id": user_id, "online": self.online, "last_seen": isoformat(self.last_seen)}


class PresenceRegistry:
    """
    Owns the online set. Every "active" ping re-arms a per-user inactivity timer;
    the offline transition happens when that timer fires or when the pinging
    transport disconnects.

    Online/offline edges are broadcast as `user-online-update`. Listeners added with
    add_online_listener() run on the online edge only (delivery catch-up, pending calls).
    """

    def __init__(
        self,
        router: RoomRouter,
        scheduler: Scheduler,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = PRESENCE_TIMEOUT_SECONDS,
    ) -> None:
        self._router = router
        self._scheduler = scheduler
        self._clock = clock
        self._timeout = timeout
        self._records: Dict[int, PresenceRecord] = {}
        self._listeners: List[OnlineListener] = []

    def add_online_listener(self, listener: OnlineListener) -> None:
        self._listeners.append(listener)

    def mark_active(self, user_id: int, transport: Optional[Transport] = None) -> bool:
        """Record activity for user_id; returns True when this ping was the online edge."""
        record = self._records.get(user_id)
        if record is None:
            record = self._records[user_id] = PresenceRecord(user_id=user_id)

        became_online = not record.online
        record.online = True
        record.last_seen = None
        if transport is not None:
            record.sid = transport.sid
            transport.presence_user_id = user_id
            self._router.join(UserRoom(user_id), transport)
        record.timer.arm(self._scheduler, self._timeout, self._expire, user_id)

        if became_online:
            logger.info("presence.online", extra={"user_id": user_id})
            self._router.broadcast("user-online-update", {"user_id": user_id, "online": True, "last_seen": None})
            for listener in list(self._listeners):
                try:
                    listener(user_id, transport)
                except Exception:
                    logger.exception("presence.listener.failed", extra={"user_id": user_id})
        return became_online

    def check_online(self, user_id: int) -> PresenceStatus:
        record = self._records.get(user_id)
        if record is None:
            return PresenceStatus(online=False, last_seen=None)
        return PresenceStatus(online=record.online, last_seen=record.last_seen)

    def is_online(self, user_id: int) -> bool:
        record = self._records.get(user_id)
        return bool(record and record.online)

    def online_users(self) -> List[int]:
        return [uid for uid, rec in self._records.items() if rec.online]

    def transport_disconnected(self, transport: Transport) -> None:
        user_id = transport.presence_user_id
        if user_id is None:
            return
        record = self._records.get(user_id)
        # Another tab that pinged more recently keeps the user online
        if record is None or not record.online or record.sid != transport.sid:
            return
        self._go_offline(record, reason="disconnect")

    def _expire(self, user_id: int) -> None:
        record = self._records.get(user_id)
        if record is not None and record.online:
            self._go_offline(record, reason="timeout")

    def _go_offline(self, record: PresenceRecord, reason: str) -> None:
        record.timer.cancel()
        record.online = False
        record.sid = None
        record.last_seen = self._clock()
        logger.info("presence.offline", extra={"user_id": record.user_id, "reason": reason})
        self._router.broadcast(
            "user-online-update",
            {"user_id": record.user_id, "online": False, "last_seen": isoformat(record.last_seen)},
        )

    def shutdown(self) -> None:
        for record in self._records.values():
            record.timer.cancel()
        self._records.clear()
        self._listeners.clear()
