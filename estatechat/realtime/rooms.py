"""Typed fan-out rooms and the router that maps them to connected transports."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from .transport import Transport

logger = logging.getLogger("estatechat.realtime")


@dataclass(frozen=True)
class UserRoom:
    """Every transport of one user (all tabs/devices)."""
    user_id: int

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"


@dataclass(frozen=True)
class AppointmentRoom:
    """Transports currently viewing one appointment's chat."""
    appointment_id: int

    @property
    def key(self) -> str:
        return f"appointment:{self.appointment_id}"


@dataclass(frozen=True)
class AdminBroadcast:
    """Approved admins watching the appointment dashboards."""

    @property
    def key(self) -> str:
        return "admins"


@dataclass(frozen=True)
class CallMonitorRoom:
    """Admin transports observing one live call."""
    call_id: str

    @property
    def key(self) -> str:
        return f"call-monitor:{self.call_id}"


Room = Union[UserRoom, AppointmentRoom, AdminBroadcast, CallMonitorRoom]


def room_from_key(key: str) -> Room:
    kind, _, value = key.partition(":")
    if kind == "user":
        return UserRoom(int(value))
    if kind == "appointment":
        return AppointmentRoom(int(value))
    if kind == "admins":
        return AdminBroadcast()
    if kind == "call-monitor":
        return CallMonitorRoom(value)
    raise ValueError(f"Unknown room key: {key!r}")


def appointment_audience(buyer_id: int, seller_id: int, appointment_id: int) -> List[Room]:
    """Both participants, anyone viewing the appointment, and the admins."""
    return [UserRoom(buyer_id), UserRoom(seller_id), AppointmentRoom(appointment_id), AdminBroadcast()]


# Publisher hook: (room keys or None for a global broadcast, event, data)
Publisher = Callable[[Optional[List[str]], str, dict], None]


class RoomRouter:
    """
    Tracks connected transports and their room memberships.

    emit() resolves a set of rooms (plus optional explicit transports) to a
    de-duplicated set of transports so each client receives an event once.
    """

    def __init__(self) -> None:
        self._transports: Dict[str, Transport] = {}
        self._rooms: Dict[Room, Set[str]] = {}
        self._memberships: Dict[str, Set[Room]] = {}
        self.publisher: Optional[Publisher] = None

    def register(self, transport: Transport) -> None:
        self._transports[transport.sid] = transport
        self._memberships.setdefault(transport.sid, set())
        if transport.user_id is not None:
            self.join(UserRoom(transport.user_id), transport)

    def unregister(self, transport: Transport) -> None:
        for room in self._memberships.pop(transport.sid, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(transport.sid)
                if not members:
                    del self._rooms[room]
        self._transports.pop(transport.sid, None)

    def get(self, sid: str) -> Optional[Transport]:
        return self._transports.get(sid)

    def join(self, room: Room, transport: Transport) -> None:
        if transport.sid not in self._transports:
            self.register(transport)
        self._rooms.setdefault(room, set()).add(transport.sid)
        self._memberships.setdefault(transport.sid, set()).add(room)

    def leave(self, room: Room, transport: Transport) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(transport.sid)
            if not members:
                del self._rooms[room]
        self._memberships.get(transport.sid, set()).discard(room)

    def close_room(self, room: Room) -> None:
        for sid in self._rooms.pop(room, set()):
            self._memberships.get(sid, set()).discard(room)

    def members(self, room: Room) -> List[Transport]:
        return [self._transports[sid] for sid in self._rooms.get(room, set()) if sid in self._transports]

    def is_member(self, room: Room, transport: Transport) -> bool:
        return transport.sid in self._rooms.get(room, set())

    def emit(
        self,
        event: str,
        data: dict,
        rooms: Iterable[Room] = (),
        transports: Iterable[Optional[Transport]] = (),
        exclude: Optional[Transport] = None,
        publish: bool = True,
    ) -> int:
        """Send one event to the union of rooms and transports; returns the local delivery count."""
        rooms = list(rooms)
        targets: Dict[str, Transport] = {}
        for room in rooms:
            for sid in self._rooms.get(room, set()):
                transport = self._transports.get(sid)
                if transport is not None:
                    targets[sid] = transport
        for transport in transports:
            if transport is not None:
                targets[transport.sid] = transport
        if exclude is not None:
            targets.pop(exclude.sid, None)

        for transport in targets.values():
            self._deliver(transport, event, data)

        if publish and rooms and self.publisher is not None:
            self._publish([room.key for room in rooms], event, data)
        return len(targets)

    def broadcast(self, event: str, data: dict, publish: bool = True) -> int:
        for transport in list(self._transports.values()):
            self._deliver(transport, event, data)
        if publish and self.publisher is not None:
            self._publish(None, event, data)
        return len(self._transports)

    def send(self, transport: Optional[Transport], event: str, data: dict) -> None:
        if transport is not None:
            self._deliver(transport, event, data)

    def _deliver(self, transport: Transport, event: str, data: dict) -> None:
        try:
            transport.send(event, data)
        except Exception as exc:
            logger.warning("realtime.deliver.failed", extra={"sid": transport.sid, "event": event, "error": str(exc)})

    def _publish(self, keys: Optional[List[str]], event: str, data: dict) -> None:
        try:
            self.publisher(keys, event, data)
        except Exception as exc:
            logger.warning("realtime.publish.failed", extra={"event": event, "error": str(exc)})

    def __len__(self) -> int:
        return len(self._transports)
