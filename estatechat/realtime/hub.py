"""Process-wide real-time services, created at startup and shut down with the app."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..notifications import EmailNotifier
from ..services.message_store import MessageStore
from ..timeutils import utcnow
from .calls import CallSessionManager
from .delivery import DeliveryTracker
from .monitor import CallMonitorService
from .presence import PresenceRegistry
from .rooms import RoomRouter
from .scheduling import LoopScheduler, Scheduler
from .transport import Transport

logger = logging.getLogger("estatechat.realtime")


@dataclass
class RealtimeHub:
    router: RoomRouter
    presence: PresenceRegistry
    delivery: DeliveryTracker
    messages: MessageStore
    calls: CallSessionManager
    monitor: CallMonitorService
    notifier: Optional[EmailNotifier] = None
    session_factory: Callable[[], Session] = SessionLocal

    def connect(self, transport: Transport) -> None:
        self.router.register(transport)
        self.router.send(transport, "connected", {"sid": transport.sid, "user_id": transport.user_id})
        logger.info("realtime.connected", extra={"sid": transport.sid, "user_id": transport.user_id})

    def disconnect(self, transport: Transport) -> None:
        # Calls first so the counterpart is told before the rooms disappear
        try:
            self.calls.transport_disconnected(transport)
        except Exception:
            logger.exception("realtime.disconnect.calls_failed", extra={"sid": transport.sid})
        self.presence.transport_disconnected(transport)
        self.router.unregister(transport)
        logger.info("realtime.disconnected", extra={"sid": transport.sid, "user_id": transport.user_id})

    def shutdown(self) -> None:
        self.calls.shutdown()
        self.presence.shutdown()


def build_hub(
    scheduler: Optional[Scheduler] = None,
    clock: Callable[[], datetime] = utcnow,
    notifier: Optional[EmailNotifier] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    run_in_background: bool = True,
    presence_timeout: Optional[float] = None,
    ring_timeout: Optional[float] = None,
) -> RealtimeHub:
    scheduler = scheduler or LoopScheduler()
    router = RoomRouter()
    presence_kwargs = {} if presence_timeout is None else {"timeout": presence_timeout}
    presence = PresenceRegistry(router, scheduler, clock=clock, **presence_kwargs)
    delivery = DeliveryTracker(router, presence, session_factory=session_factory, clock=clock)
    messages = MessageStore(router, delivery, clock=clock)
    call_kwargs = {} if ring_timeout is None else {"ring_timeout": ring_timeout}
    calls = CallSessionManager(
        router,
        scheduler,
        session_factory=session_factory,
        notifier=notifier,
        clock=clock,
        run_in_background=run_in_background,
        **call_kwargs,
    )
    monitor = CallMonitorService(router, calls)

    presence.add_online_listener(delivery.redeliver_pending)
    presence.add_online_listener(calls.surface_pending_calls)
    return RealtimeHub(
        router=router,
        presence=presence,
        delivery=delivery,
        messages=messages,
        calls=calls,
        monitor=monitor,
        notifier=notifier,
        session_factory=session_factory,
    )


hub = build_hub(notifier=EmailNotifier.from_env())


def get_hub() -> RealtimeHub:
    """FastAPI dependency; tests override it with a hub driven by a manual scheduler."""
    return hub
