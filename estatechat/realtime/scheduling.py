"""Cancellable timers for presence timeouts and missed-call detection.

Timers run on the application's event loop; callbacks never overlap with
other handlers, so the registries they touch need no locking.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger("estatechat.realtime")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


def _guarded(callback: Callable[..., Any], *args: Any) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception("timer.callback.failed", extra={"callback": getattr(callback, "__name__", repr(callback))})


class LoopScheduler:
    """Schedules callbacks on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, _guarded, callback, *args)


class OwnedTimer:
    """A single re-armable timer slot owned by an entity (presence record, call session).

    Arming replaces any pending timer; cancel() is safe to call repeatedly.
    """

    __slots__ = ("_handle",)

    def __init__(self) -> None:
        self._handle: Optional[TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, scheduler: Scheduler, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        self._handle = scheduler.call_later(delay, self._fire, callback, *args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[..., Any], *args: Any) -> None:
        self._handle = None
        callback(*args)
