"""
Call session manager.

Owns the in-memory registry of live calls and drives the call state machine:

    initiated -> ringing -> accepted -> ended
            └── rejected / missed / cancelled (only before acceptance)

Each session owns its missed-call timer. Validation errors are raised before
anything is mutated; the durable CallHistory row is written before the
in-memory session changes, so a failed write leaves the session untouched.
"""
from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from .. import models, schemas
from ..db import SessionLocal, session_scope
from ..errors import AuthorizationError, BusyError, NotFoundError, StateConflictError
from ..notifications import CallEmail, EmailNotifier, Party, fire_and_forget, safe_call
from ..services import call_history
from ..timeutils import as_utc, isoformat, utcnow
from .rooms import AppointmentRoom, CallMonitorRoom, RoomRouter, UserRoom
from .scheduling import OwnedTimer, Scheduler
from .transport import Identity, Transport

logger = logging.getLogger("estatechat.calls")

CALL_RING_TIMEOUT_SECONDS = float(os.getenv("CALL_RING_TIMEOUT_SECONDS", "30"))
INCOMING_CALL_WINDOW_SECONDS = float(os.getenv("INCOMING_CALL_WINDOW_SECONDS", "300"))

RINGING = ("initiated", "ringing")
DEFAULT_FORCE_END_REASON = "Call terminated by an administrator for violating platform policy"


def new_call_id(now: datetime) -> str:
    return f"CALL_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"


@dataclass
class CallSession:
    call_id: str
    appointment_id: int
    caller_id: int
    receiver_id: int
    call_type: str
    caller: Transport
    placed_at: datetime
    caller_name: str = ""
    property_name: str = ""
    receiver: Optional[Transport] = None
    status: str = "initiated"
    start_time: Optional[datetime] = None
    # Signaling held until the receiver attaches: one offer slot, candidates in arrival order
    pending_offer: Optional[dict] = None
    pending_candidates: Deque[dict] = field(default_factory=deque)
    monitors: Dict[str, Transport] = field(default_factory=dict)
    timer: OwnedTimer = field(default_factory=OwnedTimer)

    def involves(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in (self.caller_id, self.receiver_id)

    def role_of(self, transport: Transport) -> Optional[str]:
        if transport.sid == self.caller.sid:
            return "caller"
        if self.receiver is not None and transport.sid == self.receiver.sid:
            return "receiver"
        return None

    def transport_for(self, role: str) -> Optional[Transport]:
        return self.caller if role == "caller" else self.receiver

    def summary(self) -> dict:
        return {
            "call_id": self.call_id,
            "appointment_id": self.appointment_id,
            "caller_id": self.caller_id,
            "receiver_id": self.receiver_id,
            "call_type": self.call_type,
            "status": self.status,
            "placed_at": isoformat(self.placed_at),
            "start_time": isoformat(self.start_time),
            "monitor_count": len(self.monitors),
        }


class CallSessionManager:
    def __init__(
        self,
        router: RoomRouter,
        scheduler: Scheduler,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[EmailNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        ring_timeout: float = CALL_RING_TIMEOUT_SECONDS,
        incoming_window: float = INCOMING_CALL_WINDOW_SECONDS,
        run_in_background: bool = True,
    ) -> None:
        self._router = router
        self._scheduler = scheduler
        self._session_factory = session_factory
        self._notifier = notifier
        self._clock = clock
        self._ring_timeout = ring_timeout
        self._incoming_window = incoming_window
        self._run_in_background = run_in_background
        self._sessions: Dict[str, CallSession] = {}

    # Registry
    def get_session(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def active_call_for(self, user_id: int) -> Optional[CallSession]:
        for session in self._sessions.values():
            if session.involves(user_id):
                return session
        return None

    def snapshot(self) -> List[dict]:
        return [s.summary() for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)

    def _db(self) -> ContextManager[Session]:
        return session_scope(self._session_factory)

    def _drop(self, session: CallSession) -> None:
        session.timer.cancel()
        self._sessions.pop(session.call_id, None)
        self._router.close_room(CallMonitorRoom(session.call_id))
        session.monitors.clear()

    # Notifications
    def _email_context(
        self,
        db: Session,
        *,
        call_id: str,
        appointment_id: int,
        caller_id: int,
        receiver_id: int,
        call_type: str,
        duration: int = 0,
        reason: Optional[str] = None,
    ) -> Optional[CallEmail]:
        if self._notifier is None:
            return None
        caller = db.get(models.User, caller_id)
        receiver = db.get(models.User, receiver_id)
        appt = db.get(models.Appointment, appointment_id)
        if caller is None or receiver is None:
            return None
        return CallEmail(
            call_id=call_id,
            call_type=call_type,
            property_name=appt.property_name if appt is not None else "",
            caller=Party(caller.id, caller.username, caller.email),
            receiver=Party(receiver.id, receiver.username, receiver.email),
            duration=duration,
            reason=reason,
        )

    def _session_email(self, db: Session, session: CallSession, duration: int = 0, reason: Optional[str] = None):
        return self._email_context(
            db,
            call_id=session.call_id,
            appointment_id=session.appointment_id,
            caller_id=session.caller_id,
            receiver_id=session.receiver_id,
            call_type=session.call_type,
            duration=duration,
            reason=reason,
        )

    def _notify(self, kind: str, ctx: Optional[CallEmail]) -> None:
        if self._notifier is None or ctx is None:
            return
        handler = getattr(self._notifier, kind)
        if self._run_in_background:
            fire_and_forget(handler, ctx)
        else:
            safe_call(handler, ctx)

    def _incoming_payload(self, session: CallSession) -> dict:
        return {
            "call_id": session.call_id,
            "appointment_id": session.appointment_id,
            "caller_id": session.caller_id,
            "caller_name": session.caller_name,
            "receiver_id": session.receiver_id,
            "call_type": session.call_type,
            "property_name": session.property_name,
            "placed_at": isoformat(session.placed_at),
        }

    # Transitions
    def initiate(self, transport: Transport, appointment_id: int, receiver_id: int, call_type: str) -> CallSession:
        caller_id = transport.user_id
        if caller_id is None:
            raise AuthorizationError("Authentication required to place a call")

        with self._db() as db:
            appt = db.get(models.Appointment, appointment_id)
            if appt is None:
                raise NotFoundError("Appointment not found")
            if appt.side_of(caller_id) is None:
                raise AuthorizationError("Only appointment participants can place calls")
            # The receiver is taken from the appointment, never from the request
            if appt.other_participant(caller_id) != receiver_id:
                raise AuthorizationError("Receiver is not the other participant of this appointment")
            if self.active_call_for(caller_id) is not None:
                raise BusyError("You are already in another call")
            if self.active_call_for(receiver_id) is not None:
                raise BusyError("User is currently in another call")

            now = self._clock()
            call_id = new_call_id(now)
            record = call_history.create_record(
                db,
                call_id=call_id,
                appointment_id=appt.id,
                caller_id=caller_id,
                receiver_id=receiver_id,
                call_type=call_type,
                placed_at=now,
            )
            # The row is ringing before anyone is told about the call
            record.status = "ringing"
            db.commit()
            session = CallSession(
                call_id=call_id,
                appointment_id=appt.id,
                caller_id=caller_id,
                receiver_id=receiver_id,
                call_type=call_type,
                caller=transport,
                placed_at=now,
                caller_name=transport.identity.username if transport.identity else "",
                property_name=appt.property_name,
                status="ringing",
            )
            self._sessions[call_id] = session
            self._router.emit("incoming-call", self._incoming_payload(session), rooms=[UserRoom(receiver_id)])
            ctx = self._session_email(db, session)

        self._router.send(
            transport,
            "call-initiated",
            {
                "call_id": call_id,
                "appointment_id": session.appointment_id,
                "receiver_id": receiver_id,
                "call_type": call_type,
                "status": session.status,
                "placed_at": isoformat(now),
            },
        )
        session.timer.arm(self._scheduler, self._ring_timeout, self._on_ring_timeout, call_id)
        logger.info(
            "calls.initiated",
            extra={"call_id": call_id, "appointment_id": appointment_id, "caller_id": caller_id, "receiver_id": receiver_id},
        )
        self._notify("call_initiated", ctx)
        return session

    def _on_ring_timeout(self, call_id: str) -> None:
        session = self._sessions.get(call_id)
        if session is None or session.status not in RINGING:
            return
        self._drop(session)
        now = self._clock()
        ctx = None
        try:
            with self._db() as db:
                record = call_history.get_record(db, call_id)
                if record is not None and record.status in RINGING:
                    # No duration: the call never connected
                    call_history.finish(record, "missed", now, with_duration=False)
                    db.commit()
                ctx = self._session_email(db, session)
        except Exception:
            logger.exception("calls.missed.persist_failed", extra={"call_id": call_id})

        self._router.emit(
            "call-missed",
            {
                "call_id": call_id,
                "appointment_id": session.appointment_id,
                "caller_id": session.caller_id,
                "receiver_id": session.receiver_id,
                "end_time": isoformat(now),
            },
            rooms=[UserRoom(session.caller_id), UserRoom(session.receiver_id)],
            transports=[session.caller],
        )
        logger.info("calls.missed", extra={"call_id": call_id, "receiver_id": session.receiver_id})
        self._notify("call_missed", ctx)

    def _require_session(self, call_id: str, message: str = "Call not found") -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            raise NotFoundError(message)
        return session

    def accept(self, transport: Transport, call_id: str) -> CallSession:
        # An accept that loses the race with the ring timeout lands here
        session = self._require_session(call_id, "Call is no longer available")
        if transport.user_id != session.receiver_id:
            raise AuthorizationError("Only the receiver can accept this call")
        if session.status not in RINGING:
            raise StateConflictError("Call is no longer ringing")

        start = self._clock()
        with self._db() as db:
            record = call_history.get_record(db, call_id)
            if record is not None:
                record.status = "accepted"
                record.start_time = start
                db.commit()

        session.timer.cancel()
        session.status = "accepted"
        session.start_time = start
        session.receiver = transport

        # One synchronized start_time for both sides
        self._router.emit(
            "call-accepted",
            {
                "call_id": call_id,
                "appointment_id": session.appointment_id,
                "caller_id": session.caller_id,
                "receiver_id": session.receiver_id,
                "call_type": session.call_type,
                "start_time": isoformat(start),
            },
            rooms=[UserRoom(session.receiver_id)],
            transports=[session.caller, transport],
        )
        if session.pending_offer is not None:
            self._router.send(transport, "webrtc-offer", {"call_id": call_id, "offer": session.pending_offer})
            session.pending_offer = None
        while session.pending_candidates:
            candidate = session.pending_candidates.popleft()
            self._router.send(transport, "ice-candidate", {"call_id": call_id, "candidate": candidate})

        logger.info("calls.accepted", extra={"call_id": call_id, "receiver_id": session.receiver_id})
        return session

    def reject(self, transport: Transport, call_id: str) -> None:
        session = self._require_session(call_id)
        if transport.user_id != session.receiver_id:
            raise AuthorizationError("Only the receiver can reject this call")
        if session.status not in RINGING:
            raise StateConflictError("Call is no longer ringing")
        self._close_unanswered(session, "rejected", "call-rejected", actor_id=transport.user_id)

    def cancel(self, transport: Transport, call_id: str) -> None:
        session = self._require_session(call_id)
        if transport.user_id != session.caller_id:
            raise AuthorizationError("Only the caller can cancel this call")
        if session.status not in RINGING:
            raise StateConflictError("Cannot cancel a call that has already been accepted")
        self._close_unanswered(session, "cancelled", "call-cancelled", actor_id=transport.user_id)

    def _close_unanswered(self, session: CallSession, status: str, event: str, actor_id: Optional[int]) -> None:
        now = self._clock()
        with self._db() as db:
            record = call_history.get_record(db, session.call_id)
            if record is not None:
                call_history.finish(record, status, now, ended_by=actor_id, with_duration=False)
                db.commit()
        self._drop(session)
        self._router.emit(
            event,
            {
                "call_id": session.call_id,
                "appointment_id": session.appointment_id,
                "by": actor_id,
                "end_time": isoformat(now),
            },
            rooms=[UserRoom(session.caller_id), UserRoom(session.receiver_id)],
            transports=[session.caller],
        )
        logger.info(f"calls.{status}", extra={"call_id": session.call_id, "actor_id": actor_id})

    def end(
        self, requester_id: int, call_id: str, is_admin: bool = False
    ) -> Tuple[Optional[schemas.CallRead], bool]:
        """
        End a call; returns (history row, changed).

        Without a live session (REST fallback, lost session) the history row decides:
        already ended is a no-op, other terminal states conflict, stale rows are closed.
        """
        session = self._sessions.get(call_id)
        if session is not None:
            if not session.involves(requester_id) and not is_admin:
                raise AuthorizationError("Not allowed to end this call")
            return self._end_live(session, ended_by=requester_id), True

        with self._db() as db:
            record = call_history.get_record(db, call_id)
            if record is None:
                raise NotFoundError("Call not found")
            if requester_id not in (record.caller_id, record.receiver_id) and not is_admin:
                raise AuthorizationError("Not allowed to end this call")
            if record.status == "ended":
                return schemas.CallRead.model_validate(record), False
            if record.status in call_history.TERMINAL_STATUSES:
                raise StateConflictError(f"Call already {record.status}")
            call_history.finish(record, "ended", self._clock(), ended_by=requester_id)
            db.commit()
            db.refresh(record)
            logger.warning("calls.end.orphaned", extra={"call_id": call_id, "requester_id": requester_id})
            return schemas.CallRead.model_validate(record), True

    def force_end(
        self,
        admin: Optional[Identity],
        call_id: str,
        reason: Optional[str] = None,
        origin: Optional[Transport] = None,
    ) -> Optional[schemas.CallRead]:
        if admin is None or not admin.is_admin:
            raise AuthorizationError("Admin privileges required")
        session = self._require_session(call_id, "Call is not active")
        reason = (reason or "").strip() or DEFAULT_FORCE_END_REASON
        now = self._clock()
        note = f"[{isoformat(now)}] Force-ended by admin {admin.username or admin.user_id} (id {admin.user_id}): {reason}"
        read = self._end_live(session, ended_by=admin.user_id, now=now, force_reason=reason, note=note)
        self._router.send(origin, "call-force-end-success", {"call_id": call_id, "reason": reason})
        logger.warning("calls.force_ended", extra={"call_id": call_id, "admin_id": admin.user_id, "reason": reason})
        return read

    def send_termination_notice(self, call_id: str, reason: Optional[str] = None) -> bool:
        """Re-send the termination email for a call in history; False when email is not configured."""
        with self._db() as db:
            record = call_history.get_record(db, call_id)
            if record is None:
                raise NotFoundError("Call not found")
            ctx = self._email_context(
                db,
                call_id=record.call_id,
                appointment_id=record.appointment_id,
                caller_id=record.caller_id,
                receiver_id=record.receiver_id,
                call_type=record.call_type,
                duration=record.duration or 0,
                reason=(reason or "").strip() or DEFAULT_FORCE_END_REASON,
            )
        if ctx is None:
            return False
        self._notify("call_force_terminated", ctx)
        return True

    def _end_live(
        self,
        session: CallSession,
        ended_by: Optional[int],
        now: Optional[datetime] = None,
        force_reason: Optional[str] = None,
        note: Optional[str] = None,
        strict: bool = True,
    ) -> Optional[schemas.CallRead]:
        now = now or self._clock()
        duration = call_history.compute_duration(session.start_time, now)
        read = None
        ctx = None
        try:
            with self._db() as db:
                record = call_history.get_record(db, session.call_id)
                if record is not None:
                    call_history.finish(record, "ended", now, ended_by=ended_by)
                    record.duration = duration
                    if note:
                        call_history.append_admin_note(record, note)
                    db.commit()
                    db.refresh(record)
                    read = schemas.CallRead.model_validate(record)
                ctx = self._session_email(db, session, duration=duration, reason=force_reason)
        except Exception:
            if strict:
                raise
            logger.exception("calls.end.persist_failed", extra={"call_id": session.call_id})

        payload = {
            "call_id": session.call_id,
            "appointment_id": session.appointment_id,
            "ended_by": ended_by,
            "duration": duration,
            "end_time": isoformat(now),
            "force_ended": force_reason is not None,
        }
        if force_reason is not None:
            payload["reason"] = force_reason
        self._router.emit(
            "call-ended",
            payload,
            rooms=[
                UserRoom(session.caller_id),
                UserRoom(session.receiver_id),
                AppointmentRoom(session.appointment_id),
                CallMonitorRoom(session.call_id),
            ],
            transports=[session.caller, session.receiver, *session.monitors.values()],
        )
        self._drop(session)
        logger.info("calls.ended", extra={"call_id": session.call_id, "ended_by": ended_by, "duration": duration})
        self._notify("call_force_terminated" if force_reason is not None else "call_ended", ctx)
        return read

    # Signaling relay
    def relay_offer(self, transport: Transport, call_id: str, offer: dict) -> None:
        session = self._require_session(call_id)
        if session.role_of(transport) != "caller":
            raise AuthorizationError("Only the caller can send an offer")
        if session.receiver is None:
            session.pending_offer = offer
            logger.debug("calls.offer.buffered", extra={"call_id": call_id})
            return
        self._router.send(session.receiver, "webrtc-offer", {"call_id": call_id, "offer": offer})

    def relay_answer(self, transport: Transport, call_id: str, answer: dict) -> None:
        session = self._require_session(call_id)
        if session.role_of(transport) != "receiver":
            raise AuthorizationError("Only the receiver can send an answer")
        self._router.send(session.caller, "webrtc-answer", {"call_id": call_id, "answer": answer})

    def relay_candidate(self, transport: Transport, call_id: str, candidate: dict) -> None:
        session = self._require_session(call_id)
        role = session.role_of(transport)
        if role is None:
            raise AuthorizationError("Not a participant of this call")
        if role == "receiver":
            self._router.send(session.caller, "ice-candidate", {"call_id": call_id, "candidate": candidate})
        elif session.receiver is None:
            session.pending_candidates.append(candidate)
        else:
            self._router.send(session.receiver, "ice-candidate", {"call_id": call_id, "candidate": candidate})

    # Monitor membership; mutated only through these two methods
    def attach_monitor(self, session: CallSession, admin: Transport) -> None:
        session.monitors[admin.sid] = admin
        self._router.join(CallMonitorRoom(session.call_id), admin)

    def detach_monitor(self, session: CallSession, admin: Transport) -> bool:
        removed = session.monitors.pop(admin.sid, None) is not None
        self._router.leave(CallMonitorRoom(session.call_id), admin)
        return removed

    # Presence / connection hooks
    def surface_pending_calls(self, user_id: int, transport: Optional[Transport] = None) -> int:
        """Online-edge listener: replay still-ringing calls placed for user_id within the window."""
        now = self._clock()
        count = 0
        for session in list(self._sessions.values()):
            if session.receiver_id != user_id or session.status not in RINGING:
                continue
            if (now - as_utc(session.placed_at)).total_seconds() > self._incoming_window:
                continue
            payload = self._incoming_payload(session)
            if transport is not None:
                self._router.send(transport, "incoming-call", payload)
            else:
                self._router.emit("incoming-call", payload, rooms=[UserRoom(user_id)])
            count += 1
        return count

    def transport_disconnected(self, transport: Transport) -> None:
        for session in list(self._sessions.values()):
            if transport.sid in session.monitors:
                self.detach_monitor(session, transport)
            if session.role_of(transport) is not None:
                # Implicit end, not cancel/reject
                self._end_live(session, ended_by=transport.user_id, strict=False)

    def shutdown(self) -> None:
        for session in list(self._sessions.values()):
            session.timer.cancel()
        self._sessions.clear()
