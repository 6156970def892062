"""Admin live monitoring of accepted calls.

An admin attaches as a receive-only observer. Both participants are asked to
open a parallel peer connection toward that admin; every relayed message of
that exchange is tagged with the admin's socket id and the participant role,
since several admins may watch one call at the same time.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..errors import AuthorizationError, NotFoundError, StateConflictError
from ..timeutils import isoformat
from .calls import CallSession, CallSessionManager
from .rooms import RoomRouter
from .transport import Transport

logger = logging.getLogger("estatechat.calls")


class CallMonitorService:
    def __init__(self, router: RoomRouter, calls: CallSessionManager) -> None:
        self._router = router
        self._calls = calls

    def _session(self, call_id: str) -> CallSession:
        session = self._calls.get_session(call_id)
        if session is None:
            raise NotFoundError("Call is not active")
        return session

    def join(self, admin: Transport, call_id: str) -> CallSession:
        if not admin.is_admin:
            raise AuthorizationError("Admin privileges required")
        session = self._session(call_id)
        if session.status != "accepted" or session.receiver is None:
            raise StateConflictError("Call must be connected before it can be monitored")

        self._calls.attach_monitor(session, admin)
        self._router.send(
            admin,
            "admin-monitor-started",
            {
                "call_id": call_id,
                "appointment_id": session.appointment_id,
                "caller_id": session.caller_id,
                "receiver_id": session.receiver_id,
                "call_type": session.call_type,
                "start_time": isoformat(session.start_time),
            },
        )
        request = {"call_id": call_id, "admin_socket_id": admin.sid, "call_type": session.call_type}
        for role in ("caller", "receiver"):
            self._router.send(session.transport_for(role), "admin-monitor-request", {**request, "role": role})
        logger.info("calls.monitor.joined", extra={"call_id": call_id, "admin_id": admin.user_id})
        return session

    def leave(self, admin: Transport, call_id: str) -> bool:
        session = self._calls.get_session(call_id)
        if session is None:
            return False
        removed = self._calls.detach_monitor(session, admin)
        if removed:
            for role in ("caller", "receiver"):
                self._router.send(
                    session.transport_for(role),
                    "admin-monitor-leave",
                    {"call_id": call_id, "admin_socket_id": admin.sid},
                )
            logger.info("calls.monitor.left", extra={"call_id": call_id, "admin_id": admin.user_id})
        return removed

    def _monitor_target(self, session: CallSession, admin_socket_id: Optional[str]) -> Transport:
        target = session.monitors.get(admin_socket_id or "")
        if target is None:
            raise NotFoundError("Monitor is not attached to this call")
        return target

    def _participant_role(self, session: CallSession, transport: Transport) -> str:
        role = session.role_of(transport)
        if role is None:
            raise AuthorizationError("Not a participant of this call")
        return role

    def _require_monitor(self, session: CallSession, admin: Transport) -> None:
        if admin.sid not in session.monitors:
            raise AuthorizationError("Not monitoring this call")

    def relay_offer(self, transport: Transport, call_id: str, admin_socket_id: str, offer: dict) -> None:
        """Participant -> admin; participants always originate the mirrored media."""
        session = self._session(call_id)
        role = self._participant_role(session, transport)
        target = self._monitor_target(session, admin_socket_id)
        self._router.send(
            target,
            "webrtc-offer-monitor",
            {"call_id": call_id, "admin_socket_id": admin_socket_id, "role": role, "offer": offer},
        )

    def relay_answer(self, admin: Transport, call_id: str, role: str, answer: dict) -> None:
        """Admin -> the participant identified by role."""
        session = self._session(call_id)
        self._require_monitor(session, admin)
        self._router.send(
            session.transport_for(role),
            "webrtc-answer-monitor",
            {"call_id": call_id, "admin_socket_id": admin.sid, "role": role, "answer": answer},
        )

    def relay_candidate(
        self,
        transport: Transport,
        call_id: str,
        candidate: dict,
        admin_socket_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        session = self._session(call_id)
        sender_role = session.role_of(transport)
        if sender_role is not None:
            target = self._monitor_target(session, admin_socket_id)
            self._router.send(
                target,
                "ice-candidate-monitor",
                {"call_id": call_id, "admin_socket_id": admin_socket_id, "role": sender_role, "candidate": candidate},
            )
            return
        self._require_monitor(session, transport)
        if role not in ("caller", "receiver"):
            raise StateConflictError("A participant role is required")
        self._router.send(
            session.transport_for(role),
            "ice-candidate-monitor",
            {"call_id": call_id, "admin_socket_id": transport.sid, "role": role, "candidate": candidate},
        )
