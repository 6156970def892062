from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .. import events, models
from ..db import session_scope
from ..errors import AuthorizationError, ChatError, NotFoundError
from ..realtime.hub import RealtimeHub, get_hub
from ..realtime.rooms import AdminBroadcast, AppointmentRoom
from ..realtime.transport import Identity, Transport, WebSocketTransport
from ..security import resolve_identity

router = APIRouter()
logger = logging.getLogger("estatechat.realtime")


def _get_token_from_ws(websocket: WebSocket) -> Optional[str]:
    # Prefer Authorization header if present
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    # Fallback to query param ?token=
    return websocket.query_params.get("token") or None


def _require_identity(transport: Transport) -> int:
    if transport.user_id is None:
        raise AuthorizationError("Authentication required")
    return transport.user_id


# ----------------
# Event handlers: (hub, transport, payload) -> None
# ----------------
def on_presence_ping(hub: RealtimeHub, transport: Transport, payload: events.Empty) -> None:
    hub.presence.mark_active(_require_identity(transport), transport)


def on_check_user_online(hub: RealtimeHub, transport: Transport, payload: events.CheckUserOnline) -> None:
    status = hub.presence.check_online(payload.user_id)
    hub.router.send(transport, "user-online-status", status.as_payload(payload.user_id))


def _load_appointment(hub: RealtimeHub, transport: Transport, appointment_id: int) -> Tuple[int, int]:
    with session_scope(hub.session_factory) as db:
        appt = db.get(models.Appointment, appointment_id)
        if appt is None:
            raise NotFoundError("Appointment not found")
        if appt.side_of(transport.user_id) is None and not transport.is_admin:
            raise AuthorizationError("Not authorized to access this chat")
        return appt.buyer_id, appt.seller_id


def on_appointment_join(hub: RealtimeHub, transport: Transport, payload: events.AppointmentRef) -> None:
    _require_identity(transport)
    _load_appointment(hub, transport, payload.appointment_id)
    hub.router.join(AppointmentRoom(payload.appointment_id), transport)


def on_appointment_leave(hub: RealtimeHub, transport: Transport, payload: events.AppointmentRef) -> None:
    hub.router.leave(AppointmentRoom(payload.appointment_id), transport)


def on_typing(hub: RealtimeHub, transport: Transport, payload: events.Typing) -> None:
    user_id = _require_identity(transport)
    room = AppointmentRoom(payload.appointment_id)
    if not hub.router.is_member(room, transport):
        raise AuthorizationError("Join the appointment before sending typing updates")
    hub.router.emit(
        "typing",
        {"appointment_id": payload.appointment_id, "user_id": user_id, "is_typing": payload.is_typing},
        rooms=[room],
        exclude=transport,
    )


def on_admin_appointments_active(hub: RealtimeHub, transport: Transport, payload: events.Empty) -> None:
    if not transport.is_admin:
        raise AuthorizationError("Admin privileges required")
    hub.router.join(AdminBroadcast(), transport)


def on_message_received(hub: RealtimeHub, transport: Transport, payload: events.MessageReceived) -> None:
    user_id = _require_identity(transport)
    with session_scope(hub.session_factory) as db:
        appt = db.get(models.Appointment, payload.appointment_id)
        if appt is None:
            raise NotFoundError("Appointment not found")
        hub.delivery.acknowledge(db, appt, payload.message_id, user_id)


def on_call_initiate(hub: RealtimeHub, transport: Transport, payload: events.CallInitiate) -> None:
    hub.calls.initiate(transport, payload.appointment_id, payload.receiver_id, payload.call_type)


def on_call_accept(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.calls.accept(transport, payload.call_id)


def on_call_reject(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.calls.reject(transport, payload.call_id)


def on_call_cancel(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.calls.cancel(transport, payload.call_id)


def on_call_end(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.calls.end(_require_identity(transport), payload.call_id, is_admin=transport.is_admin)


def on_webrtc_offer(hub: RealtimeHub, transport: Transport, payload: events.WebRTCOffer) -> None:
    hub.calls.relay_offer(transport, payload.call_id, payload.offer)


def on_webrtc_answer(hub: RealtimeHub, transport: Transport, payload: events.WebRTCAnswer) -> None:
    hub.calls.relay_answer(transport, payload.call_id, payload.answer)


def on_ice_candidate(hub: RealtimeHub, transport: Transport, payload: events.IceCandidate) -> None:
    hub.calls.relay_candidate(transport, payload.call_id, payload.candidate)


def on_monitor_join(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.monitor.join(transport, payload.call_id)


def on_monitor_leave(hub: RealtimeHub, transport: Transport, payload: events.CallRef) -> None:
    hub.monitor.leave(transport, payload.call_id)


def on_offer_monitor(hub: RealtimeHub, transport: Transport, payload: events.WebRTCOfferMonitor) -> None:
    hub.monitor.relay_offer(transport, payload.call_id, payload.admin_socket_id, payload.offer)


def on_answer_monitor(hub: RealtimeHub, transport: Transport, payload: events.WebRTCAnswerMonitor) -> None:
    hub.monitor.relay_answer(transport, payload.call_id, payload.role, payload.answer)


def on_candidate_monitor(hub: RealtimeHub, transport: Transport, payload: events.IceCandidateMonitor) -> None:
    hub.monitor.relay_candidate(
        transport, payload.call_id, payload.candidate, admin_socket_id=payload.admin_socket_id, role=payload.role
    )


def on_force_end(hub: RealtimeHub, transport: Transport, payload: events.ForceEndCall) -> None:
    hub.calls.force_end(transport.identity, payload.call_id, payload.reason, origin=transport)


# event name -> (handler, error event sent back on failure)
HANDLERS: Dict[str, Tuple[Callable, str]] = {
    "presence-ping": (on_presence_ping, "error"),
    "check-user-online": (on_check_user_online, "error"),
    "typing": (on_typing, "error"),
    "appointment-join": (on_appointment_join, "error"),
    "appointment-leave": (on_appointment_leave, "error"),
    "admin-appointments-active": (on_admin_appointments_active, "error"),
    "message-received": (on_message_received, "error"),
    "call-initiate": (on_call_initiate, "call-error"),
    "call-accept": (on_call_accept, "call-error"),
    "call-reject": (on_call_reject, "call-error"),
    "call-cancel": (on_call_cancel, "call-error"),
    "call-end": (on_call_end, "call-error"),
    "webrtc-offer": (on_webrtc_offer, "call-error"),
    "webrtc-answer": (on_webrtc_answer, "call-error"),
    "ice-candidate": (on_ice_candidate, "call-error"),
    "admin-monitor-join": (on_monitor_join, "call-monitor-error"),
    "admin-monitor-leave": (on_monitor_leave, "call-monitor-error"),
    "webrtc-offer-monitor": (on_offer_monitor, "call-monitor-error"),
    "webrtc-answer-monitor": (on_answer_monitor, "call-monitor-error"),
    "ice-candidate-monitor": (on_candidate_monitor, "call-monitor-error"),
    "admin-force-end-call": (on_force_end, "call-force-end-error"),
}


def _send_error(hub: RealtimeHub, transport: Transport, event: str, code: str, message: str, call_id=None) -> None:
    data = {"code": code, "message": message}
    if call_id is not None:
        data["call_id"] = call_id
    hub.router.send(transport, event, data)


def handle_frame(hub: RealtimeHub, transport: Transport, raw: str) -> None:
    """
    Decode, validate and dispatch one inbound frame.

    Never raises: every failure becomes a typed error event on the originating
    transport, so a bad frame cannot take the connection down.
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        _send_error(hub, transport, "error", "invalid_json", "Payload must be JSON")
        return
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        _send_error(hub, transport, "error", "invalid_payload", "Frame must be {event, data}")
        return

    name = frame["event"]
    entry = HANDLERS.get(name)
    if entry is None:
        _send_error(hub, transport, "error", "unknown_event", f"Unknown event '{name}'")
        return
    handler, error_event = entry

    if not transport.limiter.consume(1.0):
        _send_error(hub, transport, error_event, "rate_limited", "Too many events")
        return

    data = frame.get("data") or {}
    call_id = data.get("call_id") if isinstance(data, dict) else None
    try:
        payload = events.EVENT_MODELS[name].model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        _send_error(hub, transport, error_event, "invalid_payload", f"{where}: {first.get('msg', 'invalid')}", call_id)
        return

    try:
        handler(hub, transport, payload)
    except ChatError as exc:
        logger.info(
            "realtime.event.rejected",
            extra={"event": name, "sid": transport.sid, "code": exc.code, "reason": exc.message},
        )
        _send_error(hub, transport, error_event, exc.code, exc.message, call_id)
    except Exception:
        logger.exception("realtime.event.failed", extra={"event": name, "sid": transport.sid})
        _send_error(hub, transport, error_event, "server_error", "Internal server error", call_id)


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, hub: RealtimeHub = Depends(get_hub)) -> None:
    """
    Real-time endpoint for presence, chat fan-out, calls and call monitoring.
    - Auth: optional JWT via Authorization: Bearer or ?token=; an invalid token is refused
    - Client -> Server: {"event": "...", "data": {...}}
    - Server -> Client: same envelope; failures come back as error events
    - Rate limit: per-connection token bucket
    """
    identity: Optional[Identity] = None
    token = _get_token_from_ws(websocket)
    if token:
        db = hub.session_factory()
        try:
            identity = resolve_identity(db, token)
        except HTTPException:
            await websocket.close(code=1008)  # Policy violation
            return
        finally:
            db.close()

    await websocket.accept()
    transport = WebSocketTransport(websocket, identity)
    writer = asyncio.create_task(transport.pump())
    hub.connect(transport)
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            except Exception:
                # Unexpected error reading frame -> close
                break
            handle_frame(hub, transport, raw)
    finally:
        hub.disconnect(transport)
        transport.close()
        await writer
