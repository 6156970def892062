# Inbound real-time event payloads, validated at the socket boundary before any handler runs.
# Frames look like {"event": "<name>", "data": {...}}; unknown keys inside data are ignored.
from typing import Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from .schemas import CallType

ParticipantRole = Literal["caller", "receiver"]


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Empty(EventPayload):
    pass


# Presence and chat rooms
class CheckUserOnline(EventPayload):
    user_id: int = Field(..., ge=1)


class AppointmentRef(EventPayload):
    appointment_id: int = Field(..., ge=1)


class Typing(AppointmentRef):
    is_typing: bool = True


class MessageReceived(AppointmentRef):
    message_id: int = Field(..., ge=1)


# Calls
class CallInitiate(AppointmentRef):
    receiver_id: int = Field(..., ge=1)
    call_type: CallType


class CallRef(EventPayload):
    call_id: str = Field(..., min_length=1, max_length=64)


class WebRTCOffer(CallRef):
    offer: dict


class WebRTCAnswer(CallRef):
    answer: dict


class IceCandidate(CallRef):
    candidate: dict


class ForceEndCall(CallRef):
    reason: Optional[str] = Field(None, max_length=500)


# Monitoring
class WebRTCOfferMonitor(WebRTCOffer):
    admin_socket_id: str = Field(..., min_length=1)


class WebRTCAnswerMonitor(WebRTCAnswer):
    role: ParticipantRole


class IceCandidateMonitor(IceCandidate):
    # Set by participants (which admin), or role by the admin (which participant)
    admin_socket_id: Optional[str] = None
    role: Optional[ParticipantRole] = None


EVENT_MODELS: Dict[str, Type[EventPayload]] = {
    "presence-ping": Empty,
    "check-user-online": CheckUserOnline,
    "typing": Typing,
    "appointment-join": AppointmentRef,
    "appointment-leave": AppointmentRef,
    "admin-appointments-active": Empty,
    "message-received": MessageReceived,
    "call-initiate": CallInitiate,
    "call-accept": CallRef,
    "call-reject": CallRef,
    "call-cancel": CallRef,
    "call-end": CallRef,
    "webrtc-offer": WebRTCOffer,
    "webrtc-answer": WebRTCAnswer,
    "ice-candidate": IceCandidate,
    "admin-monitor-join": CallRef,
    "admin-monitor-leave": CallRef,
    "webrtc-offer-monitor": WebRTCOfferMonitor,
    "webrtc-answer-monitor": WebRTCAnswerMonitor,
    "ice-candidate-monitor": IceCandidateMonitor,
    "admin-force-end-call": ForceEndCall,
}
