# Pydantic models (request/response DTOs) used by the API layer.
# Keep models minimal and serializable; business logic lives in services.
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator, EmailStr
from typing import List, Literal, Optional
from datetime import date, datetime


# Authentication and user models

# User roles that can be requested at signup; root admins are provisioned out of band
SignupRole = Literal["user", "admin"]
Role = Literal["user", "admin", "rootadmin"]


# Request payload for user registration
class UserCreate(BaseModel):
    email: EmailStr
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8)
    role: SignupRole = "user"

    # Normalize email input to lowercase without surrounding whitespace
    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# API response for a user record
class UserRead(BaseModel):
    id: int
    email: EmailStr
    username: str
    role: Role
    admin_approval_status: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Request payload for logging in
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)

    # Normalize email input to lowercase without surrounding whitespace
    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# OAuth2-style token response bundled with the current user profile
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


# Appointments
# Request payload for booking an appointment with a seller
class AppointmentCreate(BaseModel):
    seller_id: int = Field(..., ge=1)
    property_name: str = Field(..., min_length=1, max_length=255)
    listing_id: Optional[int] = None
    meeting_date: Optional[date] = None

    @field_validator("property_name", mode="before")
    @classmethod
    def strip_name(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip()
        return v


# API response for an appointment (lock secrets are never exposed)
class AppointmentRead(BaseModel):
    id: int
    buyer_id: int
    seller_id: int
    listing_id: Optional[int] = None
    property_name: str
    meeting_date: Optional[date] = None
    admin_hidden: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Chat lock
class ChatPasswordRequest(BaseModel):
    password: str = Field(..., min_length=1)

    @field_validator("password")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Password is required")
        return v


class ChatLockStatus(BaseModel):
    chat_locked: bool
    has_password: bool = False
    access_granted: bool
    message: Optional[str] = None


# Messages
MessageType = Literal["text", "image", "video", "document", "audio"]
PinDuration = Literal["24hrs", "7days", "30days", "custom"]

# Media URL field carried by each non-text content variant
MEDIA_FIELDS = {
    "image": "image_url",
    "video": "video_url",
    "document": "document_url",
    "audio": "audio_url",
}


class Reaction(BaseModel):
    emoji: str
    user_id: int
    user_name: Optional[str] = None
    timestamp: datetime


# Request payload for sending a message.
# Exactly one content variant: text needs a non-empty message; media types need
# their own URL (the message is then an optional caption) and no other media URL.
class MessageCreate(BaseModel):
    type: MessageType = "text"
    message: str = Field("", max_length=5000)
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_mime_type: Optional[str] = None
    audio_url: Optional[str] = None
    audio_name: Optional[str] = None
    audio_mime_type: Optional[str] = None
    reply_to: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def check_single_payload(self) -> "MessageCreate":
        present = [kind for kind, field in MEDIA_FIELDS.items() if getattr(self, field)]
        if self.type == "text":
            if present:
                raise ValueError("Text messages cannot carry media")
            if not self.message.strip():
                raise ValueError("Message text is required")
        else:
            if present != [self.type]:
                raise ValueError(f"A {self.type} message needs exactly one {MEDIA_FIELDS[self.type]}")
        return self


class MessageEdit(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)


class BulkDeleteRequest(BaseModel):
    message_ids: List[int] = Field(..., min_length=1)


class ClearChatRequest(BaseModel):
    password: str = Field(..., min_length=1)


class StarRequest(BaseModel):
    starred: bool


class PinRequest(BaseModel):
    pinned: bool
    pin_duration: Optional[PinDuration] = None
    custom_hours: Optional[float] = Field(None, gt=0)


class ReactRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


# API response for a chat message
class MessageRead(BaseModel):
    id: int
    appointment_id: int
    sender_id: int
    sender_email: Optional[str] = None
    created_at: datetime
    type: MessageType
    message: str
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_mime_type: Optional[str] = None
    audio_url: Optional[str] = None
    audio_name: Optional[str] = None
    audio_mime_type: Optional[str] = None
    reply_to_id: Optional[int] = None
    status: Literal["sent", "delivered", "read"]
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    read_by: List[int] = []
    deleted: bool = False
    deleted_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    original_message: Optional[str] = None
    original_image_url: Optional[str] = None
    removed_for: List[int] = []
    edited: bool = False
    edited_at: Optional[datetime] = None
    starred_by: List[int] = []
    pinned: bool = False
    pinned_by: Optional[int] = None
    pinned_at: Optional[datetime] = None
    pin_expires_at: Optional[datetime] = None
    pin_duration: Optional[PinDuration] = None
    reactions: List[Reaction] = []

    model_config = ConfigDict(from_attributes=True)


class ActionResult(BaseModel):
    success: bool = True
    message: str


class ReadReceiptResult(BaseModel):
    success: bool = True
    updated: int


class BulkDeleteResult(ActionResult):
    deleted_ids: List[int]


class ClearChatResult(ActionResult):
    removed: int


# Calls
CallType = Literal["audio", "video"]
CallStatus = Literal["initiated", "ringing", "accepted", "rejected", "ended", "missed", "cancelled"]


class CallRead(BaseModel):
    call_id: str
    appointment_id: int
    caller_id: int
    receiver_id: int
    call_type: CallType
    status: CallStatus
    placed_at: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    ended_by: Optional[int] = None
    admin_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CallPage(BaseModel):
    calls: List[CallRead]
    total: int
    page: int
    total_pages: int


class CallStats(BaseModel):
    total: int
    audio: int
    video: int
    missed: int
    average_duration: int


class AdminCallPage(CallPage):
    stats: CallStats


class CallEndRequest(BaseModel):
    call_id: str = Field(..., min_length=1)


class CallEndResponse(BaseModel):
    success: bool = True
    message: str
    call: CallRead


class TerminationNotificationRequest(BaseModel):
    call_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


# Live call registry entry shown on the admin dashboard
class ActiveCall(BaseModel):
    call_id: str
    appointment_id: int
    caller_id: int
    receiver_id: int
    call_type: CallType
    status: Literal["initiated", "ringing", "accepted"]
    placed_at: datetime
    start_time: Optional[datetime] = None
    monitor_count: int = 0
