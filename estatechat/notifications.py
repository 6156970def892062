# Call notification emails: fire-and-forget, failures are logged and never reach the caller.
# Disabled (log only) when SMTP_HOST is not configured, which keeps dev and tests offline.
from __future__ import annotations

import logging
import os
import smtplib
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Optional

logger = logging.getLogger("estatechat.notifications")


def _truthy(val: Optional[str]) -> bool:
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def format_duration(seconds: Optional[int]) -> str:
    """M:SS below an hour, H:MM:SS above."""
    seconds = max(0, int(seconds or 0))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class Party:
    user_id: int
    name: str
    email: str


@dataclass(frozen=True)
class CallEmail:
    """Everything a call email needs, captured while the DB session is still open."""

    call_id: str
    call_type: str
    property_name: str
    caller: Party
    receiver: Party
    duration: int = 0
    reason: Optional[str] = None


def safe_call(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("notifications.failed", extra={"handler": getattr(fn, "__name__", repr(fn))})


def fire_and_forget(fn: Callable[..., Any], *args: Any) -> None:
    t = threading.Thread(target=safe_call, args=(fn, *args), name="email-notification", daemon=True)
    t.start()


class EmailNotifier:
    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "no-reply@estatechat.local",
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls

    @classmethod
    def from_env(cls) -> "EmailNotifier":
        return cls(
            host=os.getenv("SMTP_HOST") or None,
            port=int(os.getenv("SMTP_PORT", "587")),
            username=os.getenv("SMTP_USERNAME") or None,
            password=os.getenv("SMTP_PASSWORD") or None,
            sender=os.getenv("EMAIL_FROM", "no-reply@estatechat.local"),
            use_tls=_truthy(os.getenv("SMTP_USE_TLS", "true")),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.enabled:
            logger.info("notifications.email.skipped", extra={"to": to, "subject": subject})
            return
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(msg)
        logger.info("notifications.email.sent", extra={"to": to, "subject": subject})

    # Call emails
    def call_initiated(self, ctx: CallEmail) -> None:
        self.send(
            ctx.receiver.email,
            f"Incoming {ctx.call_type} call from {ctx.caller.name}",
            f"Hi {ctx.receiver.name},\n\n"
            f"{ctx.caller.name} is calling you about {ctx.property_name}.\n"
            "Open your appointments to answer.\n",
        )

    def call_missed(self, ctx: CallEmail) -> None:
        self.send(
            ctx.receiver.email,
            f"Missed {ctx.call_type} call from {ctx.caller.name}",
            f"Hi {ctx.receiver.name},\n\n"
            f"You missed a {ctx.call_type} call from {ctx.caller.name} about {ctx.property_name}.\n",
        )

    def call_ended(self, ctx: CallEmail) -> None:
        duration = format_duration(ctx.duration)
        for me, other in ((ctx.caller, ctx.receiver), (ctx.receiver, ctx.caller)):
            self.send(
                me.email,
                f"Your {ctx.call_type} call has ended",
                f"Hi {me.name},\n\n"
                f"Your {ctx.call_type} call with {other.name} about {ctx.property_name} "
                f"has ended.\nDuration: {duration}\n",
            )

    def call_force_terminated(self, ctx: CallEmail) -> None:
        duration = format_duration(ctx.duration)
        reason = ctx.reason or "Policy violation"
        for me, other in ((ctx.caller, ctx.receiver), (ctx.receiver, ctx.caller)):
            self.send(
                me.email,
                f"Your {ctx.call_type} call was terminated by an administrator",
                f"Hi {me.name},\n\n"
                f"Your {ctx.call_type} call with {other.name} about {ctx.property_name} "
                f"was ended by our moderation team.\nReason: {reason}\nDuration: {duration}\n",
            )
