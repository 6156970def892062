# Domain errors raised by the message store and the call session manager.
# REST handlers map them to {success, message} bodies; WebSocket handlers to typed error events.
from __future__ import annotations


class ChatError(Exception):
    """Base class; carries an HTTP-equivalent status code and a human-readable message."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthorizationError(ChatError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ChatError):
    status_code = 404
    code = "not_found"


class StateConflictError(ChatError):
    status_code = 400
    code = "state_conflict"


class BusyError(ChatError):
    status_code = 409
    code = "busy"


class InvalidCredentialsError(ChatError):
    status_code = 400
    code = "invalid_credentials"
