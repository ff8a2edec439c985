"""Error taxonomy for the chat core.

Every failure here is recoverable: callers receive a typed error carrying a
``reason`` and decide whether to retry or report it.
"""

from enum import Enum


class AuthFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_TAKEN = "email_taken"
    NETWORK_FAILURE = "network_failure"


class StoreFailure(str, Enum):
    UNREACHABLE = "unreachable"
    NOT_FOUND = "not_found"


class SessionFailure(str, Enum):
    NO_ACTIVE_LOGIN = "no_active_login"
    NOT_OPEN = "not_open"


class ChatError(Exception):
    """Base class for errors raised by the chat core."""

    def __init__(self, reason: Enum, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class AuthError(ChatError):
    """Sign-in, registration or provider failure."""

    reason: AuthFailure


class StoreError(ChatError):
    """Document or blob store failure."""

    reason: StoreFailure


class SessionError(ChatError):
    """Operation not allowed in the current session or chat state."""

    reason: SessionFailure
