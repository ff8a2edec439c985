"""Direct-message chat core: sessions, mirrored message logs, recency index."""

from .container import ChatServices, build_services
from .domain.errors import AuthError, ChatError, SessionError, StoreError
from .services.chat import ChatSession, ChatState

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "ChatError",
    "ChatServices",
    "ChatSession",
    "ChatState",
    "SessionError",
    "StoreError",
    "build_services",
]
