"""Runtime configuration loaded from the environment or a ``.env`` file."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class ChatSettings(BaseSettings):
    """Settings for the chat core and its HTTP bridge.

    Every field can be overridden with a ``DIRECT_CHAT_`` prefixed
    environment variable, e.g. ``DIRECT_CHAT_SEND_TIMEOUT=5``.
    """

    model_config = SettingsConfigDict(env_prefix="DIRECT_CHAT_", env_file=".env", extra="ignore")

    users_collection: str = "users"
    """Collection holding one profile document per user."""

    messages_collection: str = "messages"
    """Root collection of the mirrored per-participant message views."""

    recent_collection: str = "recent_messages"
    """Root collection of the per-user recency index."""

    send_timeout: float = 30.0
    """Seconds a send may wait for the backend before failing."""

    blob_base_url: str = "memory://avatars"
    """URL prefix handed out by the in-memory blob store."""

    log_level: str = "INFO"
    json_logs: bool = False

    cors_origins: List[str] = ["*"]


@lru_cache
def get_settings() -> ChatSettings:
    return ChatSettings()
