"""Wires the backend collaborators into the chat services."""

from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog

from .backends.base import AuthProvider, BlobStore, DocumentStore
from .backends.memory import InMemoryAuthProvider, InMemoryBlobStore, InMemoryDocumentStore
from .config import ChatSettings, get_settings
from .domain.errors import SessionError, SessionFailure
from .domain.models import utc_now
from .services.chat import ChatSession
from .services.conversations import ConversationIndex
from .services.messages import Clock, MessageStore
from .services.profiles import ProfileDirectory
from .services.session import SessionStore

logger = structlog.get_logger()


@dataclass
class ChatServices:
    settings: ChatSettings
    auth: AuthProvider
    documents: DocumentStore
    blobs: BlobStore
    profiles: ProfileDirectory
    sessions: SessionStore
    index: ConversationIndex
    messages: MessageStore
    chats: Dict[str, ChatSession] = field(default_factory=dict)

    def require_user(self) -> str:
        uid = self.sessions.current_user()
        if uid is None:
            raise SessionError(SessionFailure.NO_ACTIVE_LOGIN)
        return uid

    async def open_chat(self, peer: str) -> ChatSession:
        """Return the open chat with ``peer``, opening it if needed."""
        uid = self.require_user()
        chat = self.chats.get(peer)
        if chat is not None and chat.is_open and chat.local_user == uid:
            return chat
        chat = ChatSession(self.sessions, self.messages, send_timeout=self.settings.send_timeout)
        await chat.open(uid, peer)
        self.chats[peer] = chat
        return chat

    def close_chat(self, peer: str) -> bool:
        chat = self.chats.pop(peer, None)
        if chat is None:
            return False
        chat.close()
        return True

    def close_all(self) -> None:
        for peer in list(self.chats):
            self.close_chat(peer)


def build_services(
    settings: Optional[ChatSettings] = None,
    auth: Optional[AuthProvider] = None,
    documents: Optional[DocumentStore] = None,
    blobs: Optional[BlobStore] = None,
    clock: Clock = utc_now,
) -> ChatServices:
    """Create the service graph, defaulting to in-memory backends."""
    settings = settings or get_settings()
    auth = auth or InMemoryAuthProvider()
    documents = documents or InMemoryDocumentStore()
    blobs = blobs or InMemoryBlobStore(base_url=settings.blob_base_url)

    profiles = ProfileDirectory(documents, blobs, collection=settings.users_collection)
    sessions = SessionStore(auth, profiles)
    index = ConversationIndex(documents, profiles, collection=settings.recent_collection)
    messages = MessageStore(documents, index=index, collection=settings.messages_collection, clock=clock)
    logger.info("services_built", backend=type(documents).__name__)
    return ChatServices(
        settings=settings,
        auth=auth,
        documents=documents,
        blobs=blobs,
        profiles=profiles,
        sessions=sessions,
        index=index,
        messages=messages,
    )
