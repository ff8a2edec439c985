"""One active direct-message conversation."""

import asyncio
from enum import Enum
from typing import Dict, List, Optional

import structlog

from ..domain.errors import SessionError, SessionFailure, StoreError, StoreFailure
from ..domain.models import Message
from .messages import MessageStore
from .session import SessionStore, SessionSubscription
from .subscriptions import SubscriptionHandle

logger = structlog.get_logger()


class ChatState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    SENDING = "sending"


class ChatSession:
    """Orchestrates a conversation between the logged-in user and one peer.

    ``open`` subscribes to the user's view of the conversation, ``send``
    appends to both views, ``close`` tears the subscription down. Only one
    send may be in flight at a time.
    """

    def __init__(
        self,
        sessions: SessionStore,
        messages: MessageStore,
        send_timeout: float = 30.0,
    ) -> None:
        self._sessions = sessions
        self._messages = messages
        self._send_timeout = send_timeout
        self.state = ChatState.CLOSED
        self.local_user: Optional[str] = None
        self.peer: Optional[str] = None
        self.draft = ""
        self._received: Dict[str, Message] = {}
        self._incoming: "asyncio.Queue[Message]" = asyncio.Queue()
        self._handle: Optional[SubscriptionHandle] = None
        self._session_watch: Optional[SessionSubscription] = None

    @property
    def is_open(self) -> bool:
        return self.state is not ChatState.CLOSED

    @property
    def messages(self) -> List[Message]:
        """Messages received so far, oldest first, without duplicates."""
        return sorted(self._received.values(), key=lambda m: m.sort_key)

    async def open(self, local_user: str, peer: str) -> "ChatSession":
        if self._sessions.current_user() != local_user or local_user is None:
            raise SessionError(SessionFailure.NO_ACTIVE_LOGIN)
        if self.is_open:
            if (self.local_user, self.peer) == (local_user, peer):
                return self
            self.close()

        self.local_user = local_user
        self.peer = peer
        self._received = {}
        self._incoming = asyncio.Queue()
        self.state = ChatState.OPEN
        try:
            self._handle = await self._messages.subscribe(local_user, peer, self._on_message)
        except StoreError:
            self.state = ChatState.CLOSED
            raise
        self._session_watch = self._sessions.subscribe(self._on_session_change)
        logger.info("chat_opened", local_user=local_user, peer=peer)
        return self

    def _on_message(self, message: Message) -> None:
        if message.id in self._received:
            logger.debug("duplicate_message_skipped", message_id=message.id)
            return
        self._received[message.id] = message
        self._incoming.put_nowait(message)

    def _on_session_change(self, uid: Optional[str]) -> None:
        if uid != self.local_user:
            logger.info("chat_closed_on_session_change", local_user=self.local_user, peer=self.peer)
            self.close()

    async def send(self, text: Optional[str] = None) -> Message:
        """Append ``text`` (or the draft) to the conversation.

        Returns once the backend has accepted the message in both views. The
        send timeout bounds only those writes; the recency index is updated
        afterwards and its failure does not fail the send.
        """
        if self._sessions.current_user() is None:
            raise SessionError(SessionFailure.NO_ACTIVE_LOGIN)
        if self.state is not ChatState.OPEN:
            raise SessionError(SessionFailure.NOT_OPEN)

        body = self.draft if text is None else text
        self.state = ChatState.SENDING
        try:
            message = await asyncio.wait_for(
                self._messages.write(self.local_user, self.peer, body),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("send_timed_out", local_user=self.local_user, peer=self.peer)
            raise StoreError(StoreFailure.UNREACHABLE, "send timed out")
        finally:
            if self.state is ChatState.SENDING:
                self.state = ChatState.OPEN

        if text is None or text == self.draft:
            self.draft = ""
        await self._messages.update_index(message)
        return message

    async def receive(self, timeout: Optional[float] = None) -> Message:
        """Wait for the next message not seen before."""
        return await asyncio.wait_for(self._incoming.get(), timeout=timeout)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None
        if self._session_watch is not None:
            self._session_watch.cancel()
            self._session_watch = None
        if self.state is not ChatState.CLOSED:
            logger.info("chat_closed", local_user=self.local_user, peer=self.peer)
        self.state = ChatState.CLOSED

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
