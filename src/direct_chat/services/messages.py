"""Mirrored per-participant message logs."""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from weakref import WeakValueDictionary

import structlog

from ..backends.base import ChangeEvent, ChangeType, DocumentStore
from ..domain.errors import StoreError
from ..domain.models import ConversationKey, Message, utc_now
from .conversations import ConversationIndex
from .subscriptions import SubscriptionHandle

logger = structlog.get_logger()

MessageListener = Callable[[Message], None]
Clock = Callable[[], datetime]

TIMESTAMP_STEP = timedelta(microseconds=1)


class MessageStore:
    """Append-only message logs, one ordered view per participant.

    A message from A to B is written once under ``(A, B)`` and once under
    ``(B, A)`` with the same id and timestamp. The two writes are not atomic:
    when the second fails the error is raised and the sender's view already
    holds the message until the append is repeated.

    Timestamps are strictly increasing within a conversation, so the order
    in which a view receives messages is their ``(timestamp, id)`` order.
    The last-timestamp tables hold one entry per sender and per conversation,
    bounded by the contacts this process talks to.
    """

    def __init__(
        self,
        documents: DocumentStore,
        index: Optional[ConversationIndex] = None,
        collection: str = "messages",
        clock: Clock = utc_now,
    ) -> None:
        self._documents = documents
        self._index = index
        self._root = collection
        self._clock = clock
        self._locks: "WeakValueDictionary[ConversationKey, asyncio.Lock]" = WeakValueDictionary()
        self._last_sent: Dict[str, datetime] = {}
        self._last_in_conversation: Dict[ConversationKey, datetime] = {}

    def _view(self, owner: str, peer: str) -> str:
        return f"{self._root}/{owner}/{peer}"

    def _lock(self, key: ConversationKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _next_timestamp(self, sender: str, key: ConversationKey) -> datetime:
        now = self._clock()
        last = self._last_sent.get(sender)
        if last is not None and now < last:
            now = last
        previous = self._last_in_conversation.get(key)
        if previous is not None and now <= previous:
            now = previous + TIMESTAMP_STEP
        self._last_sent[sender] = now
        self._last_in_conversation[key] = now
        return now

    async def write(self, sender: str, recipient: str, text: str) -> Message:
        """Write a message to both participants' views without indexing it.

        Raises ``StoreError`` when either write fails.
        """
        if not text.strip():
            raise ValueError("Message text must not be empty")
        key = ConversationKey.of(sender, recipient)

        lock = self._lock(key)
        async with lock:
            message = Message(
                from_id=sender,
                to_id=recipient,
                text=text,
                timestamp=self._next_timestamp(sender, key),
            )
            await self._fan_out(message)

        logger.info(
            "message_appended",
            message_id=message.id,
            from_id=sender,
            to_id=recipient,
            text_length=len(text),
        )
        return message

    async def update_index(self, message: Message) -> None:
        """Best-effort recency update for both participants."""
        if self._index is None:
            return
        try:
            await self._index.record_exchange(message)
        except StoreError as e:
            logger.warning("index_update_failed", message_id=message.id, error=str(e))

    async def append(self, sender: str, recipient: str, text: str) -> Message:
        """Write a message to both views, then update the recency index.

        Raises ``StoreError`` when either write fails. The index update never
        fails the append.
        """
        message = await self.write(sender, recipient, text)
        await self.update_index(message)
        return message

    async def _fan_out(self, message: Message) -> None:
        fields = message.to_fields()
        written: List[str] = []
        for owner, peer in ((message.from_id, message.to_id), (message.to_id, message.from_id)):
            path = f"{self._view(owner, peer)}/{message.id}"
            try:
                await self._documents.set(path, fields)
            except StoreError as e:
                logger.error(
                    "message_fan_out_failed",
                    message_id=message.id,
                    failed_view=f"{owner}/{peer}",
                    written_views=written,
                    error=str(e),
                )
                raise
            written.append(f"{owner}/{peer}")

    async def history(self, owner: str, peer: str) -> List[Message]:
        events = await self._documents.list_collection(self._view(owner, peer), order_by="timestamp")
        return sorted(
            (Message.from_fields(e.doc_id, e.fields) for e in events), key=lambda m: m.sort_key
        )

    async def subscribe(
        self, owner: str, peer: str, on_message: MessageListener
    ) -> SubscriptionHandle:
        """Deliver the ``(owner, peer)`` view: history first, then new messages.

        Delivery is at-least-once; listeners de-duplicate by message id.
        """
        handle = SubscriptionHandle(f"messages:{owner}/{peer}")

        def on_event(event: ChangeEvent) -> None:
            if event.type is not ChangeType.ADDED:
                return
            handle.deliver(on_message, Message.from_fields(event.doc_id, event.fields))

        registration = await self._documents.listen_ordered(
            self._view(owner, peer), "timestamp", on_event
        )
        handle.attach(registration)
        logger.info("message_subscription_started", owner=owner, peer=peer)
        return handle
