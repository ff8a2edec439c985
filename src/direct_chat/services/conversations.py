"""Per-user recency index of conversations."""

import asyncio
from typing import Callable, Dict, List, Optional
from weakref import WeakValueDictionary

import structlog

from ..backends.base import ChangeEvent, DocumentStore
from ..domain.errors import StoreError
from ..domain.models import Message, RecentConversationEntry, UserProfile
from .profiles import ProfileDirectory
from .subscriptions import SubscriptionHandle

logger = structlog.get_logger()

RecentListener = Callable[[List[RecentConversationEntry]], None]


def _ordered(entries) -> List[RecentConversationEntry]:
    return sorted(entries, key=lambda e: e.sort_key, reverse=True)


class ConversationIndex:
    """Keeps, per owner, the latest message exchanged with each peer.

    Entries are stored one document per ``(owner, peer)`` and overwritten on
    every exchange. Concurrent updates resolve last-writer-wins by message
    timestamp (ties by message id).
    """

    def __init__(
        self,
        documents: DocumentStore,
        profiles: ProfileDirectory,
        collection: str = "recent_messages",
    ) -> None:
        self._documents = documents
        self._profiles = profiles
        self._root = collection
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    def _collection(self, owner: str) -> str:
        return f"{self._root}/{owner}/messages"

    def _lock(self, owner: str) -> asyncio.Lock:
        lock = self._locks.get(owner)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner] = lock
        return lock

    async def upsert(
        self,
        owner: str,
        peer: str,
        last_message: Message,
        peer_profile: Optional[UserProfile] = None,
    ) -> List[RecentConversationEntry]:
        """Replace or insert the entry for ``(owner, peer)``.

        Returns the owner's entries, most recent first.
        """
        if {owner, peer} != {last_message.from_id, last_message.to_id}:
            raise ValueError(f"Message {last_message.id} is not between {owner} and {peer}")
        if peer_profile is None:
            peer_profile = await self._profiles.find(peer)
        entry = RecentConversationEntry.for_message(owner, last_message, peer_profile)
        path = f"{self._collection(owner)}/{peer}"

        async with self._lock(owner):
            existing = await self._documents.get(path)
            if existing is not None:
                current = RecentConversationEntry.from_fields(existing)
                if current.sort_key > entry.sort_key:
                    logger.info(
                        "stale_recent_entry_ignored",
                        owner=owner,
                        peer=peer,
                        message_id=last_message.id,
                    )
                    return await self.recent(owner)
            await self._documents.set(path, entry.to_fields())

        logger.debug("recent_entry_upserted", owner=owner, peer=peer, message_id=last_message.id)
        return await self.recent(owner)

    async def record_exchange(self, message: Message) -> None:
        """Update both participants' entries for a newly appended message.

        Each participant is updated on its own; the first failure is raised
        after both have been attempted.
        """
        failures: List[StoreError] = []
        for owner, peer in ((message.from_id, message.to_id), (message.to_id, message.from_id)):
            try:
                await self.upsert(owner, peer, message)
            except StoreError as e:
                logger.warning(
                    "recent_entry_update_failed",
                    owner=owner,
                    peer=peer,
                    message_id=message.id,
                    error=str(e),
                )
                failures.append(e)
        if failures:
            raise failures[0]

    async def recent(self, owner: str) -> List[RecentConversationEntry]:
        events = await self._documents.list_collection(
            self._collection(owner), order_by="timestamp", descending=True
        )
        return _ordered(RecentConversationEntry.from_fields(e.fields) for e in events)

    async def subscribe(self, owner: str, on_change: RecentListener) -> SubscriptionHandle:
        """Stream the owner's full recency-ordered list on every change."""
        handle = SubscriptionHandle(f"recent:{owner}")
        entries: Dict[str, RecentConversationEntry] = {}
        backfilled = False

        def on_event(event: ChangeEvent) -> None:
            entry = RecentConversationEntry.from_fields(event.fields)
            current = entries.get(entry.peer_id)
            if current is not None and current.sort_key > entry.sort_key:
                return
            # replaced in place, observers never see the list without the peer
            entries[entry.peer_id] = entry
            if backfilled:
                handle.deliver(on_change, _ordered(entries.values()))

        registration = await self._documents.listen_ordered(
            self._collection(owner), "timestamp", on_event
        )
        handle.attach(registration)
        backfilled = True
        handle.deliver(on_change, _ordered(entries.values()))
        logger.info("recent_subscription_started", owner=owner, entries=len(entries))
        return handle
