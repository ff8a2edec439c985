"""In-memory backend implementations.

Used as test fakes and for running the HTTP bridge locally. Each store can be
made unreachable (``available = False``) and the document store can fail
writes under chosen path prefixes or hold notifications back until
``flush()`` is awaited, the way a real network SDK delivers them late.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

import structlog

from ..domain.errors import AuthError, AuthFailure, StoreError, StoreFailure
from .base import (
    AuthProvider,
    BlobStore,
    ChangeCallback,
    ChangeEvent,
    ChangeType,
    DocumentStore,
    Fields,
    ListenerRegistration,
)

logger = structlog.get_logger()

MIN_PASSWORD_LENGTH = 6


def _split(path: str) -> Tuple[str, str]:
    collection, _, doc_id = path.strip("/").rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"Invalid document path: {path!r}")
    return collection, doc_id


class _Registration(ListenerRegistration):
    def __init__(self, store: "InMemoryDocumentStore", path: str, callback: ChangeCallback) -> None:
        self._store = store
        self.path = path
        self.callback = callback
        self.active = True

    def remove(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._detach(self)

    def dispatch(self, event: ChangeEvent) -> None:
        try:
            self.callback(event)
        except Exception as e:
            logger.error("listener_callback_failed", path=self.path, error=str(e))


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory."""

    def __init__(self, latency: float = 0.0, deferred: bool = False) -> None:
        self.latency = latency
        self.deferred = deferred
        self.available = True
        self.write_count = 0
        self._collections: Dict[str, Dict[str, Fields]] = {}
        self._listeners: Dict[str, List[_Registration]] = {}
        self._failing_prefixes: Set[str] = set()
        self._pending: List[Tuple[_Registration, ChangeEvent]] = []
        self._async_lock = asyncio.Lock()

    def fail_writes(self, prefix: str) -> None:
        """Make every write below ``prefix`` fail as unreachable."""
        self._failing_prefixes.add(prefix.strip("/"))

    def heal(self) -> None:
        self._failing_prefixes.clear()
        self.available = True

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)
        if not self.available:
            raise StoreError(StoreFailure.UNREACHABLE, "document store unavailable")

    async def set(self, path: str, fields: Fields) -> None:
        collection, doc_id = _split(path)
        await self._round_trip()
        if any(path.strip("/").startswith(prefix) for prefix in self._failing_prefixes):
            logger.warning("document_write_rejected", path=path)
            raise StoreError(StoreFailure.UNREACHABLE, f"write to {path} failed")

        async with self._async_lock:
            docs = self._collections.setdefault(collection, {})
            change = ChangeType.MODIFIED if doc_id in docs else ChangeType.ADDED
            docs[doc_id] = dict(fields)
            self.write_count += 1
            self._notify(collection, ChangeEvent(type=change, doc_id=doc_id, fields=dict(fields)))

    async def get(self, path: str) -> Optional[Fields]:
        collection, doc_id = _split(path)
        await self._round_trip()
        async with self._async_lock:
            fields = self._collections.get(collection, {}).get(doc_id)
            return dict(fields) if fields is not None else None

    async def add_to_collection(self, path: str, fields: Fields) -> str:
        doc_id = uuid4().hex
        await self.set(f"{path.strip('/')}/{doc_id}", fields)
        return doc_id

    async def list_collection(
        self, path: str, order_by: Optional[str] = None, descending: bool = False
    ) -> List[ChangeEvent]:
        await self._round_trip()
        async with self._async_lock:
            return self._snapshot(path.strip("/"), order_by, descending)

    async def listen_ordered(
        self, path: str, order_by: str, on_change: ChangeCallback
    ) -> ListenerRegistration:
        collection = path.strip("/")
        await self._round_trip()
        async with self._async_lock:
            registration = _Registration(self, collection, on_change)
            for event in self._snapshot(collection, order_by, descending=False):
                registration.dispatch(event)
            self._listeners.setdefault(collection, []).append(registration)
            logger.debug("listener_attached", path=collection)
            return registration

    async def flush(self) -> int:
        """Deliver notifications held back in deferred mode.

        Notifications queued before a listener was removed are still
        dispatched to it, as they were already in flight.
        """
        await asyncio.sleep(0)
        pending, self._pending = self._pending, []
        for registration, event in pending:
            registration.dispatch(event)
        return len(pending)

    def redeliver(self, path: str, order_by: str) -> None:
        """Replay the whole collection to its listeners as ``ADDED`` events."""
        collection = path.strip("/")
        for event in self._snapshot(collection, order_by, descending=False):
            self._notify(collection, event)

    def _snapshot(
        self, collection: str, order_by: Optional[str], descending: bool
    ) -> List[ChangeEvent]:
        docs = self._collections.get(collection, {})
        events = [
            ChangeEvent(type=ChangeType.ADDED, doc_id=doc_id, fields=dict(fields))
            for doc_id, fields in docs.items()
        ]
        if order_by is not None:
            events.sort(key=lambda e: (e.fields.get(order_by), e.doc_id), reverse=descending)
        return events

    def _notify(self, collection: str, event: ChangeEvent) -> None:
        for registration in list(self._listeners.get(collection, [])):
            if self.deferred:
                self._pending.append((registration, event))
            else:
                registration.dispatch(event)

    def _detach(self, registration: _Registration) -> None:
        listeners = self._listeners.get(registration.path)
        if not listeners:
            return
        try:
            listeners.remove(registration)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(registration.path, None)


class InMemoryAuthProvider(AuthProvider):
    """Email/password accounts kept in process memory."""

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.available = True
        self._accounts: Dict[str, Tuple[str, str]] = {}
        self._current: Optional[str] = None

    def fork(self) -> "InMemoryAuthProvider":
        """Another device signed into the same account table."""
        device = InMemoryAuthProvider(latency=self.latency)
        device._accounts = self._accounts
        return device

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)
        if not self.available:
            raise AuthError(AuthFailure.NETWORK_FAILURE, "auth provider unavailable")

    async def sign_in(self, email: str, password: str) -> str:
        await self._round_trip()
        account = self._accounts.get(email.strip().lower())
        if account is None or account[1] != password:
            raise AuthError(AuthFailure.INVALID_CREDENTIALS)
        self._current = account[0]
        return account[0]

    async def create_account(self, email: str, password: str) -> str:
        await self._round_trip()
        key = email.strip().lower()
        if "@" not in key or len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(AuthFailure.INVALID_CREDENTIALS, "malformed email or weak password")
        if key in self._accounts:
            raise AuthError(AuthFailure.EMAIL_TAKEN, key)
        uid = uuid4().hex
        self._accounts[key] = (uid, password)
        self._current = uid
        return uid

    async def sign_out(self) -> None:
        await self._round_trip()
        self._current = None

    def current_user_id(self) -> Optional[str]:
        return self._current


class InMemoryBlobStore(BlobStore):
    """Object storage kept in process memory."""

    def __init__(self, base_url: str = "memory://blobs", latency: float = 0.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.latency = latency
        self.available = True
        self._blobs: Dict[str, bytes] = {}

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)
        if not self.available:
            raise StoreError(StoreFailure.UNREACHABLE, "blob store unavailable")

    async def put(self, key: str, data: bytes) -> None:
        await self._round_trip()
        self._blobs[key] = bytes(data)

    async def download_url(self, key: str) -> str:
        await self._round_trip()
        if key not in self._blobs:
            raise StoreError(StoreFailure.NOT_FOUND, key)
        return f"{self.base_url}/{key}"

    def read(self, key: str) -> Optional[bytes]:
        return self._blobs.get(key)
