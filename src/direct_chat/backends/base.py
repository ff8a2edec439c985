"""Contracts for the hosted backend collaborators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

Fields = Dict[str, Any]


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"


@dataclass(frozen=True)
class ChangeEvent:
    """A single document change observed by a collection listener."""

    type: ChangeType
    doc_id: str
    fields: Fields = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


class ListenerRegistration(ABC):
    """Handle returned by ``DocumentStore.listen_ordered``."""

    @abstractmethod
    def remove(self) -> None:
        """Stop listening."""
        pass


class AuthProvider(ABC):
    """Hosted authentication service."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> str:
        """Sign in and return the user id."""
        pass

    @abstractmethod
    async def create_account(self, email: str, password: str) -> str:
        """Create an account, sign it in and return the user id."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Sign out the current user."""
        pass

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """Return the signed-in user id, if any."""
        pass


class DocumentStore(ABC):
    """Hosted document database addressed by slash-separated paths.

    Paths alternate collection and document segments, e.g.
    ``messages/{owner}/{other}/{message_id}``.
    """

    @abstractmethod
    async def set(self, path: str, fields: Fields) -> None:
        """Create or overwrite the document at ``path``."""
        pass

    @abstractmethod
    async def get(self, path: str) -> Optional[Fields]:
        """Return the document at ``path`` or None."""
        pass

    @abstractmethod
    async def add_to_collection(self, path: str, fields: Fields) -> str:
        """Add a document with a generated id to the collection at ``path``."""
        pass

    @abstractmethod
    async def list_collection(
        self, path: str, order_by: Optional[str] = None, descending: bool = False
    ) -> List[ChangeEvent]:
        """Return every document of the collection at ``path``."""
        pass

    @abstractmethod
    async def listen_ordered(
        self, path: str, order_by: str, on_change: ChangeCallback
    ) -> ListenerRegistration:
        """Stream changes of a collection.

        Existing documents are reported first as ``ADDED`` events in
        ``order_by`` order, then every later change as it happens.
        """
        pass


class BlobStore(ABC):
    """Hosted object storage."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Upload ``data`` under ``key``."""
        pass

    @abstractmethod
    async def download_url(self, key: str) -> str:
        """Return a URL from which ``key`` can be downloaded."""
        pass
