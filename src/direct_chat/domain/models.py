"""Domain models for the chat core."""

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid4().hex


class Credentials(BaseModel):
    """Email/password pair used for sign-in and registration."""

    email: str
    password: SecretStr


class ProfileDraft(BaseModel):
    """Profile data supplied at registration."""

    avatar: Optional[bytes] = None


class UserProfile(BaseModel):
    """Directory entry for a registered user."""

    uid: str
    email: str
    avatar_url: Optional[str] = None

    def to_fields(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "profileImageUrl": self.avatar_url or "",
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "UserProfile":
        return cls(
            uid=fields.get("uid", ""),
            email=fields.get("email", ""),
            avatar_url=fields.get("profileImageUrl") or None,
        )


class Message(BaseModel):
    """A direct message between two users. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    from_id: str
    to_id: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _distinct_participants(self) -> "Message":
        if self.from_id == self.to_id:
            raise ValueError("sender and recipient must differ")
        return self

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.timestamp, self.id)

    def to_fields(self) -> Dict[str, Any]:
        return {
            "fromId": self.from_id,
            "toId": self.to_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_fields(cls, doc_id: str, fields: Dict[str, Any]) -> "Message":
        return cls(
            id=doc_id,
            from_id=fields["fromId"],
            to_id=fields["toId"],
            text=fields.get("text", ""),
            timestamp=fields["timestamp"],
        )


class ConversationKey(BaseModel):
    """Unordered pair of participants.

    Messages are stored twice, once per ordered ``(owner, other)`` view.
    """

    model_config = ConfigDict(frozen=True)

    user_a: str
    user_b: str

    @classmethod
    def of(cls, first: str, second: str) -> "ConversationKey":
        low, high = sorted((first, second))
        return cls(user_a=low, user_b=high)

    def views(self) -> Iterator[Tuple[str, str]]:
        yield (self.user_a, self.user_b)
        yield (self.user_b, self.user_a)


class RecentConversationEntry(BaseModel):
    """Latest message exchanged between an owner and one peer."""

    owner_id: str
    peer_id: str
    message_id: str
    from_id: str
    to_id: str
    text: str
    timestamp: datetime
    peer_email: str = ""
    peer_avatar_url: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.timestamp, self.message_id)

    @classmethod
    def for_message(
        cls, owner_id: str, message: Message, peer: Optional[UserProfile] = None
    ) -> "RecentConversationEntry":
        peer_id = message.to_id if message.from_id == owner_id else message.from_id
        return cls(
            owner_id=owner_id,
            peer_id=peer_id,
            message_id=message.id,
            from_id=message.from_id,
            to_id=message.to_id,
            text=message.text,
            timestamp=message.timestamp,
            peer_email=peer.email if peer else "",
            peer_avatar_url=peer.avatar_url if peer else None,
        )

    def to_fields(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "peerId": self.peer_id,
            "messageId": self.message_id,
            "fromId": self.from_id,
            "toId": self.to_id,
            "text": self.text,
            "timestamp": self.timestamp,
            "email": self.peer_email,
            "profileImageUrl": self.peer_avatar_url or "",
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "RecentConversationEntry":
        return cls(
            owner_id=fields["ownerId"],
            peer_id=fields["peerId"],
            message_id=fields["messageId"],
            from_id=fields["fromId"],
            to_id=fields["toId"],
            text=fields.get("text", ""),
            timestamp=fields["timestamp"],
            peer_email=fields.get("email", ""),
            peer_avatar_url=fields.get("profileImageUrl") or None,
        )
