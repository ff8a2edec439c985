"""Profile directory backed by the document and blob stores."""

from typing import List, Optional

import structlog

from ..backends.base import BlobStore, DocumentStore
from ..domain.errors import StoreError, StoreFailure
from ..domain.models import UserProfile

logger = structlog.get_logger()


class ProfileDirectory:
    """Maps user ids to profile attributes (email, avatar)."""

    def __init__(
        self, documents: DocumentStore, blobs: BlobStore, collection: str = "users"
    ) -> None:
        self._documents = documents
        self._blobs = blobs
        self._collection = collection

    def _path(self, uid: str) -> str:
        return f"{self._collection}/{uid}"

    async def create(self, uid: str, email: str) -> UserProfile:
        profile = UserProfile(uid=uid, email=email)
        await self._documents.set(self._path(uid), profile.to_fields())
        logger.info("profile_created", uid=uid)
        return profile

    async def get(self, uid: str) -> UserProfile:
        fields = await self._documents.get(self._path(uid))
        if fields is None:
            logger.warning("profile_not_found", uid=uid)
            raise StoreError(StoreFailure.NOT_FOUND, f"profile {uid}")
        return UserProfile.from_fields(fields)

    async def find(self, uid: str) -> Optional[UserProfile]:
        """Like ``get`` but returns None for unknown users."""
        try:
            return await self.get(uid)
        except StoreError as e:
            if e.reason is StoreFailure.NOT_FOUND:
                return None
            raise

    async def set_avatar(self, uid: str, url: str) -> UserProfile:
        """Record the avatar reference. It can only be set once."""
        profile = await self.get(uid)
        if profile.avatar_url:
            raise ValueError(f"Avatar already set for user {uid}")
        profile = profile.model_copy(update={"avatar_url": url})
        await self._documents.set(self._path(uid), profile.to_fields())
        logger.info("avatar_set", uid=uid)
        return profile

    async def upload_avatar(self, uid: str, data: bytes) -> UserProfile:
        """Upload avatar bytes, then store their download URL on the profile."""
        await self._blobs.put(uid, data)
        url = await self._blobs.download_url(uid)
        return await self.set_avatar(uid, url)

    async def list_profiles(self, exclude: Optional[str] = None) -> List[UserProfile]:
        events = await self._documents.list_collection(self._collection, order_by="email")
        return [
            UserProfile.from_fields(event.fields)
            for event in events
            if event.doc_id != exclude
        ]
