"""Shared fixtures: in-memory backends and service graphs."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from direct_chat.backends.memory import (
    InMemoryAuthProvider,
    InMemoryBlobStore,
    InMemoryDocumentStore,
)
from direct_chat.config import ChatSettings
from direct_chat.container import ChatServices, build_services
from direct_chat.domain.models import Credentials, ProfileDraft

EPOCH = datetime(2024, 2, 19, 12, 0, tzinfo=timezone.utc)


class StepClock:
    """Clock advancing one second per call unless told otherwise."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(send_timeout=5.0)


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def auth() -> InMemoryAuthProvider:
    return InMemoryAuthProvider()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def services(settings, auth, documents, blobs, clock) -> ChatServices:
    return build_services(settings, auth=auth, documents=documents, blobs=blobs, clock=clock)


@pytest.fixture
def device(settings, auth, documents, blobs, clock):
    """Factory for further devices sharing the same backend project."""

    def _device() -> ChatServices:
        return build_services(
            settings, auth=auth.fork(), documents=documents, blobs=blobs, clock=clock
        )

    return _device


@pytest.fixture
def register():
    async def _register(
        services: ChatServices,
        email: str,
        password: str = "secret123",
        avatar: Optional[bytes] = None,
    ) -> str:
        return await services.sessions.register(
            Credentials(email=email, password=password), ProfileDraft(avatar=avatar)
        )

    return _register
