"""Test suite for the recency index."""

from datetime import timedelta

import pytest

from direct_chat.domain.errors import StoreError, StoreFailure
from direct_chat.domain.models import Message
from direct_chat.services.conversations import ConversationIndex
from direct_chat.services.profiles import ProfileDirectory


@pytest.fixture
def profiles(documents, blobs) -> ProfileDirectory:
    return ProfileDirectory(documents, blobs)


@pytest.fixture
def index(documents, profiles) -> ConversationIndex:
    return ConversationIndex(documents, profiles)


def message(clock, from_id: str, to_id: str, text: str) -> Message:
    return Message(from_id=from_id, to_id=to_id, text=text, timestamp=clock())


@pytest.mark.asyncio
async def test_upsert_twice_keeps_one_entry(index, clock):
    """Upserting the same pair replaces the entry."""
    await index.upsert("a", "b", message(clock, "a", "b", "first"))
    latest = message(clock, "b", "a", "second")
    entries = await index.upsert("a", "b", latest)

    assert len(entries) == 1
    assert entries[0].text == "second"
    assert entries[0].message_id == latest.id
    assert entries[0].timestamp == latest.timestamp


@pytest.mark.asyncio
async def test_entries_sorted_most_recent_first(index, clock):
    peers = ["p1", "p2", "p3", "p4"]
    for peer in peers:
        await index.upsert("a", peer, message(clock, "a", peer, f"to {peer}"))

    snapshots = []
    await index.subscribe("a", snapshots.append)

    entries = snapshots[-1]
    assert [e.peer_id for e in entries] == list(reversed(peers))
    timestamps = [e.timestamp for e in entries]
    assert all(newer > older for newer, older in zip(timestamps, timestamps[1:]))


@pytest.mark.asyncio
async def test_older_update_does_not_overwrite_newer(index, clock):
    """Last writer wins by message timestamp."""
    older = message(clock, "b", "a", "older")
    newer = message(clock, "a", "b", "newer")

    await index.upsert("a", "b", newer)
    entries = await index.upsert("a", "b", older)

    assert [e.text for e in entries] == ["newer"]


@pytest.mark.asyncio
async def test_subscription_reorders_without_dropping_entries(index, clock):
    """An updated peer moves to the front; every snapshot keeps all peers."""
    await index.upsert("a", "b", message(clock, "a", "b", "to b"))
    await index.upsert("a", "c", message(clock, "a", "c", "to c"))

    snapshots = []
    handle = await index.subscribe("a", snapshots.append)
    await index.upsert("a", "b", message(clock, "b", "a", "from b"))

    assert [[e.peer_id for e in s] for s in snapshots] == [["c", "b"], ["b", "c"]]
    assert snapshots[-1][0].text == "from b"

    handle.unsubscribe()
    await index.upsert("a", "c", message(clock, "a", "c", "again"))
    assert len(snapshots) == 2


@pytest.mark.asyncio
async def test_record_exchange_snapshots_peer_profiles(index, profiles, clock):
    await profiles.create("a", "a@x.com")
    await profiles.create("b", "b@x.com")
    await profiles.set_avatar("b", "memory://blobs/b")

    await index.record_exchange(message(clock, "a", "b", "hello"))

    [for_a] = await index.recent("a")
    [for_b] = await index.recent("b")
    assert (for_a.peer_id, for_a.peer_email, for_a.peer_avatar_url) == ("b", "b@x.com", "memory://blobs/b")
    assert (for_b.peer_id, for_b.peer_email, for_b.peer_avatar_url) == ("a", "a@x.com", None)


@pytest.mark.asyncio
async def test_upsert_rejects_unrelated_message(index, clock):
    with pytest.raises(ValueError):
        await index.upsert("a", "c", message(clock, "a", "b", "hello"))


@pytest.mark.asyncio
async def test_unreachable_backend(index, documents, clock):
    documents.available = False
    with pytest.raises(StoreError) as excinfo:
        await index.upsert("a", "b", message(clock, "a", "b", "hello"))
    assert excinfo.value.reason is StoreFailure.UNREACHABLE


@pytest.mark.asyncio
async def test_entries_with_equal_timestamps_are_stable(index, clock):
    clock.step = timedelta(0)
    for peer in ("x", "y", "z"):
        await index.upsert("a", peer, message(clock, "a", peer, "same time"))

    entries = await index.recent("a")
    assert len(entries) == 3
    assert [e.message_id for e in entries] == sorted((e.message_id for e in entries), reverse=True)


@pytest.mark.asyncio
async def test_one_failed_entry_does_not_block_the_other(index, documents, clock):
    """The recipient's entry is written even when the sender's fails."""
    documents.fail_writes("recent_messages/a")

    with pytest.raises(StoreError):
        await index.record_exchange(message(clock, "a", "b", "hello"))

    assert await index.recent("a") == []
    [for_b] = await index.recent("b")
    assert (for_b.peer_id, for_b.text) == ("a", "hello")
