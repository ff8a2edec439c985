"""Test suite for chat sessions, including the end-to-end scenarios."""

import asyncio

import pytest

from direct_chat.backends.memory import InMemoryDocumentStore
from direct_chat.container import build_services
from direct_chat.domain.errors import SessionError, SessionFailure, StoreError, StoreFailure
from direct_chat.services.chat import ChatSession, ChatState


def new_chat(services, send_timeout: float = 5.0) -> ChatSession:
    return ChatSession(services.sessions, services.messages, send_timeout=send_timeout)


@pytest.mark.asyncio
async def test_send_reaches_peer_and_updates_index(services, device, register):
    """a@x.com sends "hello" to b@x.com on another device."""
    phone_b = device()
    b = await register(phone_b, "b@x.com")
    a = await register(services, "a@x.com")

    chat_b = await new_chat(phone_b).open(b, a)
    chat_a = await new_chat(services).open(a, b)
    sent = await chat_a.send("hello")

    received = await chat_b.receive(timeout=1)
    assert (received.id, received.text, received.from_id) == (sent.id, "hello", a)
    assert [m.text for m in chat_b.messages] == ["hello"]

    [entry] = await services.index.recent(a)
    assert (entry.peer_id, entry.text, entry.peer_email) == (b, "hello", "b@x.com")


@pytest.mark.asyncio
async def test_repeated_text_keeps_single_recent_entry(services, register):
    """Sending "hi" twice leaves one entry holding the later message."""
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services).open(a, b)

    first = await chat.send("hi")
    second = await chat.send("hi")

    entries = await services.index.recent(a)
    assert len(entries) == 1
    assert entries[0].text == "hi"
    assert entries[0].message_id == second.id
    assert entries[0].timestamp >= first.timestamp
    assert [m.id for m in chat.messages] == [first.id, second.id]


@pytest.mark.asyncio
async def test_no_callback_after_close(services, device, register, documents):
    """A notification arriving after close() is not delivered."""
    phone_b = device()
    b = await register(phone_b, "b@x.com")
    a = await register(services, "a@x.com")
    documents.deferred = True

    chat_b = await new_chat(phone_b).open(b, a)
    chat_a = await new_chat(services).open(a, b)
    await chat_a.send("are you there?")
    chat_b.close()
    await documents.flush()

    assert chat_b.state is ChatState.CLOSED
    assert chat_b.messages == []
    with pytest.raises(asyncio.TimeoutError):
        await chat_b.receive(timeout=0.05)


@pytest.mark.asyncio
async def test_send_without_login_writes_nothing(services, documents):
    chat = new_chat(services)
    writes = documents.write_count

    with pytest.raises(SessionError) as excinfo:
        await chat.send("hello")

    assert excinfo.value.reason is SessionFailure.NO_ACTIVE_LOGIN
    assert documents.write_count == writes


@pytest.mark.asyncio
async def test_open_requires_matching_login(services, register):
    a = await register(services, "a@x.com")
    await services.sessions.logout()

    with pytest.raises(SessionError) as excinfo:
        await new_chat(services).open(a, "b")
    assert excinfo.value.reason is SessionFailure.NO_ACTIVE_LOGIN


@pytest.mark.asyncio
async def test_send_on_closed_chat(services, register):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = new_chat(services)

    with pytest.raises(SessionError) as excinfo:
        await chat.send("hello")
    assert excinfo.value.reason is SessionFailure.NOT_OPEN

    await chat.open(a, b)
    chat.close()
    chat.close()
    with pytest.raises(SessionError):
        await chat.send("hello")


@pytest.mark.asyncio
async def test_concurrent_send_is_rejected(services, register, documents):
    """A second send while one is in flight fails instead of duplicating."""
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services).open(a, b)
    documents.latency = 0.01

    results = await asyncio.gather(chat.send("tap"), chat.send("tap"), return_exceptions=True)

    assert results[0].text == "tap"
    assert isinstance(results[1], SessionError)
    assert results[1].reason is SessionFailure.NOT_OPEN
    assert chat.state is ChatState.OPEN
    assert len(await services.messages.history(a, b)) == 1


@pytest.mark.asyncio
async def test_draft_cleared_only_after_success(services, register, documents):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services).open(a, b)
    chat.draft = "hello"

    documents.available = False
    with pytest.raises(StoreError):
        await chat.send()
    assert chat.draft == "hello"
    assert chat.state is ChatState.OPEN

    documents.heal()
    message = await chat.send()
    assert message.text == "hello"
    assert chat.draft == ""


@pytest.mark.asyncio
async def test_send_timeout_surfaces_unreachable(services, register, documents):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services, send_timeout=0.01).open(a, b)
    documents.latency = 0.5

    with pytest.raises(StoreError) as excinfo:
        await chat.send("slow")
    assert excinfo.value.reason is StoreFailure.UNREACHABLE
    assert chat.state is ChatState.OPEN


@pytest.mark.asyncio
async def test_duplicate_deliveries_are_collapsed(services, register, documents):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services).open(a, b)
    await chat.send("once")

    documents.redeliver(f"messages/{a}/{b}", "timestamp")

    assert [m.text for m in chat.messages] == ["once"]
    assert (await chat.receive(timeout=1)).text == "once"
    with pytest.raises(asyncio.TimeoutError):
        await chat.receive(timeout=0.05)


@pytest.mark.asyncio
async def test_open_loads_history(services, register):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    await services.messages.append(b, a, "earlier")
    await services.messages.append(a, b, "later")

    chat = await new_chat(services).open(a, b)

    assert [m.text for m in chat.messages] == ["earlier", "later"]


@pytest.mark.asyncio
async def test_logout_closes_open_chats(services, register):
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    async with await new_chat(services).open(a, b) as chat:
        assert chat.is_open
        await services.sessions.logout()
        assert chat.state is ChatState.CLOSED


@pytest.mark.asyncio
async def test_chats_with_different_peers_are_independent(services, register):
    b = await register(services, "b@x.com")
    c = await register(services, "c@x.com")
    a = await register(services, "a@x.com")
    with_b = await new_chat(services).open(a, b)
    with_c = await new_chat(services).open(a, c)

    await asyncio.gather(with_b.send("to b"), with_c.send("to c"))

    assert [m.text for m in with_b.messages] == ["to b"]
    assert [m.text for m in with_c.messages] == ["to c"]
    assert {e.peer_id for e in await services.index.recent(a)} == {b, c}


class SlowIndexDocumentStore(InMemoryDocumentStore):
    """Document store whose recency-index writes are slow."""

    async def set(self, path, fields):
        if path.startswith("recent_messages/"):
            await asyncio.sleep(0.2)
        await super().set(path, fields)


@pytest.mark.asyncio
async def test_slow_index_update_does_not_fail_send(settings, auth, blobs, clock, register):
    """The send timeout covers the message writes only."""
    documents = SlowIndexDocumentStore()
    services = build_services(settings, auth=auth, documents=documents, blobs=blobs, clock=clock)
    b = await register(services, "b@x.com")
    a = await register(services, "a@x.com")
    chat = await new_chat(services, send_timeout=0.1).open(a, b)

    message = await chat.send("hello")

    assert message.text == "hello"
    assert chat.state is ChatState.OPEN
    assert [m.id for m in await services.messages.history(b, a)] == [message.id]
    [entry] = await services.index.recent(a)
    assert entry.message_id == message.id
