from __future__ import annotations

import asyncio

import pytest

from chatstream.config import ChatSettings
from chatstream.domain.chat_models import Message
from chatstream.domain.errors import QuotaExceeded, StoreError
from chatstream.security.auth import User
from chatstream.security.identity import InMemoryIdentityProvider
from chatstream.services.chat_session import ChatSession
from chatstream.services.orchestrator import SessionOrchestrator

from .utils import RecordingStore, ScriptedProvider


def _session(provider, user=User(user_id="user-1"), store=None):
    orchestrator = SessionOrchestrator(store or RecordingStore(), provider, ChatSettings())
    return ChatSession(orchestrator, InMemoryIdentityProvider(user)), orchestrator


async def _settle():
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_send_creates_conversation_and_projects_reply():
    chat, orchestrator = _session(ScriptedProvider(["Hi ", "there"]))

    state = await chat.send("Hello?")
    await _settle()

    assert state.error is None
    assert state.is_streaming is False
    assert [(m.role, m.content, m.status) for m in chat.state.messages] == [
        ("user", "Hello?", "sent"),
        ("assistant", "Hi there", "sent"),
    ]
    assert chat.state.conversation.title == "Hello?"
    assert chat.state.conversation.message_count == 2
    await chat.close()


@pytest.mark.asyncio
async def test_send_without_user_sets_not_authenticated():
    store = RecordingStore()
    chat, _ = _session(ScriptedProvider(["x"]), user=None, store=store)

    state = await chat.send("hello")

    assert state.error.code == "not_authenticated"
    assert await store.list_conversations("user-1") == []


@pytest.mark.asyncio
async def test_second_send_while_streaming_sets_error_and_keeps_turn():
    gate = asyncio.Event()
    chat, orchestrator = _session(ScriptedProvider(["done"], gate=gate))

    first = asyncio.create_task(chat.send("first"))
    await _settle()
    assert chat.state.is_streaming

    state = await chat.send("second")
    assert state.error.code == "turn_in_progress"
    assert chat.state.is_streaming

    gate.set()
    await first
    await _settle()
    user_messages = [m.content for m in chat.state.messages if m.role == "user"]
    assert user_messages == ["first"]
    assert chat.state.messages[-1].content == "done"
    await chat.close()


@pytest.mark.asyncio
async def test_open_other_conversation_drops_in_flight_reply():
    gate = asyncio.Event()
    store = RecordingStore()
    chat, orchestrator = _session(ScriptedProvider(["late"], gate=gate), store=store)
    other = await store.create_conversation("user-1", "Other")

    turn = asyncio.create_task(chat.send("question"))
    await _settle()
    first_id = chat.session.conversation_id

    state = await chat.open(other.conversation_id)
    await _settle()
    assert state.conversation.conversation_id == other.conversation_id
    gate.set()
    await turn
    await _settle()

    assert chat.state.conversation.conversation_id == other.conversation_id
    assert chat.state.messages == ()
    assert [m.role for m in await store.list_messages(first_id)] == ["user"]
    await chat.close()


@pytest.mark.asyncio
async def test_open_missing_conversation_sets_not_found():
    chat, _ = _session(ScriptedProvider())

    state = await chat.open("missing")

    assert state.error.code == "not_found"
    assert state.conversation is None


@pytest.mark.asyncio
async def test_live_feed_shows_messages_written_elsewhere():
    store = RecordingStore()
    chat, orchestrator = _session(ScriptedProvider(["ok"]), store=store)
    await chat.send("hello")
    cid = chat.session.conversation_id

    await store.save_message(Message(conversation_id=cid, role="user", content="from another device"))
    await _settle()

    assert chat.state.messages[-1].content == "from another device"
    await chat.close()


@pytest.mark.asyncio
async def test_delete_clears_view_and_closes_feed():
    store = RecordingStore()
    chat, _ = _session(ScriptedProvider(["ok"]), store=store)
    await chat.send("hello")
    cid = chat.session.conversation_id

    state = await chat.delete()

    assert state.conversation is None
    assert state.messages == ()
    assert await store.get_conversation(cid) is None
    assert store.watcher_count(cid) == 0


@pytest.mark.asyncio
async def test_failed_turn_keeps_error_message_in_view():
    chat, _ = _session(ScriptedProvider(error=QuotaExceeded()))

    state = await chat.send("hi")

    assert state.messages[-1].status == "error"
    assert state.messages[-1].content == QuotaExceeded.user_message
    assert state.error is None
    await chat.close()


class _RejectingReplyStore(RecordingStore):
    async def save_message(self, message):
        if message.role == "assistant":
            raise StoreError("write rejected")
        return await super().save_message(message)


@pytest.mark.asyncio
async def test_reply_write_failure_leaves_no_streaming_bubble():
    chat, orchestrator = _session(ScriptedProvider(["a", "b"]), store=_RejectingReplyStore())

    state = await chat.send("hi")
    await _settle()

    assert state.error.code == "store_error"
    assert not chat.state.is_streaming
    assert not any(m.is_streaming for m in chat.state.messages)
    reply = chat.state.messages[-1]
    assert (reply.role, reply.status, reply.content) == ("assistant", "error", "ab")
    assert not orchestrator.is_turn_active(chat.session.conversation_id)
    await chat.close()
