from __future__ import annotations

import asyncio
from dataclasses import dataclass
from threading import RLock
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
import logging
import os

from ..domain.chat_models import Conversation, Message, new_id, utc_now
from ..domain.errors import NotFound, StoreError


logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    async def create_conversation(self, user_id: str, title: str) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def update_conversation(self, conversation: Conversation) -> Conversation: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def list_conversations(self, user_id: str) -> List[Conversation]: ...

    def watch_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]: ...

    async def save_message(self, message: Message) -> Message: ...

    async def list_messages(self, conversation_id: str) -> List[Message]: ...

    async def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]: ...

    def watch_messages(self, conversation_id: str) -> AsyncIterator[List[Message]]: ...


@dataclass(eq=False)
class _Watcher:
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue

    def push(self, snapshot: List[Any]) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self.queue.put_nowait(snapshot)
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.queue.put_nowait, snapshot)


class InMemoryMessageStore:
    """Document-store stand-in keeping conversations and messages in dicts.

    Watchers receive a full ordered snapshot on subscribe and after every
    change that touches their key.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Dict[str, Message]] = {}
        self._conversation_watchers: Dict[str, List[_Watcher]] = {}
        self._message_watchers: Dict[str, List[_Watcher]] = {}
        self._lock = RLock()

    def _sorted_conversations(self, user_id: str) -> List[Conversation]:
        owned = [c for c in self._conversations.values() if c.user_id == user_id]
        # Newest first
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    def _sorted_messages(self, conversation_id: str) -> List[Message]:
        return sorted(self._messages.get(conversation_id, {}).values(), key=lambda m: m.created_at)

    def _notify_conversations(self, user_id: str) -> None:
        watchers = list(self._conversation_watchers.get(user_id, []))
        if not watchers:
            return
        snapshot = self._sorted_conversations(user_id)
        for watcher in watchers:
            watcher.push(list(snapshot))

    def _notify_messages(self, conversation_id: str) -> None:
        watchers = list(self._message_watchers.get(conversation_id, []))
        if not watchers:
            return
        snapshot = self._sorted_messages(conversation_id)
        for watcher in watchers:
            watcher.push(list(snapshot))

    def _apply_delete(self, table: Dict[str, Any], key: str) -> None:
        del table[key]

    async def create_conversation(self, user_id: str, title: str) -> Conversation:
        now = utc_now()
        conversation = Conversation(
            conversation_id=new_id(),
            user_id=user_id,
            title=title,
            created_at=now,
            updated_at=now,
            message_count=0,
        )
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation
            self._messages[conversation.conversation_id] = {}
            self._notify_conversations(user_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.conversation_id not in self._conversations:
                raise NotFound()
            self._conversations[conversation.conversation_id] = conversation
            self._notify_conversations(conversation.user_id)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is None:
                raise NotFound()
            # Stage the cascade on copies; swap only once every step succeeded.
            conversations = dict(self._conversations)
            messages = {cid: dict(msgs) for cid, msgs in self._messages.items()}
            try:
                children = messages.get(conversation_id, {})
                for message_id in list(children):
                    self._apply_delete(children, message_id)
                messages.pop(conversation_id, None)
                self._apply_delete(conversations, conversation_id)
            except Exception as exc:
                logger.warning(
                    "conversation_delete_rolled_back",
                    extra={"conversation_id": conversation_id, "err": str(exc)},
                )
                raise StoreError(f"Failed to delete conversation {conversation_id}") from exc
            self._conversations = conversations
            self._messages = messages
            self._notify_messages(conversation_id)
            self._notify_conversations(existing.user_id)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            return self._sorted_conversations(user_id)

    async def watch_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]:
        watcher = _Watcher(asyncio.get_running_loop(), asyncio.Queue())
        with self._lock:
            self._conversation_watchers.setdefault(user_id, []).append(watcher)
            initial = self._sorted_conversations(user_id)
        try:
            yield initial
            while True:
                yield await watcher.queue.get()
        finally:
            with self._lock:
                watchers = self._conversation_watchers.get(user_id, [])
                if watcher in watchers:
                    watchers.remove(watcher)

    async def save_message(self, message: Message) -> Message:
        with self._lock:
            if message.conversation_id not in self._conversations:
                raise NotFound()
            self._messages.setdefault(message.conversation_id, {})[message.message_id] = message
            self._notify_messages(message.conversation_id)
        return message

    async def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return self._sorted_messages(conversation_id)

    async def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock:
            return self._sorted_messages(conversation_id)[-limit:]

    async def watch_messages(self, conversation_id: str) -> AsyncIterator[List[Message]]:
        watcher = _Watcher(asyncio.get_running_loop(), asyncio.Queue())
        with self._lock:
            self._message_watchers.setdefault(conversation_id, []).append(watcher)
            initial = self._sorted_messages(conversation_id)
        try:
            yield initial
            while True:
                yield await watcher.queue.get()
        finally:
            with self._lock:
                watchers = self._message_watchers.get(conversation_id, [])
                if watcher in watchers:
                    watchers.remove(watcher)

    def watcher_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._message_watchers.get(conversation_id, []))


_store: MessageStore | None = None

_db_mode = os.getenv("DB_MODE", "").lower()
_mongo_store_cls = None
if _db_mode == "mongo":
    try:
        from .message_store_mongo import MongoMessageStore as _MongoMessageStore  # type: ignore

        _mongo_store_cls = _MongoMessageStore
    except Exception:
        _mongo_store_cls = None
_db_mode_mongo_enabled = _db_mode == "mongo" and _mongo_store_cls is not None


def get_message_store() -> MessageStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("CHAT_STORE_IMPL", "memory").lower()
    if _db_mode_mongo_enabled:
        _store = _mongo_store_cls()  # type: ignore[operator]
        return _store
    if impl == "mongo":
        try:
            from .message_store_mongo import MongoMessageStore  # type: ignore

            _store = MongoMessageStore()
            return _store
        except Exception:
            logger.exception("Mongo message store unavailable; using in-memory store")
            _store = None
    if _store is None:
        _store = InMemoryMessageStore()
    return _store


def reset_message_store() -> None:
    """Drop the cached store (useful for tests)."""

    global _store
    _store = None
