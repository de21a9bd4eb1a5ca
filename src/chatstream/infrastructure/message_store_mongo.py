from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar
import logging
import os

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from ..config import get_settings
from ..domain.chat_models import Conversation, Message, new_id, utc_now
from ..domain.errors import NotFound, StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_ID = {"_id": 0}


class MongoMessageStore:
    """MongoDB-backed store using motor.

    The live feeds poll the collections and yield whenever the ordered
    snapshot changes, so they work without a replica set. Cascade deletes
    run inside a multi-document transaction.
    """

    def __init__(
        self,
        client: Any = None,
        database: Optional[str] = None,
        poll_seconds: Optional[float] = None,
    ) -> None:
        if client is None:
            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=2000, tz_aware=True)
        self._client = client
        db = self._client[database or os.getenv("MONGO_DB", "chatstream")]
        self._conversations = db["conversations"]
        self._messages = db["messages"]
        self._poll_seconds = poll_seconds or get_settings().watch_poll_seconds
        self._indexes_ready = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        await self._conversations.create_index("conversationId", unique=True)
        await self._conversations.create_index([("userId", 1), ("updatedAt", -1)])
        await self._messages.create_index("messageId", unique=True)
        await self._messages.create_index([("conversationId", 1), ("createdAt", 1)])
        self._indexes_ready = True

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            await self._ensure_indexes()
            return await fn()
        except PyMongoError as exc:
            logger.warning("mongo_operation_failed", extra={"operation": operation, "err": str(exc)})
            raise StoreError(f"{operation} failed: {exc}") from exc

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
        await self._call("create_conversation", lambda: self._conversations.insert_one(conversation.to_document()))
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self._call(
            "get_conversation",
            lambda: self._conversations.find_one({"conversationId": conversation_id}, _NO_ID),
        )
        if not doc:
            return None
        return Conversation.from_document(doc)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        result = await self._call(
            "update_conversation",
            lambda: self._conversations.update_one(
                {"conversationId": conversation.conversation_id},
                {"$set": conversation.to_document()},
            ),
        )
        if not result.matched_count:
            raise NotFound()
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        async def _delete() -> int:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    await self._messages.delete_many({"conversationId": conversation_id}, session=session)
                    result = await self._conversations.delete_one(
                        {"conversationId": conversation_id},
                        session=session,
                    )
                    return result.deleted_count

        if await self.get_conversation(conversation_id) is None:
            raise NotFound()
        await self._call("delete_conversation", _delete)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        async def _list() -> List[Dict[str, Any]]:
            cursor = self._conversations.find({"userId": user_id}, _NO_ID).sort("updatedAt", -1)
            return await cursor.to_list(length=None)

        docs = await self._call("list_conversations", _list)
        return [Conversation.from_document(doc) for doc in docs]

    async def save_message(self, message: Message) -> Message:
        if await self.get_conversation(message.conversation_id) is None:
            raise NotFound()
        await self._call(
            "save_message",
            lambda: self._messages.update_one(
                {"messageId": message.message_id},
                {"$set": message.to_document()},
                upsert=True,
            ),
        )
        return message

    async def list_messages(self, conversation_id: str) -> List[Message]:
        async def _list() -> List[Dict[str, Any]]:
            cursor = self._messages.find({"conversationId": conversation_id}, _NO_ID).sort("createdAt", 1)
            return await cursor.to_list(length=None)

        docs = await self._call("list_messages", _list)
        return [Message.from_document(doc) for doc in docs]

    async def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []

        async def _list() -> List[Dict[str, Any]]:
            cursor = (
                self._messages.find({"conversationId": conversation_id}, _NO_ID)
                .sort("createdAt", -1)
                .limit(limit)
            )
            return await cursor.to_list(length=limit)

        docs = await self._call("list_recent_messages", _list)
        # Newest first from the query; callers expect chronological order.
        return [Message.from_document(doc) for doc in reversed(docs)]

    async def watch_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]:
        async for snapshot in self._poll(lambda: self.list_conversations(user_id)):
            yield snapshot

    async def watch_messages(self, conversation_id: str) -> AsyncIterator[List[Message]]:
        async for snapshot in self._poll(lambda: self.list_messages(conversation_id)):
            yield snapshot

    async def _poll(self, fetch: Callable[[], Awaitable[List[Any]]]) -> AsyncIterator[List[Any]]:
        last = await fetch()
        yield last
        while True:
            await asyncio.sleep(self._poll_seconds)
            current = await fetch()
            if current != last:
                last = current
                yield current
