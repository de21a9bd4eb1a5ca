from __future__ import annotations

"""Session orchestration: one "send -> stream reply -> persist" turn at a time.

The orchestrator never keeps per-screen state of its own; callers hand it a
:class:`SessionState` describing which conversation is active. The only
shared state is the set of conversations with a turn in flight.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set
import logging

from ..config import ChatSettings, get_settings
from ..domain.chat_models import Conversation, Message, utc_now
from ..domain.errors import GenerationError, NotAuthenticated, NotFound, ProviderError, StoreError, TurnInProgress
from ..infrastructure.events import publish_event
from ..infrastructure.message_store import MessageStore
from ..observability.metrics import record_delta, record_turn
from .generation import GenerationProvider


logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    """The conversation a chat screen is currently showing."""

    conversation: Optional[Conversation] = None

    @property
    def conversation_id(self) -> Optional[str]:
        return self.conversation.conversation_id if self.conversation else None


def derive_title(content: str, max_chars: int = 50) -> str:
    """Return the first non-empty line of ``content`` cut to ``max_chars``."""

    for line in (content or "").splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:max_chars]
    return ""


class SessionOrchestrator:
    def __init__(
        self,
        store: MessageStore,
        provider: GenerationProvider,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings or get_settings()
        self._active_turns: Set[str] = set()
        self._title_tasks: Set[asyncio.Task] = set()

    @property
    def store(self) -> MessageStore:
        return self._store

    def is_turn_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active_turns

    async def create_conversation_if_absent(
        self,
        state: SessionState,
        user_id: Optional[str],
        seed_title: Optional[str] = None,
    ) -> Conversation:
        if not user_id:
            raise NotAuthenticated()
        if state.conversation is not None:
            return state.conversation
        title = (seed_title or "").strip() or self._settings.placeholder_title
        conversation = await self._store.create_conversation(user_id, title)
        state.conversation = conversation
        logger.info("conversation_created", extra={"conversation_id": conversation.conversation_id})
        await publish_event(
            "conversation.created",
            {"conversation_id": conversation.conversation_id, "user_id": user_id},
        )
        return conversation

    async def load_conversation(self, state: SessionState, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound()
        state.conversation = conversation
        return conversation

    async def delete_conversation(self, state: SessionState, conversation_id: str) -> None:
        if self.is_turn_active(conversation_id):
            raise TurnInProgress(conversation_id)
        await self._store.delete_conversation(conversation_id)
        if state.conversation_id == conversation_id:
            state.conversation = None
        await publish_event("conversation.deleted", {"conversation_id": conversation_id})

    def watch_messages(self, conversation_id: str) -> AsyncIterator[List[Message]]:
        return self._store.watch_messages(conversation_id)

    def watch_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]:
        return self._store.watch_conversations(user_id)

    async def send_message(
        self,
        state: SessionState,
        conversation_id: str,
        content: str,
        attachments: Sequence[str] = (),
    ) -> AsyncIterator[Message]:
        """Run one turn, yielding every Message snapshot in emission order.

        Generation failures end the turn with an ``error`` assistant message
        instead of raising. Closing the iterator early releases the turn.
        """

        if conversation_id in self._active_turns:
            raise TurnInProgress(conversation_id)
        self._active_turns.add(conversation_id)
        title_task: Optional[asyncio.Task] = None
        try:
            conversation = await self._store.get_conversation(conversation_id)
            if conversation is None:
                raise NotFound()
            state.conversation = conversation
            history = await self._history(conversation_id)

            user_message = Message(
                conversation_id=conversation_id,
                role="user",
                content=content,
                attachments=tuple(attachments),
                status="sent",
            )
            await self._store.save_message(user_message)
            yield user_message

            if conversation.title == self._settings.placeholder_title:
                title = derive_title(content, self._settings.title_max_chars)
                if title:
                    title_task = asyncio.create_task(self._retitle(conversation_id, title))
                    self._title_tasks.add(title_task)
                    title_task.add_done_callback(self._title_tasks.discard)

            assistant = Message(
                conversation_id=conversation_id,
                role="assistant",
                content="",
                status="sending",
                is_streaming=True,
            )
            yield assistant

            logger.info("turn_started", extra={"conversation_id": conversation_id, "message_id": assistant.message_id})
            parts: List[str] = []
            failure: Optional[GenerationError] = None
            try:
                async with aclosing(self._provider.stream_response(content, history)) as deltas:
                    async for delta in deltas:
                        if not delta:
                            continue
                        parts.append(delta)
                        record_delta()
                        assistant = assistant.model_copy(update={"content": "".join(parts)})
                        yield assistant
            except GenerationError as exc:
                failure = exc
            except Exception as exc:
                logger.exception("Generation stream failed unexpectedly")
                failure = ProviderError(str(exc) or exc.__class__.__name__)

            if state.conversation_id != conversation_id:
                # The screen moved on; drop the reply instead of persisting it.
                logger.info("turn_discarded", extra={"conversation_id": conversation_id})
                record_turn("discarded")
                return

            if failure is not None:
                assistant = assistant.model_copy(
                    update={
                        "status": "error",
                        "is_streaming": False,
                        "content": assistant.content or failure.user_message,
                    }
                )
                try:
                    await self._store.save_message(assistant)
                except StoreError:
                    yield assistant
                    raise
                logger.warning(
                    "turn_failed",
                    extra={"conversation_id": conversation_id, "code": failure.code, "err": str(failure)},
                )
                record_turn(failure.code)
                await publish_event("turn.failed", {"conversation_id": conversation_id, "code": failure.code})
                yield assistant
                return

            assistant = assistant.model_copy(update={"status": "sent", "is_streaming": False})
            try:
                await self._store.save_message(assistant)
            except StoreError:
                # The reply never reached the store; end the bubble as failed.
                logger.warning("turn_persist_failed", extra={"conversation_id": conversation_id})
                record_turn(StoreError.code)
                yield assistant.model_copy(update={"status": "error"})
                raise
            yield assistant

            if title_task is not None:
                await title_task
            updated = await self._bump_conversation(conversation_id)
            if updated is not None and state.conversation_id == conversation_id:
                state.conversation = updated
            logger.info(
                "turn_completed",
                extra={"conversation_id": conversation_id, "deltas": len(parts), "chars": len(assistant.content)},
            )
            record_turn("completed")
            await publish_event("turn.completed", {"conversation_id": conversation_id, "message_id": assistant.message_id})
        finally:
            self._active_turns.discard(conversation_id)

    async def _history(self, conversation_id: str) -> List[Dict[str, str]]:
        window = self._settings.history_window
        recent = await self._store.list_recent_messages(conversation_id, window) if window else []
        return [{"role": m.role, "content": m.content} for m in recent if m.status == "sent"]

    async def _retitle(self, conversation_id: str, title: str) -> None:
        try:
            current = await self._store.get_conversation(conversation_id)
            if current is None or current.title != self._settings.placeholder_title:
                return
            await self._store.update_conversation(current.model_copy(update={"title": title}))
        except Exception:
            logger.exception("Failed to update title for conversation %s", conversation_id)

    async def _bump_conversation(self, conversation_id: str) -> Optional[Conversation]:
        current = await self._store.get_conversation(conversation_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={"updated_at": utc_now(), "message_count": current.message_count + 2}
        )
        return await self._store.update_conversation(updated)


_orchestrator: SessionOrchestrator | None = None


def get_orchestrator() -> SessionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from ..infrastructure.message_store import get_message_store
        from .generation import get_generation_provider

        _orchestrator = SessionOrchestrator(get_message_store(), get_generation_provider())
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
