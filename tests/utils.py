from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from chatstream.domain.chat_models import Conversation
from chatstream.infrastructure.message_store import InMemoryMessageStore
from chatstream.security.auth import User, create_access_token


class ScriptedProvider:
    """Generation provider that replays fixed deltas, optionally failing at the end."""

    def __init__(
        self,
        deltas: Sequence[str] = (),
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        delays: Optional[Sequence[float]] = None,
    ) -> None:
        self.deltas = list(deltas)
        self.error = error
        self.gate = gate
        self.delays = list(delays or [])
        self.calls: List[Tuple[str, List[Dict[str, str]]]] = []
        self.started = False
        self.closed = False

    def stream_response(self, prompt: str, history=None) -> AsyncIterator[str]:
        self.calls.append((prompt, list(history or [])))
        return self._stream()

    async def _stream(self) -> AsyncIterator[str]:
        self.started = True
        try:
            if self.gate is not None:
                await self.gate.wait()
            for index, delta in enumerate(self.deltas):
                delay = self.delays[index] if index < len(self.delays) else 0
                await asyncio.sleep(delay)
                yield delta
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class RecordingStore(InMemoryMessageStore):
    """In-memory store that remembers every conversation update it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.conversation_updates: List[Conversation] = []
        self.title_changes: List[str] = []

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        current = await self.get_conversation(conversation.conversation_id)
        if current is not None and current.title != conversation.title:
            self.title_changes.append(conversation.title)
        self.conversation_updates.append(conversation)
        return await super().update_conversation(conversation)


async def drain(stream: AsyncIterator[Any]) -> List[Any]:
    return [item async for item in stream]


def auth_headers(user_id: str = "user-1", email: str = "user1@example.com") -> Dict[str, str]:
    token = create_access_token(User(user_id=user_id, email=email, display_name="User One"))
    return {"Authorization": f"Bearer {token}"}
