from __future__ import annotations

import asyncio
from typing import Optional, Sequence
import logging

from ..domain.chat_models import SessionViewState
from ..domain.errors import ChatError, NotAuthenticated, TurnInProgress
from ..security.identity import IdentityProvider
from .orchestrator import SessionOrchestrator, SessionState
from .view_state import ViewStateProjector


logger = logging.getLogger(__name__)


class ChatSession:
    """One chat screen: the active conversation, its projection and live feed.

    Opening another conversation or closing the session cancels the live
    feed; a reply still streaming for the previous conversation is dropped.
    """

    def __init__(self, orchestrator: SessionOrchestrator, identity: IdentityProvider) -> None:
        self._orchestrator = orchestrator
        self._identity = identity
        self.session = SessionState()
        self.projector = ViewStateProjector()
        self._feed_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionViewState:
        return self.projector.state

    async def open(self, conversation_id: Optional[str] = None) -> SessionViewState:
        await self._cancel_feed()
        if conversation_id is None:
            self.session.conversation = None
            return self.projector.reset()
        try:
            conversation = await self._orchestrator.load_conversation(self.session, conversation_id)
        except ChatError as exc:
            self.session.conversation = None
            self.projector.reset()
            return self.projector.set_error(exc)
        self.projector.reset(conversation)
        self._start_feed(conversation.conversation_id)
        return self.projector.state

    async def send(self, content: str, attachments: Sequence[str] = ()) -> SessionViewState:
        try:
            user = self._identity.current_user
            if user is None:
                raise NotAuthenticated()
            if self.session.conversation is None:
                conversation = await self._orchestrator.create_conversation_if_absent(self.session, user.user_id)
                self.projector.set_conversation(conversation)
                self._start_feed(conversation.conversation_id)
            conversation_id = self.session.conversation_id
            if self._orchestrator.is_turn_active(conversation_id):
                raise TurnInProgress(conversation_id)
        except ChatError as exc:
            return self.projector.set_error(exc)

        stream = self._orchestrator.send_message(self.session, conversation_id, content, attachments)
        await self.projector.consume_turn(stream)
        if self.session.conversation_id == conversation_id:
            self.projector.set_conversation(self.session.conversation)
        return self.projector.state

    async def delete(self) -> SessionViewState:
        conversation_id = self.session.conversation_id
        if conversation_id is None:
            return self.projector.state
        try:
            await self._orchestrator.delete_conversation(self.session, conversation_id)
        except ChatError as exc:
            return self.projector.set_error(exc)
        return await self.open(None)

    def dismiss_error(self) -> SessionViewState:
        return self.projector.dismiss_error()

    async def close(self) -> None:
        await self._cancel_feed()

    def _start_feed(self, conversation_id: str) -> None:
        feed = self._orchestrator.watch_messages(conversation_id)
        self._feed_task = asyncio.create_task(self.projector.follow_feed(feed))

    async def _cancel_feed(self) -> None:
        task, self._feed_task = self._feed_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
