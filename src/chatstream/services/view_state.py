from __future__ import annotations

"""Projection of orchestrator and live-feed events into renderable state.

Two sources feed the projector: Message snapshots from a local turn and
full message lists from the store's live feed. Both go through the same
patch rule. Feed snapshots that arrive while a local turn is streaming are
held back and applied once the turn ends, so a half-streamed reply is never
reverted to its last persisted form.
"""

from contextlib import aclosing
from typing import AsyncIterator, Callable, Iterable, List, Optional, Tuple
import logging

from ..domain.chat_models import Conversation, Message, SessionViewState, ViewError
from ..domain.errors import ChatError


logger = logging.getLogger(__name__)

Listener = Callable[[SessionViewState], None]


def patch_messages(messages: Tuple[Message, ...], message: Message) -> Tuple[Message, ...]:
    """Replace the entry with the same id in place, or append it."""

    for index, existing in enumerate(messages):
        if existing.message_id == message.message_id:
            if existing == message:
                return messages
            return messages[:index] + (message,) + messages[index + 1 :]
    return messages + (message,)


class ViewStateProjector:
    def __init__(self, conversation: Optional[Conversation] = None) -> None:
        self._state = SessionViewState(conversation=conversation)
        self._held_feed: Optional[List[Message]] = None
        self._listeners: List[Listener] = []
        self._epoch = 0

    @property
    def state(self) -> SessionViewState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes) -> SessionViewState:
        updated = self._state.model_copy(update=changes)
        if updated != self._state:
            self._state = updated
            for listener in list(self._listeners):
                listener(updated)
        return self._state

    def reset(self, conversation: Optional[Conversation] = None) -> SessionViewState:
        self._held_feed = None
        self._epoch += 1
        return self._set(conversation=conversation, messages=(), is_streaming=False, error=None)

    def set_conversation(self, conversation: Optional[Conversation]) -> SessionViewState:
        return self._set(conversation=conversation)

    def apply_message(self, message: Message) -> SessionViewState:
        return self._set(messages=patch_messages(self._state.messages, message))

    def apply_messages(self, messages: Iterable[Message]) -> SessionViewState:
        current = self._state.messages
        for message in messages:
            current = patch_messages(current, message)
        return self._set(messages=current)

    def apply_feed(self, messages: List[Message]) -> SessionViewState:
        if self._state.is_streaming:
            self._held_feed = list(messages)
            return self._state
        return self.apply_messages(messages)

    def begin_turn(self) -> SessionViewState:
        return self._set(is_streaming=True)

    def end_turn(self) -> SessionViewState:
        self._set(is_streaming=False)
        held, self._held_feed = self._held_feed, None
        if held is not None:
            self.apply_messages(held)
        return self._state

    def set_error(self, error: BaseException | ViewError) -> SessionViewState:
        if not isinstance(error, ViewError):
            error = ViewError(code=getattr(error, "code", "error"), message=str(error))
        return self._set(error=error)

    def fail_streaming(self) -> SessionViewState:
        """Mark every reply still flagged as streaming as failed."""

        stuck = [
            m.model_copy(update={"status": "error", "is_streaming": False}) for m in self._state.messages if m.is_streaming
        ]
        return self.apply_messages(stuck)

    def dismiss_error(self) -> SessionViewState:
        return self._set(error=None)

    async def consume_turn(self, stream: AsyncIterator[Message]) -> SessionViewState:
        """Drain one send stream into the state; chat errors land in ``error``."""

        epoch = self._epoch
        self.begin_turn()
        first = True
        try:
            async with aclosing(stream):
                async for message in stream:
                    if self._epoch != epoch:
                        # Reset mid-turn: keep draining so the turn can finish, show nothing.
                        continue
                    if first:
                        self.dismiss_error()
                        first = False
                    self.apply_message(message)
        except ChatError as exc:
            logger.info("turn_error_projected", extra={"code": exc.code})
            if self._epoch == epoch:
                self.fail_streaming()
                self.set_error(exc)
        finally:
            if self._epoch == epoch:
                self.end_turn()
        return self._state

    async def follow_feed(self, feed: AsyncIterator[List[Message]]) -> None:
        try:
            async with aclosing(feed):
                async for snapshot in feed:
                    self.apply_feed(snapshot)
        except ChatError as exc:
            logger.warning("live_feed_failed", extra={"code": exc.code, "err": str(exc)})
            self.set_error(exc)
