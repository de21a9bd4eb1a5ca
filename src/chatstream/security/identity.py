from __future__ import annotations

"""In-process identity provider with an auth-state change stream."""

import asyncio
from typing import AsyncIterator, List, Optional, Protocol
import logging

from .auth import User


logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    @property
    def current_user(self) -> Optional[User]: ...

    def auth_state_changes(self) -> AsyncIterator[Optional[User]]: ...


class InMemoryIdentityProvider:
    """Holds the signed-in user; subscribers see the current user first."""

    def __init__(self, user: Optional[User] = None) -> None:
        self._user = user
        self._subscribers: List[asyncio.Queue] = []

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    def sign_in(self, user: User) -> None:
        self._user = user
        logger.info("auth_state_changed", extra={"user_id": user.user_id})
        self._broadcast()

    def sign_out(self) -> None:
        self._user = None
        logger.info("auth_state_changed", extra={"user_id": None})
        self._broadcast()

    def _broadcast(self) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(self._user)

    async def auth_state_changes(self) -> AsyncIterator[Optional[User]]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self._user
            while True:
                yield await queue.get()
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)
