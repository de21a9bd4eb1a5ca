from __future__ import annotations

"""Error taxonomy shared by the store, provider and orchestrator layers."""

from typing import Optional


class ChatError(Exception):
    code = "chat_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def __str__(self) -> str:
        return self.message


class NotAuthenticated(ChatError):
    code = "not_authenticated"

    def __init__(self, message: str = "No signed-in user") -> None:
        super().__init__(message)


class TurnInProgress(ChatError):
    code = "turn_in_progress"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"A reply is still streaming for conversation {conversation_id}")
        self.conversation_id = conversation_id


class NotFound(ChatError, KeyError):
    code = "not_found"

    def __init__(self, message: str = "Conversation not found") -> None:
        super().__init__(message)


class StoreError(ChatError):
    code = "store_error"


class GenerationError(ChatError):
    """Base for failures raised by a generation provider."""

    code = "generation_error"
    user_message = "The assistant could not generate a reply. Please try again."


class QuotaExceeded(GenerationError):
    code = "quota_exceeded"
    user_message = "The assistant is over its usage quota right now. Please try again later."


class SafetyBlocked(GenerationError):
    code = "safety_blocked"
    user_message = "The reply was blocked by the provider's safety filters."


class ProviderError(GenerationError):
    code = "provider_error"

    def __init__(self, detail: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(detail or "Generation provider failed")
        self.detail = detail
        self.status_code = status_code

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.detail:
            return f"I'm having trouble generating a response: {self.detail}. Please try again."
        return GenerationError.user_message
