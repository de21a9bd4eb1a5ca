from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Literal, Tuple
import uuid

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]
MessageStatus = Literal["sending", "sent", "error"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return utc_now()


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    def to_document(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "userId": self.user_id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        data = dict(doc)
        return cls(
            conversation_id=str(data.get("conversationId") or data.get("_id")),
            user_id=str(data.get("userId", "")),
            title=str(data.get("title", "")),
            created_at=_as_datetime(data.get("createdAt")),
            updated_at=_as_datetime(data.get("updatedAt")),
            message_count=int(data.get("messageCount") or 0),
        )


class Message(BaseModel):
    """One immutable snapshot of a chat message.

    Only ``content``, ``status`` and ``is_streaming`` change between
    snapshots of the same ``message_id``.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str = ""
    attachments: Tuple[str, ...] = ()
    status: MessageStatus = "sent"
    created_at: datetime = Field(default_factory=utc_now)
    is_streaming: bool = False

    def to_document(self) -> Dict[str, Any]:
        # The streaming flag is in-memory only.
        return {
            "messageId": self.message_id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "attachments": list(self.attachments),
            "status": self.status,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        data = dict(doc)
        return cls(
            message_id=str(data.get("messageId") or data.get("_id")),
            conversation_id=str(data.get("conversationId", "")),
            role=data.get("role") if data.get("role") in ("user", "assistant") else "assistant",
            content=str(data.get("content") or ""),
            attachments=tuple(str(a) for a in (data.get("attachments") or [])),
            status=data.get("status") if data.get("status") in ("sending", "sent", "error") else "sent",
            created_at=_as_datetime(data.get("createdAt")),
        )


class ViewError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class SessionViewState(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation: Optional[Conversation] = None
    messages: Tuple[Message, ...] = ()
    is_streaming: bool = False
    error: Optional[ViewError] = None


# HTTP request/response models


class ConversationCreate(BaseModel):
    title: Optional[str] = None


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    attachments: List[str] = []


class ConversationWithMessages(BaseModel):
    conversation: Conversation
    messages: List[Message]
