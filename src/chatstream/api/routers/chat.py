from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import StreamingResponse

from ...domain.chat_models import (
    Conversation,
    ConversationCreate,
    ConversationWithMessages,
    Message,
    MessageCreate,
)
from ...domain.errors import ChatError, NotAuthenticated, NotFound, StoreError, TurnInProgress
from ...security.auth import User, get_current_user
from ...services.orchestrator import SessionState, get_orchestrator


router = APIRouter(prefix="/chat", tags=["chat"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _http_error(exc: ChatError) -> HTTPException:
    if isinstance(exc, NotAuthenticated):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TurnInProgress):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def _owned_conversation(conversation_id: str, user: User) -> Conversation:
    store = get_orchestrator().store
    try:
        conversation = await store.get_conversation(conversation_id)
    except ChatError as exc:
        raise _http_error(exc) from exc
    # Other users' conversations are indistinguishable from missing ones.
    if conversation is None or conversation.user_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation(req: ConversationCreate, user: User = Depends(get_current_user)) -> Conversation:
    try:
        return await get_orchestrator().create_conversation_if_absent(SessionState(), user.user_id, req.title)
    except ChatError as exc:
        raise _http_error(exc) from exc


@router.get("/conversations", response_model=List[Conversation])
async def list_conversations(user: User = Depends(get_current_user)) -> List[Conversation]:
    try:
        return await get_orchestrator().store.list_conversations(user.user_id)
    except ChatError as exc:
        raise _http_error(exc) from exc


@router.get("/conversations/{conversation_id}", response_model=ConversationWithMessages)
async def get_conversation(conversation_id: str, user: User = Depends(get_current_user)) -> ConversationWithMessages:
    conversation = await _owned_conversation(conversation_id, user)
    try:
        messages = await get_orchestrator().store.list_messages(conversation_id)
    except ChatError as exc:
        raise _http_error(exc) from exc
    return ConversationWithMessages(conversation=conversation, messages=messages)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(conversation_id: str, user: User = Depends(get_current_user)) -> Response:
    conversation = await _owned_conversation(conversation_id, user)
    try:
        await get_orchestrator().delete_conversation(SessionState(conversation=conversation), conversation_id)
    except ChatError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def list_messages(conversation_id: str, user: User = Depends(get_current_user)) -> List[Message]:
    await _owned_conversation(conversation_id, user)
    try:
        return await get_orchestrator().store.list_messages(conversation_id)
    except ChatError as exc:
        raise _http_error(exc) from exc


@router.get("/conversations/{conversation_id}/messages/stream", response_class=StreamingResponse)
async def stream_messages(conversation_id: str, user: User = Depends(get_current_user)) -> StreamingResponse:
    await _owned_conversation(conversation_id, user)
    feed = get_orchestrator().watch_messages(conversation_id)

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for snapshot in feed:
                yield _sse({"type": "snapshot", "messages": [m.model_dump(mode="json") for m in snapshot]})
        except ChatError as exc:
            yield _sse({"type": "error", "code": exc.code, "message": str(exc)})
        finally:
            await feed.aclose()  # type: ignore[attr-defined]

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.post("/conversations/{conversation_id}/messages", response_class=StreamingResponse)
async def post_message(
    conversation_id: str,
    msg: MessageCreate,
    user: User = Depends(get_current_user),
) -> StreamingResponse:
    conversation = await _owned_conversation(conversation_id, user)
    orchestrator = get_orchestrator()
    turn = orchestrator.send_message(
        SessionState(conversation=conversation),
        conversation_id,
        msg.content,
        msg.attachments,
    )
    # Prime the turn so a busy conversation is reported as 409 before streaming starts.
    try:
        first = await turn.__anext__()
    except ChatError as exc:
        raise _http_error(exc) from exc

    async def event_stream() -> AsyncIterator[str]:
        try:
            yield _sse({"type": "message", "message": first.model_dump(mode="json")})
            async for message in turn:
                yield _sse({"type": "message", "message": message.model_dump(mode="json")})
            yield _sse({"type": "done"})
        except ChatError as exc:
            yield _sse({"type": "error", "code": exc.code, "message": str(exc)})
        finally:
            await turn.aclose()  # type: ignore[attr-defined]

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)
