"""
api/routes/v1/messages.py -- Message CRUD plus the assistant reply.

Routes:
  POST   /messages                       -- add a message; user messages get an assistant reply
  GET    /messages?conversation_id={id}  -- all messages in one conversation
  GET    /messages/{id}                  -- one message
  PUT    /messages/{id}                  -- edit content
  DELETE /messages/{id}                  -- delete

Ownership is checked through the parent conversation. A message in someone
else's conversation answers 404.

Assistant replies: when the new message has role "user" and a chat-completion
client is configured (OPENAI_API_KEY set), the newest llm_history_limit
messages of the conversation -- including the one just stored -- are sent to
the model and the reply is stored with role "assistant". A failed completion
is logged and the response simply omits assistant_message.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import MessageCreate, MessageCreateResponse, MessageResponse, MessageUpdate, StatusMessage
from auth.dependencies import get_current_identity
from auth.models import AuthContext
from chat.llm import ChatCompletionClient, ChatCompletionError
from chat.models import Message, MessageRole
from chat.store import ChatStore

logger = logging.getLogger("ragchat.chat")

router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": f"{what} not found."},
    )


@limiter.limit("30/minute")
@router.post("/messages", response_model=MessageCreateResponse, status_code=201)
def create_message(
    request: Request,
    body: MessageCreate,
    auth: AuthContext = Depends(get_current_identity),
) -> MessageCreateResponse:
    store: ChatStore = request.app.state.chat_store
    if store.get_conversation(body.conversation_id, auth.identity) is None:
        raise _not_found("Conversation")

    stored = store.create_message(Message(conversation_id=body.conversation_id, role=body.role, content=body.content))
    response = MessageCreateResponse(user_message=MessageResponse.from_domain(stored))

    llm: Optional[ChatCompletionClient] = request.app.state.llm
    if body.role is not MessageRole.user or llm is None:
        return response

    history = store.recent_messages(body.conversation_id, limit=request.app.state.settings.llm_history_limit)
    try:
        reply = llm.complete(history)
    except ChatCompletionError as exc:
        logger.warning("No assistant reply for conversation %s: %s", body.conversation_id, exc)
        return response

    assistant = store.create_message(
        Message(conversation_id=body.conversation_id, role=MessageRole.assistant, content=reply)
    )
    return MessageCreateResponse(
        user_message=response.user_message,
        assistant_message=MessageResponse.from_domain(assistant),
    )


@router.get("/messages", response_model=list[MessageResponse])
def list_messages(
    request: Request,
    conversation_id: Optional[int] = None,
    auth: AuthContext = Depends(get_current_identity),
) -> list[MessageResponse]:
    if conversation_id is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_request", "message": "conversation_id is required."},
        )
    store: ChatStore = request.app.state.chat_store
    if store.get_conversation(conversation_id, auth.identity) is None:
        raise _not_found("Conversation")
    return [MessageResponse.from_domain(m) for m in store.list_messages(conversation_id)]


@router.get("/messages/{message_id}", response_model=MessageResponse)
def get_message(
    request: Request,
    message_id: int,
    auth: AuthContext = Depends(get_current_identity),
) -> MessageResponse:
    store: ChatStore = request.app.state.chat_store
    message = store.get_message(message_id, auth.identity)
    if message is None:
        raise _not_found("Message")
    return MessageResponse.from_domain(message)


@router.put("/messages/{message_id}", response_model=MessageResponse)
def update_message(
    request: Request,
    message_id: int,
    body: MessageUpdate,
    auth: AuthContext = Depends(get_current_identity),
) -> MessageResponse:
    store: ChatStore = request.app.state.chat_store
    message = store.update_message_content(message_id, auth.identity, body.content)
    if message is None:
        raise _not_found("Message")
    return MessageResponse.from_domain(message)


@router.delete("/messages/{message_id}", response_model=StatusMessage)
def delete_message(
    request: Request,
    message_id: int,
    auth: AuthContext = Depends(get_current_identity),
) -> StatusMessage:
    store: ChatStore = request.app.state.chat_store
    if not store.delete_message(message_id, auth.identity):
        raise _not_found("Message")
    return StatusMessage(message="Message deleted")
