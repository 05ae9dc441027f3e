"""
api/routes/v1/conversations.py -- Conversation CRUD for the authenticated user.

Routes:
  POST   /conversations        -- create
  GET    /conversations        -- list the caller's conversations
  GET    /conversations/{id}   -- one conversation with its messages
  PUT    /conversations/{id}   -- rename
  DELETE /conversations/{id}   -- delete, together with its messages

Every handler scopes its query by the identity the access guard resolved.
Another user's conversation answers 404, exactly like a missing one.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import ConversationCreate, ConversationResponse, ConversationUpdate, StatusMessage
from auth.dependencies import get_current_identity
from auth.models import AuthContext
from chat.store import ChatStore

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "Conversation not found."},
    )


@limiter.limit("30/minute")
@router.post("/conversations", response_model=ConversationResponse, status_code=201)
def create_conversation(
    request: Request,
    body: ConversationCreate,
    auth: AuthContext = Depends(get_current_identity),
) -> ConversationResponse:
    store: ChatStore = request.app.state.chat_store
    conversation = store.create_conversation(auth.identity, body.title)
    return ConversationResponse.from_domain(conversation)


@router.get("/conversations", response_model=list[ConversationResponse])
def list_conversations(
    request: Request,
    auth: AuthContext = Depends(get_current_identity),
) -> list[ConversationResponse]:
    store: ChatStore = request.app.state.chat_store
    return [ConversationResponse.from_domain(c) for c in store.list_conversations(auth.identity)]


@router.get("/conversations/{conv_id}", response_model=ConversationResponse)
def get_conversation(
    request: Request,
    conv_id: int,
    auth: AuthContext = Depends(get_current_identity),
) -> ConversationResponse:
    store: ChatStore = request.app.state.chat_store
    conversation = store.get_conversation(conv_id, auth.identity, include_messages=True)
    if conversation is None:
        raise _not_found()
    return ConversationResponse.from_domain(conversation, include_messages=True)


@router.put("/conversations/{conv_id}", response_model=ConversationResponse)
def update_conversation(
    request: Request,
    conv_id: int,
    body: ConversationUpdate,
    auth: AuthContext = Depends(get_current_identity),
) -> ConversationResponse:
    store: ChatStore = request.app.state.chat_store
    conversation = store.update_conversation_title(conv_id, auth.identity, body.title)
    if conversation is None:
        raise _not_found()
    return ConversationResponse.from_domain(conversation)


@router.delete("/conversations/{conv_id}", response_model=StatusMessage)
def delete_conversation(
    request: Request,
    conv_id: int,
    auth: AuthContext = Depends(get_current_identity),
) -> StatusMessage:
    store: ChatStore = request.app.state.chat_store
    if not store.delete_conversation(conv_id, auth.identity):
        raise _not_found()
    return StatusMessage(message="Conversation deleted")
