"""
API request and response models for RagChat REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
chat/models.py, which own the internal domain representation. Route handlers
map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chat.models import Conversation, Message, MessageRole

# Deliberately loose: one "@" with something on both sides and a dot in the
# domain. Deliverability is not the API's business.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt refuses input longer than 72 bytes, whatever the character count.
BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=72)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        if len(v.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
        return v


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    id: int


class TokenPairResponse(BaseModel):
    """Returned by login and refresh. expires_in is the access token lifetime in seconds."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    name: str


class StatusMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------


class ConversationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)


class ConversationUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)


class MessageCreate(BaseModel):
    """Request body for POST /api/v1/messages.

    role is the closed MessageRole enum -- unknown roles fail validation (422).
    """

    conversation_id: int = Field(gt=0)
    role: MessageRole
    content: str = Field(min_length=1, max_length=32_000)


class MessageUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=32_000)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    conversation_id: int
    role: MessageRole
    content: str
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class MessageCreateResponse(BaseModel):
    """assistant_message is present only when a chat-completion reply was produced."""

    model_config = ConfigDict(frozen=True)

    user_message: MessageResponse
    assistant_message: Optional[MessageResponse] = None


class ConversationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    created_at: str
    updated_at: str
    messages: Optional[list[MessageResponse]] = None

    @classmethod
    def from_domain(cls, conversation: Conversation, include_messages: bool = False) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            messages=[MessageResponse.from_domain(m) for m in conversation.messages] if include_messages else None,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
