"""
chat/models.py -- Domain dataclasses for conversations and messages.

These are pure data containers with zero logic. Persistence and ownership
rules live in chat/store.py; the wire mapping for roles lives in chat/llm.py.

id is None before the record is written to the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class MessageRole(str, Enum):
    """Closed set of message authors. Anything else is rejected at the API edge."""

    user = "user"
    assistant = "assistant"
    system = "system"


@dataclass
class Message:
    conversation_id: int
    role: MessageRole
    content: str
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class Conversation:
    """A titled thread of messages owned by exactly one user.

    messages is only populated when the store is asked for them
    (ChatStore.get_conversation(..., include_messages=True)).
    """

    user_id: int
    title: str
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    messages: list[Message] = field(default_factory=list)
