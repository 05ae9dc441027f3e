"""
chat/store.py -- SQLAlchemy-backed persistence for conversations and messages.

Uses SQLAlchemy Core (not ORM) so the dataclasses in chat/models.py remain
the authoritative domain representation. Swapping SQLite for MySQL or
PostgreSQL is a connection string change.

Pattern: Repository + Data Mapper. ChatStore is the repository; the _row_to_*
functions are the mappers. Route handlers never touch SQL directly.

Ownership: every read or write takes the caller's user_id and filters on it
-- directly for conversations, through a join on the parent conversation for
messages. A record owned by someone else is indistinguishable from a missing
one (None / False), so routes answer 404 in both cases and never leak that
the id exists.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ChatStore()
    conv = store.create_conversation(user_id=1, title="Trip planning")
    store.create_message(Message(conversation_id=conv.id, role=MessageRole.user, content="hi"))
    history = store.recent_messages(conv.id, limit=10)
    store.close()
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chat.models import Conversation, Message, MessageRole

_DEFAULT_DB_URL = "sqlite:///ragchat.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_conversations = Table(
    "conversations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_messages = Table(
    "messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("conversation_id", Integer, ForeignKey("conversations.id"), nullable=False, index=True),
    Column("role", String(50), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ChatStore:
    """Repository for Conversation and Message entities."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, user_id: int, title: str) -> Conversation:
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _conversations.insert().values(user_id=user_id, title=title, created_at=now, updated_at=now)
            )
            conn.commit()
            conv_id = result.inserted_primary_key[0]
        return Conversation(id=conv_id, user_id=user_id, title=title, created_at=now, updated_at=now)

    def list_conversations(self, user_id: int) -> list[Conversation]:
        """Return the user's conversations, most recently created first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _conversations.select()
                .where(_conversations.c.user_id == user_id)
                .order_by(_conversations.c.id.desc())
            ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def get_conversation(
        self, conv_id: int, user_id: int, include_messages: bool = False
    ) -> Optional[Conversation]:
        """Return the conversation if it exists AND belongs to user_id, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _conversations.select().where(
                    (_conversations.c.id == conv_id) & (_conversations.c.user_id == user_id)
                )
            ).fetchone()
            if row is None:
                return None
            conversation = _row_to_conversation(row)
            if include_messages:
                msg_rows = conn.execute(
                    _messages.select().where(_messages.c.conversation_id == conv_id).order_by(_messages.c.id)
                ).fetchall()
                conversation.messages = [_row_to_message(r) for r in msg_rows]
        return conversation

    def update_conversation_title(self, conv_id: int, user_id: int, title: str) -> Optional[Conversation]:
        """Rename a conversation. Returns the updated record, or None if not found / not owned."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _conversations.update()
                .where((_conversations.c.id == conv_id) & (_conversations.c.user_id == user_id))
                .values(title=title, updated_at=_now_iso())
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_conversation(conv_id, user_id)

    def delete_conversation(self, conv_id: int, user_id: int) -> bool:
        """Delete a conversation and all of its messages in one transaction.

        Returns False (and deletes nothing) if the conversation is missing or
        owned by someone else.
        """
        with self.engine.begin() as conn:
            owned = conn.execute(
                select(_conversations.c.id).where(
                    (_conversations.c.id == conv_id) & (_conversations.c.user_id == user_id)
                )
            ).fetchone()
            if owned is None:
                return False
            conn.execute(_messages.delete().where(_messages.c.conversation_id == conv_id))
            conn.execute(_conversations.delete().where(_conversations.c.id == conv_id))
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(self, message: Message) -> Message:
        """Insert a message. The caller must already have checked conversation ownership."""
        now = _now_iso()
        role = MessageRole(message.role)
        with self.engine.connect() as conn:
            result = conn.execute(
                _messages.insert().values(
                    conversation_id=message.conversation_id,
                    role=role.value,
                    content=message.content,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            msg_id = result.inserted_primary_key[0]
        return Message(
            id=msg_id,
            conversation_id=message.conversation_id,
            role=role,
            content=message.content,
            created_at=now,
            updated_at=now,
        )

    def list_messages(self, conv_id: int) -> list[Message]:
        """Return every message in a conversation, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _messages.select().where(_messages.c.conversation_id == conv_id).order_by(_messages.c.id)
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def recent_messages(self, conv_id: int, limit: int = 10) -> list[Message]:
        """Return the newest `limit` messages in chronological (oldest-first) order.

        This is the context window sent to the chat-completion endpoint.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _messages.select()
                .where(_messages.c.conversation_id == conv_id)
                .order_by(_messages.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_message(self, message_id: int, user_id: int) -> Optional[Message]:
        """Return the message if its parent conversation belongs to user_id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_messages)
                .join(_conversations, _messages.c.conversation_id == _conversations.c.id)
                .where((_messages.c.id == message_id) & (_conversations.c.user_id == user_id))
            ).fetchone()
        return _row_to_message(row) if row is not None else None

    def update_message_content(self, message_id: int, user_id: int, content: str) -> Optional[Message]:
        if self.get_message(message_id, user_id) is None:
            return None
        with self.engine.connect() as conn:
            conn.execute(
                _messages.update().where(_messages.c.id == message_id).values(content=content, updated_at=_now_iso())
            )
            conn.commit()
        return self.get_message(message_id, user_id)

    def delete_message(self, message_id: int, user_id: int) -> bool:
        if self.get_message(message_id, user_id) is None:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_messages.delete().where(_messages.c.id == message_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row.id,
        conversation_id=row.conversation_id,
        role=MessageRole(row.role),
        content=row.content,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
