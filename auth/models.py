"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in chat/models.py -- dataclasses own domain shape; stores, the session
manager, and routes do the work.

Identity is whatever the user store hands out as a primary key. In this
service that is an int, but the session layer only ever carries it around
opaquely, so str is accepted too.

Layer rule: no imports from api/, chat/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

Identity = Union[int, str]


@dataclass
class User:
    """A registered account.

    email is unique and is the login name. hashed_password is a bcrypt hash;
    the plaintext is never stored.
    """

    email: str
    name: str
    hashed_password: str
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionRecord:
    """Server-side liveness marker for one login.

    session_id is 256 bits of randomness rendered URL-safe base64. The
    record lives in the session store under "session:<session_id>" for
    ttl_seconds and is the sole source of truth for whether tokens bound to
    it are still usable.
    """

    session_id: str
    identity: Identity
    created_at: str
    ttl_seconds: int


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh tokens minted together and bound to one session."""

    access_token: str
    refresh_token: str
    session: SessionRecord
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class AuthContext:
    """What the access guard attaches to a request after a successful check."""

    identity: Identity
    session_id: str
