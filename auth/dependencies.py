"""
auth/dependencies.py -- Access guard and FastAPI Depends() helpers.

Every protected route passes through AccessGuard.check() before its handler
runs:

  1. Authorization header must be exactly "Bearer <token>".
  2. The token must verify as an ACCESS token (signature, claims, expiry).
  3. The session it names must still be in the session store, bound to the
     same identity.

Step 3 is what makes logout and refresh rotation take effect immediately: a
token whose own 15-minute window is still open is refused once its session
is gone.

Failures raise UnauthorizedError subclasses (rendered 401 by api/main.py).
A session store outage raises StoreUnavailableError (rendered 503) and is
never folded into "unauthorized".

get_current_identity() is the FastAPI dependency; it binds the resolved
AuthContext to request.state so downstream code (ownership filters in
chat/store.py queries) can read it.

Layer rule: no imports from chat/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from auth.errors import MissingCredentialError, SessionExpiredError
from auth.models import AuthContext
from auth.sessions import SessionStore
from auth.tokens import TokenCodec, TokenKind

logger = logging.getLogger("ragchat.auth")


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an 'Authorization: Bearer <token>' header value.

    The scheme is case-sensitive and must be followed by exactly one space
    and a non-empty token with no further spaces.
    """
    if not header:
        raise MissingCredentialError("Authorization header is required.")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise MissingCredentialError("Authorization header must be a Bearer token.")
    return parts[1]


class AccessGuard:
    """Per-request gate for protected operations.

    Usage:
        guard = AccessGuard(codec, session_store)
        ctx = guard.check(request.headers.get("Authorization"))
        ctx.identity   # -> 42
    """

    def __init__(self, codec: TokenCodec, store: SessionStore) -> None:
        self._codec = codec
        self._store = store

    def check(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        claims = self._codec.verify(token, expected_kind=TokenKind.access)

        live_identity = self._store.get(claims.session_id)
        if live_identity is None or live_identity != claims.identity:
            raise SessionExpiredError("Session expired or invalid.")
        return AuthContext(identity=claims.identity, session_id=claims.session_id)


def get_current_identity(request: Request) -> AuthContext:
    """Require a valid access token bound to a live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(auth: AuthContext = Depends(get_current_identity)): ...

    Raises UnauthorizedError (401) or StoreUnavailableError (503); the app's
    exception handlers turn those into the standard error envelope.
    """
    guard: AccessGuard = request.app.state.access_guard
    auth = guard.check(request.headers.get("Authorization"))
    request.state.auth = auth
    request.state.identity = auth.identity
    return auth
