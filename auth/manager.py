"""
auth/manager.py -- Session lifecycle: login, refresh rotation, logout.

Session state machine:

    absent --login--> live
    live --logout | refresh | TTL expiry--> absent

There is no live -> live transition. refresh() always removes the old
session and creates a brand-new session id; the existing record is never
extended in place.

Refresh is single-use rotation. The old session is claimed with an atomic
pop() before the new pair is minted, so two concurrent refreshes with the
same token cannot both succeed, and a stolen refresh token stops working the
moment either party uses it.

Failure mode: if the pop succeeds but writing the new session then fails
(store outage mid-rotation, request cancelled), the caller holds no live
session and must log in again. That is the accepted fail-closed outcome;
nothing is compensated or retried here.

The manager holds no mutable state of its own. All cross-request
coordination goes through the session store.

Layer rule: no imports from api/, chat/, or core/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from auth.errors import SessionExpiredError
from auth.models import Identity, SessionRecord, TokenPair
from auth.sessions import SessionStore
from auth.tokens import ACCESS_TOKEN_TTL, REFRESH_TOKEN_TTL, TokenCodec, TokenKind

logger = logging.getLogger("ragchat.auth")

# A session lives exactly as long as the refresh token that can rotate it.
SESSION_TTL = REFRESH_TOKEN_TTL


def _new_session_id() -> str:
    # 256 bits from os.urandom, URL-safe so it can sit in a Redis key unescaped.
    return secrets.token_urlsafe(32)


def _short(session_id: str) -> str:
    return session_id[:8]


class SessionManager:
    """Issue, rotate and revoke sessions.

    Usage:
        manager = SessionManager(codec, store)
        pair = manager.login(user.id)
        pair = manager.refresh(pair.refresh_token)
        manager.logout(pair.access_token)
    """

    def __init__(self, codec: TokenCodec, store: SessionStore) -> None:
        self._codec = codec
        self._store = store

    def login(self, identity: Identity) -> TokenPair:
        """Create a new session for identity and mint a token pair bound to it.

        Existing sessions for the same identity are left alone -- several
        concurrent logins (devices, tabs) are allowed.

        Raises StoreUnavailableError if the session cannot be written; no
        tokens are returned in that case.
        """
        record = SessionRecord(
            session_id=_new_session_id(),
            identity=identity,
            created_at=datetime.now(timezone.utc).isoformat(),
            ttl_seconds=int(SESSION_TTL.total_seconds()),
        )
        self._store.set(record.session_id, identity, SESSION_TTL)
        pair = TokenPair(
            access_token=self._codec.mint(identity, record.session_id, TokenKind.access),
            refresh_token=self._codec.mint(identity, record.session_id, TokenKind.refresh),
            session=record,
            expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
        )
        logger.info("Session %s opened for identity %s", _short(record.session_id), identity)
        return pair

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair on a new session.

        Raises:
            InvalidTokenError / TokenExpiredError: the token itself is unusable
                (including an access token offered here).
            SessionExpiredError: the backing session was already logged out,
                rotated, or expired.
            StoreUnavailableError: the store could not be reached.
        """
        claims = self._codec.verify(refresh_token, expected_kind=TokenKind.refresh)

        live_identity = self._store.pop(claims.session_id)
        if live_identity is None:
            logger.info("Refresh rejected: session %s is not live", _short(claims.session_id))
            raise SessionExpiredError("Session expired, please log in again.")
        if live_identity != claims.identity:
            # The session was consumed above either way, so the token is dead too.
            logger.warning("Refresh rejected: session %s identity mismatch", _short(claims.session_id))
            raise SessionExpiredError("Session expired, please log in again.")

        try:
            pair = self.login(claims.identity)
        except Exception:
            logger.warning(
                "Session %s was rotated out but no replacement could be issued; client must log in again",
                _short(claims.session_id),
            )
            raise
        logger.info("Session %s rotated to %s", _short(claims.session_id), _short(pair.session.session_id))
        return pair

    def logout(self, token: str) -> None:
        """Delete the session referenced by token. Either token kind is accepted.

        The token must still verify (signature, claims, expiry) so an attacker
        cannot end someone else's session with a forged session id. Deleting
        an already-absent session is not an error.
        """
        claims = self._codec.verify(token)
        self._store.delete(claims.session_id)
        logger.info("Session %s closed for identity %s", _short(claims.session_id), claims.identity)
