"""
auth/errors.py -- Error taxonomy for token and session failures.

Every class below except StoreUnavailableError is an UnauthorizedError and
renders as HTTP 401. The subclass and its `code` tell the client what to do
next:

  token_expired        -- retryable: present the refresh token
  session_expired      -- not retryable: log in again
  missing_credential,
  invalid_signature,
  malformed_claims,
  invalid_token_kind   -- not retryable: the credential is unusable

StoreUnavailableError is an infrastructure fault (HTTP 503). It deliberately
does NOT inherit from UnauthorizedError: an unreachable session store must
never be reported to a client as "not logged in".

Layer rule: no imports from api/, chat/, or core/.
"""

from __future__ import annotations


class UnauthorizedError(Exception):
    """Base class for every authentication failure scoped to one request."""

    status_code: int = 401
    code: str = "unauthorized"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)
        self.message = message


class MissingCredentialError(UnauthorizedError):
    """Authorization header absent or not exactly 'Bearer <token>'."""

    code = "missing_credential"


class InvalidTokenError(UnauthorizedError):
    code = "invalid_token"


class InvalidSignatureError(InvalidTokenError):
    """Token could not be decoded, or its MAC/algorithm did not check out."""

    code = "invalid_signature"


class MalformedClaimsError(InvalidTokenError):
    """Signature is valid but the claim set is missing or mistyped fields."""

    code = "malformed_claims"


class WrongTokenKindError(InvalidTokenError):
    """A refresh token was offered where an access token is required, or vice versa."""

    code = "invalid_token_kind"


class TokenExpiredError(UnauthorizedError):
    code = "token_expired"


class SessionExpiredError(UnauthorizedError):
    """The session the token points at is no longer in the session store."""

    code = "session_expired"


class StoreUnavailableError(Exception):
    """The session store could not be reached or returned a transport error (503)."""

    status_code: int = 503
    code: str = "store_unavailable"

    def __init__(self, message: str = "Session store unavailable.") -> None:
        super().__init__(message)
        self.message = message


__all__ = [
    "UnauthorizedError",
    "MissingCredentialError",
    "InvalidTokenError",
    "InvalidSignatureError",
    "MalformedClaimsError",
    "WrongTokenKindError",
    "TokenExpiredError",
    "SessionExpiredError",
    "StoreUnavailableError",
]
