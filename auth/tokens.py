"""
auth/tokens.py -- JWT codec and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry user_id, session_id, kind
       ("access" | "refresh"), iat and exp. TokenCodec is stateless apart from
       the signing secret it is constructed with; there is no module-level
       secret lookup.

       verify() checks, in this order:
         1. header alg is exactly HS256 -- anything else (including "none" or
            an asymmetric alg) is rejected before the MAC is computed, so a
            token cannot pick its own verification scheme.
         2. MAC over header + payload.
         3. payload is a JSON object and the claim set has the right shape,
            via the TokenClaims model. A missing or mistyped field rejects the
            token as MalformedClaimsError; nothing is defaulted.
         4. exp against the injected clock. jws.verify() checks only the MAC,
            so expiry is decided by the same clock that minted the token and
            is always reported as TokenExpiredError.

       Liveness is NOT decided here. A token that passes verify() is only
       usable if its session_id is still present in the session store.

  Lifetimes: 15 minutes (access) and 7 days (refresh). These are policy
       constants, not per-call or per-deployment knobs.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered [C1].

Layer rule: no imports from api/, chat/, or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

import bcrypt
from jose import JWTError, jws, jwt
from jose.exceptions import JWSError
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from auth.errors import InvalidSignatureError, MalformedClaimsError, TokenExpiredError, WrongTokenKindError
from auth.models import Identity

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("ragchat.auth")

_ALGORITHM = "HS256"

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


_TTL_BY_KIND: dict[TokenKind, timedelta] = {
    TokenKind.access: ACCESS_TOKEN_TTL,
    TokenKind.refresh: REFRESH_TOKEN_TTL,
}


class TokenClaims(BaseModel):
    """Typed claim set carried by every token.

    identity travels on the wire as "user_id". Strict types mean a user_id
    of true/1.5 or a numeric session_id is rejected instead of coerced.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    identity: Union[StrictInt, StrictStr] = Field(alias="user_id")
    session_id: StrictStr = Field(min_length=1)
    kind: TokenKind
    iat: StrictInt
    exp: StrictInt

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Mint and verify signed, time-limited session tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token = codec.mint(42, session_id, TokenKind.access)
        claims = codec.verify(token, expected_kind=TokenKind.access)
        claims.identity, claims.session_id   # -> 42, session_id

    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, secret_key: str, clock: Callable[[], datetime] = _utcnow) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a non-empty signing secret.")
        self._secret_key = secret_key
        self._clock = clock

    def mint(self, identity: Identity, session_id: str, kind: TokenKind) -> str:
        """Encode a signed token for (identity, session_id) with the policy lifetime for kind."""
        now = self._clock()
        claims = TokenClaims(
            identity=identity,
            session_id=session_id,
            kind=kind,
            iat=int(now.timestamp()),
            exp=int((now + _TTL_BY_KIND[kind]).timestamp()),
        )
        payload = claims.model_dump(mode="json", by_alias=True)
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str, expected_kind: Optional[TokenKind] = None) -> TokenClaims:
        """Decode and verify a token. Returns the typed claims.

        Raises:
            InvalidSignatureError: undecodable token, unexpected alg, or bad MAC.
            MalformedClaimsError:  valid MAC but claim set fails validation.
            TokenExpiredError:     exp has passed according to the codec clock.
            WrongTokenKindError:   expected_kind given and the token is the other kind.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidSignatureError("Token could not be decoded.") from exc

        # Algorithm-confusion guard: compare the header to the one scheme we sign with.
        if header.get("alg") != _ALGORITHM:
            raise InvalidSignatureError("Unexpected token signing algorithm.")

        try:
            raw_payload = jws.verify(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWSError as exc:
            raise InvalidSignatureError("Token signature verification failed.") from exc

        # From here on the MAC is good; anything wrong is the claim set.
        try:
            payload = json.loads(raw_payload)
        except ValueError as exc:
            raise MalformedClaimsError("Token payload is not JSON.") from exc
        if not isinstance(payload, dict):
            raise MalformedClaimsError("Token payload must be a JSON object.")

        try:
            claims = TokenClaims.model_validate(payload)
        except ValidationError as exc:
            raise MalformedClaimsError("Token claims are missing or invalid.") from exc

        if self._clock().timestamp() >= claims.exp:
            raise TokenExpiredError("Token has expired.")

        if expected_kind is not None and claims.kind != expected_kind:
            raise WrongTokenKindError(f"Expected a {expected_kind.value} token.")
        return claims


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt raises ValueError for input beyond 72 bytes. RegisterRequest
    rejects such passwords with a 422 before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Raised for a corrupt / non-bcrypt stored hash.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("ragchat_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the email is registered:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
