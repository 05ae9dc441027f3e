"""
api/routes/v1/auth.py -- Registration and session lifecycle endpoints.

Routes:
  POST /api/v1/auth/register  -- create an account
  POST /api/v1/auth/login     -- email/password -> access + refresh token pair
  POST /api/v1/auth/refresh   -- refresh token -> new pair on a new session
  POST /api/v1/auth/logout    -- end the session named by the Bearer token
  GET  /api/v1/auth/me        -- current user info (requires auth)

Security:
  [H2] POST /login is rate-limited to 10 requests/minute per IP.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.

Token and session failures are raised as auth.errors exceptions and rendered
by the handlers in api/main.py (401 with a specific code, or 503 when the
session store is down).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    StatusMessage,
    TokenPairResponse,
)
from auth.dependencies import extract_bearer, get_current_identity
from auth.manager import SessionManager
from auth.models import AuthContext, TokenPair, User
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password

logger = logging.getLogger("ragchat.api")

# Auth policy:
# - POST /api/v1/auth/register: public
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh token in the body is the credential
# - POST /api/v1/auth/logout:   Bearer token of either kind; session liveness not required
# - GET  /api/v1/auth/me:       requires auth (get_current_identity)
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a local account. Duplicate emails answer 409."""
    user_store: UserStore = request.app.state.user_store
    user = User(email=body.email, name=body.name, hashed_password=hash_password(body.password))
    try:
        user_id = user_store.create_user(user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Email already exists."},
        ) from exc
    logger.info("Registered user %s", user_id)
    return RegisterResponse(message="User registered successfully", id=user_id)


@limiter.limit("10/minute")  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; open a session and return its token pair.

    Uses authenticate_user() which includes timing equalization [C1].

    Returns the same generic error for unknown email and wrong password
    ("bad_credentials") to avoid leaking which emails are registered.
    """
    user_store: UserStore = request.app.state.user_store
    manager: SessionManager = request.app.state.session_manager

    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        resp.headers["WWW-Authenticate"] = "Bearer"
        return resp

    return _token_response(manager.login(user.id))


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate: the presented refresh token's session is consumed and a new one issued.

    A refresh token works once. Presenting it again answers 401
    session_expired, as does presenting it after logout.
    """
    manager: SessionManager = request.app.state.session_manager
    return _token_response(manager.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=StatusMessage)
def logout(request: Request) -> StatusMessage:
    """Delete the session named by the Bearer token. Idempotent.

    Either token kind is accepted, so a client whose access token has already
    expired can still log out with its refresh token.
    """
    manager: SessionManager = request.app.state.session_manager
    token = extract_bearer(request.headers.get("Authorization"))
    manager.logout(token)
    return StatusMessage(message="Logged out successfully")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, auth: AuthContext = Depends(get_current_identity)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(auth.identity)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return MeResponse(user_id=user.id, email=user.email, name=user.name)
