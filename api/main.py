"""
api/main.py -- FastAPI application entry point for RagChat.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every long-lived component from one Settings object and
stores it on app.state:

  app.state.settings         -- core.config.Settings
  app.state.user_store       -- auth.store.UserStore
  app.state.chat_store       -- chat.store.ChatStore
  app.state.session_store    -- Redis (or in-process) session store
  app.state.codec            -- auth.tokens.TokenCodec
  app.state.session_manager  -- auth.manager.SessionManager
  app.state.access_guard     -- auth.dependencies.AccessGuard
  app.state.llm              -- chat.llm.ChatCompletionClient, or None when
                                OPENAI_API_KEY is unset

Shutdown closes them in reverse order.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.conversations import router as conversations_router
from api.routes.v1.messages import router as messages_router
from auth.dependencies import AccessGuard
from auth.errors import StoreUnavailableError, UnauthorizedError
from auth.manager import SessionManager
from auth.sessions import build_session_store
from auth.store import UserStore
from auth.tokens import TokenCodec
from chat.llm import ChatCompletionClient
from chat.store import ChatStore
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ragchat.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the stores, the token codec and the session components.

    Startup order matters:
      1. Databases first -- cheap, local, and needed by every route.
      2. Session store second -- a Redis backend that does not answer PING
         aborts startup with StoreUnavailableError.
      3. Codec, manager and guard last -- they only wire the pieces above.
    """
    settings = get_settings()
    logger.info("RagChat API starting up")
    app.state.settings = settings

    # Everything with a close(), in creation order. Closed in reverse on
    # shutdown, and also when startup fails partway through.
    opened: list = []
    try:
        app.state.user_store = UserStore(db_url=settings.database_url)
        opened.append(app.state.user_store)
        app.state.chat_store = ChatStore(db_url=settings.database_url)
        opened.append(app.state.chat_store)
        logger.info("Database initialized")

        app.state.session_store = build_session_store(settings)
        opened.append(app.state.session_store)
        logger.info("Session store initialized (backend=%s)", settings.session_backend)

        app.state.codec = TokenCodec(settings.secret_key)
        app.state.session_manager = SessionManager(app.state.codec, app.state.session_store)
        app.state.access_guard = AccessGuard(app.state.codec, app.state.session_store)

        if settings.openai_api_key:
            app.state.llm = ChatCompletionClient(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                model=settings.openai_model,
                timeout=settings.llm_timeout_seconds,
            )
            opened.append(app.state.llm)
            logger.info("Chat completion enabled (model=%s)", settings.openai_model)
        else:
            app.state.llm = None
            logger.warning("OPENAI_API_KEY not set -- assistant replies are disabled")
    except Exception:
        logger.error("Startup failed; closing %d component(s) already opened", len(opened))
        _close_all(opened)
        raise

    yield

    # Shutdown
    _close_all(opened)
    logger.info("RagChat API shutdown complete")


def _close_all(components: list) -> None:
    for component in reversed(components):
        component.close()


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="RagChat API",
    description="Chat conversations with an LLM assistant, behind revocable token sessions.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(conversations_router, prefix="/api/v1", tags=["Conversations"])
app.include_router(messages_router, prefix="/api/v1", tags=["Messages"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
    """Return 401 with the failure-specific code.

    The code lets a client decide between refreshing (token_expired) and
    logging in again (session_expired, invalid_token, ...).
    """
    logger.info("Unauthorized %s %s: %s", request.method, request.url.path, exc.code)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Return 503 when the session store cannot be reached.

    Never reported as 401: the client's credentials may be perfectly valid.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a dict, use it directly as the error field rather
    than stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit and no auth --
# load balancers must be able to poll it freely.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a per-component status.

    status is "degraded" when the database or the session store does not
    answer. The endpoint itself still returns 200 so the payload is readable.
    """
    state = request.app.state
    database_ok = state.user_store.ping() and state.chat_store.ping()
    session_store_ok = state.session_store.ping()
    components = {
        "app": "ok",
        "database": "ok" if database_ok else "error",
        "session_store": "ok" if session_store_ok else "error",
    }
    status = "healthy" if database_ok and session_store_ok else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
