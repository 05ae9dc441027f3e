"""
auth/sessions.py -- Session store adapters.

A session store is a key-value map "session:<session_id>" -> identity with a
time-to-live the store enforces on its own. Sessions are only ever written
whole and deleted whole, so per-key atomicity of the backing store is all the
coordination the session manager needs -- no locks are taken on the client
side.

Two implementations share the SessionStore protocol:

  RedisSessionStore  -- production backend. Every redis-py error is re-raised
                        as StoreUnavailableError so callers can tell "store
                        down" (503) from "session gone" (401).
  MemorySessionStore -- single-process backend for local development and
                        tests. Expiry is passive: an entry past its deadline
                        is treated as absent and dropped on access.

Identity values are JSON-serialized so an int identity round-trips as an int
("42") and a str identity as a str ("\\"abc\\"").

Layer rule: no imports from api/ or chat/. core/ is imported only for the
Settings type used by build_session_store().
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from auth.errors import StoreUnavailableError
from auth.models import Identity

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("ragchat.sessions")

SESSION_KEY_PREFIX = "session:"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def _ttl_seconds(ttl: timedelta) -> int:
    # Redis rejects EX values below 1.
    return max(1, int(ttl.total_seconds()))


def _dump_identity(identity: Identity) -> str:
    return json.dumps(identity)


def _load_identity(raw: Optional[str]) -> Optional[Identity]:
    if raw is None or raw == "":
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        # Written by something other than this module; keep it opaque.
        return raw
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return raw
    return value


class SessionStore(Protocol):
    def set(self, session_id: str, identity: Identity, ttl: timedelta) -> None: ...

    def get(self, session_id: str) -> Optional[Identity]: ...

    def delete(self, session_id: str) -> None: ...

    def pop(self, session_id: str) -> Optional[Identity]: ...

    def ttl(self, session_id: str) -> Optional[int]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisSessionStore:
    """Session store backed by Redis.

    Usage:
        store = RedisSessionStore.from_url("redis://127.0.0.1:6379/0")
        store.set(session_id, 42, timedelta(days=7))
        store.get(session_id)   # -> 42
        store.pop(session_id)   # -> 42, key removed atomically (GETDEL)
    """

    def __init__(self, client: Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisSessionStore":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def set(self, session_id: str, identity: Identity, ttl: timedelta) -> None:
        try:
            self.client.set(session_key(session_id), _dump_identity(identity), ex=_ttl_seconds(ttl))
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    def get(self, session_id: str) -> Optional[Identity]:
        try:
            raw = self.client.get(session_key(session_id))
        except RedisError as exc:
            raise self._unavailable("get", exc) from exc
        return _load_identity(raw)

    def delete(self, session_id: str) -> None:
        # DEL on a missing key returns 0 -- not an error.
        try:
            self.client.delete(session_key(session_id))
        except RedisError as exc:
            raise self._unavailable("delete", exc) from exc

    def pop(self, session_id: str) -> Optional[Identity]:
        """Atomically read and remove a session (Redis >= 6.2 GETDEL)."""
        try:
            raw = self.client.getdel(session_key(session_id))
        except RedisError as exc:
            raise self._unavailable("pop", exc) from exc
        return _load_identity(raw)

    def ttl(self, session_id: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None if the session is absent."""
        try:
            remaining = self.client.ttl(session_key(session_id))
        except RedisError as exc:
            raise self._unavailable("ttl", exc) from exc
        # -2: key missing, -1: key without expiry (never written by this module)
        if remaining is None or remaining == -2:
            return None
        return remaining

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            logger.warning("Session store ping failed: %s", exc)
            return False

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _unavailable(operation: str, exc: RedisError) -> StoreUnavailableError:
        logger.error("Session store %s failed: %s", operation, exc)
        return StoreUnavailableError("Session store unavailable.")


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------


class MemorySessionStore:
    """Thread-safe in-process session store with passive TTL expiry.

    Only correct for a single worker process: sessions are invisible to other
    workers and vanish on restart.

    Expired entries are dropped when read, and set() sweeps the whole map at
    most once every SWEEP_INTERVAL seconds so abandoned sessions do not pile up.

    clock returns seconds (time.time by default) and is injectable so tests
    can expire sessions without sleeping.
    """

    SWEEP_INTERVAL = 60.0

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Identity, float]] = {}
        self._next_sweep = 0.0

    def set(self, session_id: str, identity: Identity, ttl: timedelta) -> None:
        now = self._clock()
        deadline = now + _ttl_seconds(ttl)
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            self._entries[session_key(session_id)] = (identity, deadline)

    def get(self, session_id: str) -> Optional[Identity]:
        with self._lock:
            return self._live_entry(session_key(session_id))

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_key(session_id), None)

    def pop(self, session_id: str) -> Optional[Identity]:
        key = session_key(session_id)
        with self._lock:
            identity = self._live_entry(key)
            self._entries.pop(key, None)
            return identity

    def ttl(self, session_id: str) -> Optional[int]:
        key = session_key(session_id)
        with self._lock:
            if self._live_entry(key) is None:
                return None
            _, deadline = self._entries[key]
            return int(deadline - self._clock())

    def __len__(self) -> int:
        """Stored entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep(self, now: float) -> None:
        # Caller holds self._lock.
        expired = [key for key, (_, deadline) in self._entries.items() if now >= deadline]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.SWEEP_INTERVAL

    def _live_entry(self, key: str) -> Optional[Identity]:
        # Caller holds self._lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        identity, deadline = entry
        if self._clock() >= deadline:
            del self._entries[key]
            return None
        return identity


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_session_store(settings: Settings) -> SessionStore:
    """Construct the configured session store and check it is reachable.

    A Redis backend that does not answer PING at startup is a hard failure:
    starting anyway would turn every authenticated request into a 503.
    """
    if settings.session_backend == "memory":
        logger.warning("Using in-process session store -- sessions are per-worker and lost on restart")
        return MemorySessionStore()

    store = RedisSessionStore.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    if not store.ping():
        store.close()
        # redis_url may embed a password; keep it out of the message.
        raise StoreUnavailableError("Session store is not reachable.")
    return store
