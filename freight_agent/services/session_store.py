# =============================================================================
# Session Store: Checkpoint Persistence Keyed by Thread
# =============================================================================
#
# Get/put of a whole Session checkpoint. "No checkpoint" is a normal
# outcome (`get` returns None), not an error.
#
# CONCURRENCY: optimistic versioning. Every stored Session carries a
# `version`; `put(..., expected_version=n)` only succeeds if the stored
# checkpoint is still at version n, and writes version n+1. A concurrent
# writer (a second turn, or a worker appending an invoice reference) gets
# SessionConflictError and must re-read and re-apply its change.
# `update()` packages that read-modify-write loop for background writers.
#
# ARCHITECTURE:
#   SessionStore (Protocol)
#   ├── InMemorySessionStore: dict + lock (tests, single-process dev)
#   └── RedisSessionStore   : one JSON string per thread, WATCH/MULTI CAS
# =============================================================================

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from redis import Redis
from redis.exceptions import WatchError

from freight_agent.config import Settings
from freight_agent.errors import SessionConflictError
from freight_agent.models.session import Session, utcnow

logger = logging.getLogger(__name__)

# A mutator receives a private copy of the latest checkpoint and returns
# the new state, or None to leave the checkpoint untouched.
SessionMutator = Callable[[Session], Session | None]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    """Checkpoint contract shared by all backends."""

    def get(self, thread_id: str) -> Session | None:
        """Return the stored checkpoint, or None if the thread has none."""
        ...

    def put(
        self,
        thread_id: str,
        session: Session,
        expected_version: int | None = None,
    ) -> Session:
        """
        Store `session` and return it with its new version.

        Args:
            thread_id: Checkpoint key.
            session: Full state to write.
            expected_version: Version the caller read. None writes
                unconditionally; 0 means "must not exist yet".

        Raises:
            SessionConflictError: The stored version differs.
        """
        ...

    def update(
        self,
        thread_id: str,
        mutator: SessionMutator,
        retries: int = 3,
    ) -> Session | None:
        """
        Apply `mutator` to the latest checkpoint; None if the thread has none.

        Re-reads and re-applies on a version conflict, `retries` attempts in
        all (at least 1); the last conflict is raised.
        """
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _check_version(
    thread_id: str,
    expected_version: int | None,
    current_version: int,
) -> None:
    if expected_version is not None and expected_version != current_version:
        raise SessionConflictError(thread_id, expected_version, current_version)


def _next_revision(session: Session, current_version: int) -> Session:
    return session.model_copy(
        update={"version": current_version + 1, "updated_at": utcnow()},
        deep=True,
    )


def _update_with_retries(
    store: SessionStore,
    thread_id: str,
    mutator: SessionMutator,
    retries: int,
) -> Session | None:
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")

    for attempt in range(1, retries + 1):
        current = store.get(thread_id)
        if current is None:
            return None
        updated = mutator(current.model_copy(deep=True))
        if updated is None:
            return current
        try:
            return store.put(thread_id, updated, expected_version=current.version)
        except SessionConflictError:
            if attempt == retries:
                raise
            logger.info(
                "Checkpoint conflict on %s (attempt %d/%d), re-reading",
                thread_id, attempt, retries,
            )


# ---------------------------------------------------------------------------
# Implementation 1: In-memory
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """
    Process-local store.

    Checkpoints are kept serialised so callers never share mutable state
    with the store, the same as with a remote backend.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[int, str]] = {}

    def get(self, thread_id: str) -> Session | None:
        with self._lock:
            entry = self._data.get(thread_id)
        if entry is None:
            return None
        return Session.model_validate_json(entry[1])

    def put(
        self,
        thread_id: str,
        session: Session,
        expected_version: int | None = None,
    ) -> Session:
        with self._lock:
            entry = self._data.get(thread_id)
            current_version = entry[0] if entry else 0
            _check_version(thread_id, expected_version, current_version)
            stored = _next_revision(session, current_version)
            self._data[thread_id] = (
                stored.version,
                stored.model_dump_json(by_alias=True),
            )
        return stored

    def update(
        self,
        thread_id: str,
        mutator: SessionMutator,
        retries: int = 3,
    ) -> Session | None:
        return _update_with_retries(self, thread_id, mutator, retries)

    def close(self) -> None:
        with self._lock:
            self._data.clear()


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisSessionStore:
    """
    Redis-backed store: `checkpoint:<threadId>` → Session JSON.

    `put` WATCHes the key, checks the stored version and writes inside
    MULTI/EXEC, so a write that raced another writer fails instead of
    silently overwriting it.
    """

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int | None = None,
        key_prefix: str = "checkpoint",
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    def _key(self, thread_id: str) -> str:
        return f"{self._prefix}:{thread_id}"

    def get(self, thread_id: str) -> Session | None:
        raw = self._client.get(self._key(thread_id))
        if raw is None:
            return None
        return Session.model_validate_json(raw)

    def put(
        self,
        thread_id: str,
        session: Session,
        expected_version: int | None = None,
    ) -> Session:
        key = self._key(thread_id)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                current_version = (
                    Session.model_validate_json(raw).version if raw else 0
                )
                _check_version(thread_id, expected_version, current_version)
                stored = _next_revision(session, current_version)
                pipe.multi()
                pipe.set(key, stored.model_dump_json(by_alias=True), ex=self._ttl)
                pipe.execute()
            except WatchError as exc:
                raise SessionConflictError(
                    thread_id, expected_version, None,
                ) from exc
        return stored

    def update(
        self,
        thread_id: str,
        mutator: SessionMutator,
        retries: int = 3,
    ) -> Session | None:
        return _update_with_retries(self, thread_id, mutator, retries)

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_session_store(
    settings: Settings,
    redis_client: Redis | None = None,
) -> InMemorySessionStore | RedisSessionStore:
    """Build the backend selected by `settings.session_backend`."""
    if settings.session_backend == "redis":
        client = redis_client or Redis.from_url(settings.redis_url)
        logger.info("Using Redis session store (%s)", settings.redis_url)
        return RedisSessionStore(client, ttl_seconds=settings.session_ttl_seconds)

    logger.info("Using in-memory session store")
    return InMemorySessionStore()
