# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# One synchronous engine serves both consumers:
# - Celery workers call the record store directly
# - FastAPI handlers offload record-store calls with run_in_threadpool
#
# The engine is owned by a `Database` handle built by the composition root
# and disposed on shutdown; nothing here is created at import time.
#
# SESSION LIFECYCLE (Database.session()):
#   create → yield → commit (or rollback on error) → close
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from freight_agent.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False) -> None:
        if url.startswith("sqlite"):
            # In-memory SQLite must share a single connection across threads
            engine_kwargs: dict = {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        else:
            engine_kwargs = {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}

        self.engine: Engine = create_engine(url, echo=echo, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self.engine,
            class_=Session,
            expire_on_commit=False,
        )

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Provide a session that commits on exit and rolls back on error.

        Usage:
            with db.session() as session:
                doc = session.get(Document, document_id)
                doc.status = DocumentStatus.COMPLETED
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
