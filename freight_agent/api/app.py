# =============================================================================
# FastAPI Application Factory
# =============================================================================
#
# The HTTP surface is a thin shell over the core entry points: conversation
# turns, booking, uploads (which only enqueue jobs) and read-only lookups.
#
# LIFECYCLE: the lifespan builds the AppContext with init_context() and
# releases it on shutdown. Route handlers reach it through
# `request.app.state.context` (see deps.py), never through module globals.
#
# ERRORS: domain errors are mapped to HTTP status codes in one place:
#   SessionNotFoundError, JobNotFoundError  → 404
#   SessionConflictError                    → 409
#   BookingError, ContentValidationError    → 400
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from freight_agent.api import documents, health, jobs, shipping, tracking
from freight_agent.config import Settings, get_settings
from freight_agent.context import AppContext, aclose_context, init_context
from freight_agent.errors import (
    BookingError,
    ContentValidationError,
    FreightAgentError,
    JobNotFoundError,
    SessionConflictError,
    SessionNotFoundError,
)
from freight_agent.logging_config import configure_logging

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[FreightAgentError], int], ...] = (
    (SessionNotFoundError, 404),
    (JobNotFoundError, 404),
    (SessionConflictError, 409),
    (BookingError, 400),
    (ContentValidationError, 400),
)


def create_app(
    settings: Settings | None = None,
    context: AppContext | None = None,
) -> FastAPI:
    """
    Build the API.

    Args:
        settings: Defaults to `get_settings()`.
        context: A ready context (tests). When given, the lifespan neither
            builds nor closes one.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        owned = context is None
        app.state.context = context or init_context(settings)
        logger.info("%s v%s started", settings.app_name, settings.app_version)
        try:
            yield
        finally:
            if owned:
                await aclose_context(app.state.context)
            logger.info("%s stopped", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Conversational freight quoting with background document and "
            "invoice ingestion."
        ),
        lifespan=lifespan,
    )

    @app.exception_handler(FreightAgentError)
    async def freight_agent_error_handler(
        request: Request,
        exc: FreightAgentError,
    ) -> JSONResponse:
        status = next(
            (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
            500,
        )
        if status == 500:
            logger.error("Unhandled domain error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    app.include_router(shipping.router)
    app.include_router(documents.router)
    app.include_router(jobs.router)
    app.include_router(tracking.router)
    app.include_router(health.router)
    return app
