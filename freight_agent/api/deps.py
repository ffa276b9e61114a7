# =============================================================================
# API Dependencies: AppContext Injection
# =============================================================================
#
# Route handlers take `ctx: AppContext = Depends(get_context)`. The context
# is built by the lifespan in app.py and stored on `app.state`; tests pass
# a prebuilt one to create_app() or override `get_context`.
#
# FLOW:
#   1. Lifespan: init_context(settings) → app.state.context
#   2. Request: get_context(request) → the same AppContext
#   3. Shutdown: aclose_context() releases clients and pools
# =============================================================================

from __future__ import annotations

from fastapi import Request

from freight_agent.context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context
