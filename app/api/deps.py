# =============================================================================
# API Dependencies — FastAPI Dependency Injection for Router State
# =============================================================================
#
# The orchestrator, the session memory store, the response evaluator and
# the LLM response cache are built once in the application lifespan
# (app/main.py) and stored on `app.state`. Route handlers receive them
# through these dependencies.
#
# DESIGN DECISION: FastAPI dependency (not module globals).
# - Each endpoint declares what it needs via Depends(...)
# - Testable via app.dependency_overrides, with no lifespan run
# - A missing orchestrator (startup failed) becomes a clean 503
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from app.agents.evaluator import ResponseEvaluator
from app.agents.orchestrator import Orchestrator
from app.services.cache import ResponseCache
from app.services.memory import SessionMemoryStore

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> Orchestrator:
    """
    FastAPI dependency returning the application's Orchestrator.

    Raises:
        HTTPException 503: The orchestrator was not built at startup.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        logger.error("Orchestrator requested but not initialized")
        raise HTTPException(
            status_code=503,
            detail="Query router is not initialized",
        )
    return orchestrator


def get_memory_store(request: Request) -> SessionMemoryStore:
    """FastAPI dependency returning the per-session memory store."""
    store = getattr(request.app.state, "memory_store", None)
    if store is None:
        # Memory is optional; fall back to a store that keeps nothing
        store = SessionMemoryStore(memory_type="none")
        request.app.state.memory_store = store
    return store


def get_evaluator(request: Request) -> ResponseEvaluator | None:
    """The response evaluator, or None when none was built at startup."""
    return getattr(request.app.state, "evaluator", None)


def get_llm_cache(request: Request) -> ResponseCache:
    """
    FastAPI dependency returning the LLM response cache.

    Raises:
        HTTPException 404: Caching is disabled (or startup failed).
    """
    cache = getattr(request.app.state, "llm_cache", None)
    if cache is None:
        raise HTTPException(
            status_code=404,
            detail="LLM response cache is not enabled",
        )
    return cache
