# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run with:
#   uvicorn app.main:app --reload
#
# STARTUP (lifespan):
#   1. Create the LLM provider (wrapped in the response cache when enabled)
#   2. Build the orchestrator from settings (knowledge-base retrievers,
#      classifier, merger, handoff chain, agents) and the response evaluator,
#      both sharing that provider
#   3. Create the per-session conversation memory store
#   All of them are stored on `app.state` and reach routes via
#   app/api/deps.py.
#
# DESIGN DECISION: Startup failure does not stop the process.
# A missing API key leaves `app.state.orchestrator` unset; /health still
# answers and /ask returns 503 with the reason in the log, which is easier
# to diagnose in a container than a crash loop.
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.agents.evaluator import ResponseEvaluator
from app.agents.initializer import build_orchestrator
from app.api.ask import router as ask_router
from app.config import settings
from app.models.responses import HealthResponse
from app.services.cache import CachedLLMProvider
from app.services.llm import create_llm_provider
from app.services.memory import SessionMemoryStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info(
        "Starting %s v%s (agent_loading=%s, merge_strategy=%s)",
        settings.app_name, settings.app_version,
        settings.agent_loading, settings.merge_strategy,
    )
    application.state.orchestrator = None
    application.state.evaluator = None
    application.state.llm_cache = None
    try:
        llm = create_llm_provider(settings)
        application.state.orchestrator = build_orchestrator(settings, llm=llm)
    except ValueError as e:
        logger.error("Query router not initialized: %s", e)
    else:
        application.state.evaluator = ResponseEvaluator(
            llm, temperature=settings.evaluation_temperature,
        )
        if isinstance(llm, CachedLLMProvider):
            application.state.llm_cache = llm.cache
    application.state.memory_store = SessionMemoryStore(
        memory_type=settings.memory_type,
        max_turns=settings.memory_max_turns,
    )

    yield

    cleared = await application.state.memory_store.clear_all()
    logger.info("Shutting down (%d sessions cleared)", cleared)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(ask_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(
        version=settings.app_version,
        service=settings.app_name,
        agent_loading=settings.agent_loading,
    )
