# =============================================================================
# Ask API — Support Query Routing Endpoints
# =============================================================================
#
# Provides:
#   POST   /ask                    — route a question to the department agents
#   POST   /ask/stream             — stream a single-agent answer (SSE)
#   GET    /agents                 — list routable agents
#   DELETE /sessions/{session_id}  — forget a conversation
#   DELETE /cache                  — empty the LLM response cache
#
# FLOW (POST /ask):
#   1. Receive question + optional session_id
#   2. Look up (or create) that session's conversation memory
#   3. Run the orchestrator (classify → route → agent(s) → merge/handoff)
#   4. Optionally attach an LLM-as-judge evaluation
#   5. Return the OrchestratorResponse
#
# The handlers only validate requests, map errors and look up session
# memory. Routing lives in app/agents/.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.agents.evaluator import ResponseEvaluator
from app.agents.orchestrator import Orchestrator
from app.api.deps import (
    get_evaluator,
    get_llm_cache,
    get_memory_store,
    get_orchestrator,
)
from app.errors import OrchestrationError
from app.models.orchestration import OrchestratorResponse, StreamChunk
from app.models.requests import AskRequest, StreamRequest
from app.models.responses import (
    AgentInfo,
    AgentListResponse,
    CacheClearedResponse,
    SessionClearedResponse,
)
from app.services.cache import ResponseCache
from app.services.memory import SessionMemoryStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Support Routing"])


# ---------------------------------------------------------------------------
# POST /ask — Route a support question
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    response_model=OrchestratorResponse,
    response_model_exclude_none=True,
    summary="Ask a support question",
    description=(
        "Classify the question, route it to the HR, IT, Finance or Legal "
        "agent (or several of them for multi-topic questions) and return "
        "the answer with its sources and routing details."
    ),
)
async def ask_endpoint(
    request: AskRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    memory_store: SessionMemoryStore = Depends(get_memory_store),
    evaluator: ResponseEvaluator | None = Depends(get_evaluator),
) -> OrchestratorResponse:
    """
    Error handling:
    - Missing API key or configuration error → 503 Service Unavailable
    - Evaluation requested but no evaluator configured → 503
    - Classification, agent, merge or LLM failure → 502 Bad Gateway
    """
    logger.info(
        "Ask request: question='%s', session_id=%s",
        request.question[:80], request.session_id,
    )

    if request.evaluate and evaluator is None:
        raise HTTPException(
            status_code=503,
            detail="Response evaluation is not available",
        )

    memory = (
        memory_store.get_or_create(request.session_id)
        if request.session_id
        else None
    )

    try:
        response = await orchestrator.process(request.question, memory)
    except OrchestrationError as e:
        logger.error("Routing failed (%s): %s", e.kind.value, e)
        raise HTTPException(
            status_code=502,
            detail={"error": e.kind.value, "message": str(e)},
        ) from e
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e

    if request.evaluate:
        response = await evaluator.evaluate_response(request.question, response)
    return response


# ---------------------------------------------------------------------------
# POST /ask/stream — Stream a single-agent answer
# ---------------------------------------------------------------------------


def _sse_event(chunk: StreamChunk) -> str:
    """Format one chunk as a Server-Sent Event named after its type."""
    data = json.dumps(chunk.model_dump(exclude_none=True), ensure_ascii=False)
    return f"event: {chunk.type}\ndata: {data}\n\n"


@router.post(
    "/ask/stream",
    summary="Stream the answer to a support question",
    description=(
        "Classify the question, route it to one department agent and stream "
        "the answer as Server-Sent Events: start, retrieval, token..., end "
        "(or error). Multi-topic splitting and handoffs are only done by "
        "POST /ask."
    ),
)
async def ask_stream_endpoint(
    request: StreamRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    memory_store: SessionMemoryStore = Depends(get_memory_store),
) -> StreamingResponse:
    logger.info(
        "Stream request: question='%s', session_id=%s",
        request.question[:80], request.session_id,
    )
    memory = (
        memory_store.get_or_create(request.session_id)
        if request.session_id
        else None
    )

    chunks = orchestrator.stream(request.question, memory)
    # Routing errors surface before the first chunk, while a status code
    # can still be sent
    try:
        first = await anext(chunks)
    except OrchestrationError as e:
        logger.error("Routing failed (%s): %s", e.kind.value, e)
        raise HTTPException(
            status_code=502,
            detail={"error": e.kind.value, "message": str(e)},
        ) from e

    async def event_generator() -> AsyncIterator[str]:
        yield _sse_event(first)
        async for chunk in chunks:
            yield _sse_event(chunk)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# GET /agents — List routable agents
# ---------------------------------------------------------------------------


@router.get(
    "/agents",
    response_model=AgentListResponse,
    summary="List department agents",
)
async def list_agents(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentListResponse:
    agents = []
    for name in orchestrator.agent_names():
        agent = orchestrator.get_agent(name)
        agents.append(AgentInfo(
            name=name,
            description=getattr(agent, "description", None),
            initialized=agent is not None,
        ))
    return AgentListResponse(agents=agents, total=len(agents))


# ---------------------------------------------------------------------------
# DELETE /sessions/{session_id} — Forget a conversation
# ---------------------------------------------------------------------------


@router.delete(
    "/sessions/{session_id}",
    response_model=SessionClearedResponse,
    summary="Clear a session's conversation memory",
)
async def clear_session(
    session_id: str,
    memory_store: SessionMemoryStore = Depends(get_memory_store),
) -> SessionClearedResponse:
    cleared = await memory_store.clear(session_id)
    if not cleared:
        raise HTTPException(
            status_code=404,
            detail=f"Session '{session_id}' not found",
        )
    return SessionClearedResponse(session_id=session_id, cleared=True)


# ---------------------------------------------------------------------------
# DELETE /cache — Empty the LLM response cache
# ---------------------------------------------------------------------------


@router.delete(
    "/cache",
    response_model=CacheClearedResponse,
    summary="Clear the LLM response cache",
)
async def clear_cache(
    cache: ResponseCache = Depends(get_llm_cache),
) -> CacheClearedResponse:
    stats = cache.stats()
    cleared = cache.clear()
    return CacheClearedResponse(
        entries_cleared=cleared,
        hits=stats.hits,
        misses=stats.misses,
        hit_rate=stats.hit_rate,
    )
