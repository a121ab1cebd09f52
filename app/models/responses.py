# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data going OUT of the API that is not
# already an orchestration record. POST /ask returns OrchestratorResponse
# (app/models/orchestration.py) directly.
# =============================================================================

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    agent_loading: str


class AgentInfo(BaseModel):
    """One routable department agent."""

    name: str
    description: str | None = Field(
        default=None,
        description="Unset for lazily loaded agents that have not been built yet",
    )
    initialized: bool


class AgentListResponse(BaseModel):
    """Response for GET /agents."""

    agents: list[AgentInfo]
    total: int


class SessionClearedResponse(BaseModel):
    """Response for DELETE /sessions/{session_id}."""

    session_id: str
    cleared: bool


class CacheClearedResponse(BaseModel):
    """Response for DELETE /cache."""

    entries_cleared: int
    hits: int
    misses: int
    hit_rate: float = Field(description="Share of lookups served from the cache before clearing")
