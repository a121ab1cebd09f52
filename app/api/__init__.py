# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - ask.py: POST /ask, GET /agents, DELETE /sessions/{session_id}
#   - deps.py: Dependencies exposing the orchestrator and memory store
# =============================================================================
