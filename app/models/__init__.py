# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - orchestration.py: Immutable records produced by the router
#     (classifications, agent responses, merged responses)
#   - requests.py / responses.py: API-only request and response bodies
#
# DESIGN DECISION: POST /ask returns OrchestratorResponse directly rather
# than a parallel API schema, so the wire shape cannot drift from the
# router's own records.
# =============================================================================
