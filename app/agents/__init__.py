# =============================================================================
# Agents Package — Multi-Agent Query Routing
# =============================================================================
#   - classifier.py: LLM intent classification (single and multi-intent)
#   - domain.py: Department agents (retrieve → answer → optional handoff)
#   - registry.py: Lazy, cached agent construction
#   - orchestrator.py: LangGraph routing graph (clarify / single / multi /
#     handoff)
#   - handoff.py: Agent-to-agent delegation with loop and depth limits
#   - merger.py: Combines answers from several agents
#   - initializer.py: Builds a wired Orchestrator from settings
# =============================================================================
