# =============================================================================
# Support Query Router
# =============================================================================
# A multi-agent support assistant. Each question is classified by an LLM and
# routed to the HR, IT, Finance or Legal agent (or to several of them at
# once), each answering from its own knowledge base. Agents can hand a
# question off to a better-suited colleague.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (ask, agents, sessions)
#   ├── agents/       → Classifier, domain agents, LangGraph orchestrator,
#   │                    handoff chain, result merger, agent registry
#   ├── models/       → Pydantic V2 orchestration records and API schemas
#   ├── services/     → LLM providers, embeddings, Chroma retriever,
#   │                    conversation memory
#   ├── config.py     → Pydantic Settings
#   ├── errors.py     → OrchestrationError and its kinds
#   └── main.py       → FastAPI application and lifespan wiring
# =============================================================================
