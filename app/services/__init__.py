# =============================================================================
# Services Package — Collaborators Used by the Agents
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#     plus JSON structured output validated by Pydantic
#   - embedder.py: OpenAI query embeddings
#   - retriever.py: Knowledge-base retrieval (one Chroma collection per
#     department)
#   - memory.py: Per-session conversation memory
# =============================================================================
