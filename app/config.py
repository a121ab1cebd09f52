# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: We use Pydantic V2's `BaseSettings` for configuration.
# This provides:
# 1. Type-safe configuration with validation at startup
# 2. Automatic loading from environment variables
# 3. Support for .env files (via `env_file` in model_config)
# 4. Sensible defaults for local development
#
# HOW IT WORKS:
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `LLM_MODEL=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from app.config import settings
#   print(settings.merge_strategy)
# =============================================================================

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have defaults suitable for local development with an
    in-process Chroma instance. Override via environment or a .env file.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "Support Query Router"
    app_version: str = "0.1.0"
    debug: bool = True
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Keys — External Services
    # -------------------------------------------------------------------------
    # ANTHROPIC_API_KEY: Claude (agent answers, classification, synthesis)
    # OPENAI_API_KEY: embeddings, or generation when using openai_compatible
    # -------------------------------------------------------------------------
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # -------------------------------------------------------------------------
    # LLM Configuration — Multi-Provider
    # -------------------------------------------------------------------------
    # Switching providers is a single .env change:
    #   Claude:      provider=anthropic, model=claude-sonnet-4-6
    #   OpenAI:      provider=openai_compatible, model=gpt-4o-mini
    #   DeepSeek V3: provider=openai_compatible,
    #                base_url=https://api.deepseek.com/v1, model=deepseek-chat
    # -------------------------------------------------------------------------
    llm_provider: str = "anthropic"  # "anthropic" or "openai_compatible"
    llm_base_url: str | None = None  # Only needed for openai_compatible
    llm_api_key: str | None = None   # Overrides provider-specific key if set
    llm_model: str = "claude-sonnet-4-6"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 4096

    # Classification wants near-deterministic output; synthesis a bit more
    # freedom to restructure several answers into one.
    classifier_temperature: float = 0.1
    classifier_max_tokens: int = 1024
    synthesis_temperature: float = 0.3
    evaluation_temperature: float = 0.3

    # -------------------------------------------------------------------------
    # LLM Response Cache
    # -------------------------------------------------------------------------
    # Identical completion requests within cache_ttl_seconds are answered
    # from an in-process cache. Streamed answers are never cached.
    # -------------------------------------------------------------------------
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=3600, gt=0)

    # -------------------------------------------------------------------------
    # Embedding Configuration
    # -------------------------------------------------------------------------
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str | None = None
    embedding_dimensions: int | None = 1536

    # -------------------------------------------------------------------------
    # Knowledge Bases — one Chroma collection per domain agent
    # -------------------------------------------------------------------------
    # chroma_url set → client/server mode; chroma_persist_dir set → on-disk
    # persistent client; neither → ephemeral in-process client.
    # -------------------------------------------------------------------------
    chroma_url: str | None = None
    chroma_persist_dir: str | None = None
    hr_collection: str = "hr_embeddings"
    it_collection: str = "it_embeddings"
    finance_collection: str = "finance_embeddings"
    legal_collection: str = "legal_embeddings"
    retrieval_top_k: int = 5
    retrieval_similarity_threshold: float = 0.5

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------
    # agent_loading:
    #   "eager" → all four domain agents are built at startup
    #   "lazy"  → agents are built on first use via the AgentRegistry
    # handoff_max_depth counts agents in a chain, including the originator.
    # -------------------------------------------------------------------------
    agent_loading: Literal["eager", "lazy"] = "eager"
    history_turn_limit: int = Field(default=10, ge=0)
    handoff_enabled: bool = True
    handoff_max_depth: int = Field(default=2, ge=1)
    merge_strategy: Literal[
        "concatenation", "llm_synthesis", "structured"
    ] = "concatenation"

    # -------------------------------------------------------------------------
    # Conversation Memory
    # -------------------------------------------------------------------------
    memory_type: Literal["buffer", "none"] = "buffer"
    memory_max_turns: int = 50

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, construct `Settings(...)` directly and pass it to
    `build_orchestrator()` instead of patching the module-level instance.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Module-level convenience instance
# ---------------------------------------------------------------------------
settings = Settings()
