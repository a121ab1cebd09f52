# =============================================================================
# Orchestrator Builder — Startup Wiring
# =============================================================================
#
# Everything the router needs is built here, once, at process start:
#
#   LLM provider ─┬──▶ IntentClassifier
#                 ├──▶ ResultMerger (llm_synthesis only)
#                 └──▶ DomainAgent × 4 ◀── Retriever per knowledge base
#
# and handed to the Orchestrator, which is then stored on the FastAPI app.
#
# DESIGN DECISION: Explicit injection instead of module-level singletons.
# Tests call build_orchestrator() with a fake LLM and an in-memory
# retriever factory; nothing global has to be patched or reset.
#
# DESIGN DECISION: Eager or lazy agents, chosen by `agent_loading`.
#   eager → all four agents are built now; startup fails fast on a bad
#           knowledge-base configuration.
#   lazy  → factories are registered with an AgentRegistry and each agent
#           is built on first use; startup stays fast.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable

from app.agents.classifier import IntentClassifier
from app.agents.domain import AgentProfile, DomainAgent, default_profiles
from app.agents.handoff import HandoffChain
from app.agents.merger import ResultMerger
from app.agents.orchestrator import Orchestrator
from app.agents.registry import AgentFactory, AgentRegistry
from app.config import Settings, settings
from app.services.llm import LLMProvider, create_llm_provider
from app.services.retriever import ChromaRetriever, Retriever, create_chroma_client

logger = logging.getLogger(__name__)

RetrieverFactory = Callable[[AgentProfile], Retriever]


def build_orchestrator(
    config: Settings | None = None,
    llm: LLMProvider | None = None,
    retriever_factory: RetrieverFactory | None = None,
) -> Orchestrator:
    """
    Build a fully wired Orchestrator from settings.

    Args:
        config: Settings to use. Defaults to the module-level settings.
        llm: LLM provider shared by every component. Defaults to
            create_llm_provider(config).
        retriever_factory: Builds the retriever for a profile. Defaults to
            a ChromaRetriever over the profile's collection, with one
            Chroma client shared by all four.

    Raises:
        ValueError: If no LLM provider is given and none can be configured.
    """
    config = config or settings
    llm = llm or create_llm_provider(config)
    if retriever_factory is None:
        retriever_factory = _chroma_retriever_factory(config)

    profiles = default_profiles(config)

    def make_agent(profile: AgentProfile) -> DomainAgent:
        return DomainAgent(
            profile=profile,
            retriever=retriever_factory(profile),
            llm=llm,
            history_turn_limit=config.history_turn_limit,
        )

    classifier = IntentClassifier(
        llm,
        history_turn_limit=config.history_turn_limit,
        temperature=config.classifier_temperature,
        max_tokens=config.classifier_max_tokens,
    )
    merger = ResultMerger(
        strategy=config.merge_strategy,
        llm=llm,
        synthesis_temperature=config.synthesis_temperature,
    )
    handoff_chain = HandoffChain(max_depth=config.handoff_max_depth)
    agent_names = {intent: profile.name for intent, profile in profiles.items()}

    if config.agent_loading == "lazy":
        registry = AgentRegistry()
        for profile in profiles.values():
            registry.register_factory(profile.name, _lazy_factory(make_agent, profile))
        logger.info("Registered %d agent factories (lazy loading)", len(profiles))
        return Orchestrator(
            classifier,
            merger,
            handoff_chain,
            registry=registry,
            agent_names=agent_names,
            handoff_enabled=config.handoff_enabled,
            history_turn_limit=config.history_turn_limit,
        )

    agents = {intent: make_agent(profile) for intent, profile in profiles.items()}
    logger.info("Built %d agents (eager loading)", len(agents))
    return Orchestrator(
        classifier,
        merger,
        handoff_chain,
        agents=agents,
        agent_names=agent_names,
        handoff_enabled=config.handoff_enabled,
        history_turn_limit=config.history_turn_limit,
    )


def _lazy_factory(
    make_agent: Callable[[AgentProfile], DomainAgent],
    profile: AgentProfile,
) -> AgentFactory:
    async def factory() -> DomainAgent:
        return make_agent(profile)

    return factory


def _chroma_retriever_factory(config: Settings) -> RetrieverFactory:
    client = create_chroma_client(config)

    def factory(profile: AgentProfile) -> Retriever:
        return ChromaRetriever(
            profile.collection,
            client=client,
            top_k=config.retrieval_top_k,
            similarity_threshold=config.retrieval_similarity_threshold,
        )

    return factory
