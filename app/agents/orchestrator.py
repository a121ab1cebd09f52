# =============================================================================
# LangGraph Orchestrator — Query Routing Graph
# =============================================================================
#
# The orchestrator decides which department agent(s) answer a question and
# assembles the final OrchestratorResponse. The routing steps are nodes of
# a LangGraph StateGraph:
#
# GRAPH TOPOLOGY:
#
#            ┌─(empty question)──▶ clarify ────────────────────────────▶ END
#   START ───┤
#            └──▶ load_history ──▶ classify ─┬─(multi)──▶ multi_topic ──▶ END
#                                            │
#                                            └─(single)─▶ single_topic ─┬─▶ END
#                                                                       │
#                                                        (handoff)──▶ handoff ──▶ END
#
# DESIGN DECISION: Conditional edges carry the routing.
# Each branch point (empty input, single vs multi, handoff requested) is a
# small pure function over the state. Nodes do the work; edges decide.
#
# DESIGN DECISION: Plain TypedDict state (not MessagesState).
# The history is read from the caller's memory object once and carried as
# ConversationTurn records; LangGraph's message reducers are not needed.
#
# DESIGN DECISION: One compiled graph per Orchestrator instance.
# Nodes are bound methods, so the graph closes over this instance's
# classifier, agents, merger and handoff chain. Nothing is module-global,
# so tests build an orchestrator from fakes without patching.
#
# NOTE: The memory object in the state is not JSON-serialisable. Safe as
# long as no checkpointer is configured on the graph (current: none).
#
# FAILURE POLICY:
#   Recovered here:  multi-intent classification degrade, missing agent for
#                    the classified intent (IT fallback), unusable handoff.
#   Raised:          OrchestrationError for classification failure, no IT
#                    fallback, agent invocation or merge failure, empty
#                    result set.
#
# Multi-topic agents write conversation turns to DeferredMemory views that
# are committed only once the whole batch has been merged. A failed batch
# leaves the session untouched.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import TypeVar

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.classifier import Degraded, IntentClassifier
from app.agents.domain import Agent
from app.agents.handoff import HandoffChain, HandoffContext
from app.agents.merger import ResultMerger
from app.agents.registry import AgentRegistry
from app.errors import ErrorKind, OrchestrationError
from app.models.orchestration import (
    AgentResponse,
    ConversationTurn,
    Intent,
    IntentClassification,
    MultiIntentClassification,
    OrchestratorResponse,
    StreamChunk,
)
from app.services.memory import ConversationMemory, DeferredMemory, normalise_turn

logger = logging.getLogger(__name__)

ClassificationT = TypeVar(
    "ClassificationT", IntentClassification, MultiIntentClassification,
)

# Unclassifiable input and unresolvable intents are sent here
FALLBACK_INTENT = Intent.IT

CLARIFICATION_PROMPT = (
    "The user sent an empty message. Politely ask them what they need help "
    "with, and mention that you can help with HR, IT, finance and legal "
    "questions."
)

CLARIFICATION_CLASSIFICATION = IntentClassification(
    intent=FALLBACK_INTENT,
    confidence=0.5,
    reasoning="Empty query; routed to IT support to ask for clarification",
)


# ---------------------------------------------------------------------------
# Router State Schema
# ---------------------------------------------------------------------------


class RouterState(TypedDict, total=False):
    """
    State that flows through the routing graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (set by caller) ---
    question: str
    memory: ConversationMemory | None

    # --- Intermediate (set by nodes) ---
    history: list[ConversationTurn]
    classification: IntentClassification | MultiIntentClassification
    agent: Agent | None  # the single-topic agent, when one answered

    # --- Output ---
    response: OrchestratorResponse


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Routes questions to department agents.

    Agents are resolved either from a fixed mapping built up front
    (`agents=`, eager mode) or through an AgentRegistry that builds each
    agent on first use (`registry=`, lazy mode). Exactly one must be given.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        merger: ResultMerger | None = None,
        handoff_chain: HandoffChain | None = None,
        *,
        agents: Mapping[Intent, Agent] | None = None,
        registry: AgentRegistry | None = None,
        agent_names: Mapping[Intent, str] | None = None,
        handoff_enabled: bool = True,
        history_turn_limit: int = 10,
    ) -> None:
        if (agents is None) == (registry is None):
            raise ValueError("Provide exactly one of 'agents' or 'registry'")

        self._classifier = classifier
        self._merger = merger or ResultMerger()
        self._handoff_chain = handoff_chain or HandoffChain()
        self._agents = {Intent(k): v for k, v in (agents or {}).items()}
        self._registry = registry
        self._agent_names = dict(agent_names) if agent_names else {
            intent: intent.value
            for intent in Intent
            if intent is not Intent.GENERAL
        }
        self._handoff_enabled = handoff_enabled
        self._history_turn_limit = history_turn_limit
        self._graph = self._build_graph()

        logger.info(
            "Orchestrator initialized: mode=%s, handoff=%s, merge_strategy=%s",
            "lazy" if registry is not None else "eager",
            handoff_enabled, self._merger.strategy.value,
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def process(
        self,
        question: str,
        memory: ConversationMemory | None = None,
    ) -> OrchestratorResponse:
        """
        Answer `question`, routing to one or more agents.

        Raises:
            OrchestrationError: when no answer can be produced at all.
        """
        logger.info(
            "Processing question: '%s' (memory=%s)",
            question[:80], memory is not None,
        )
        result = await self._graph.ainvoke({"question": question, "memory": memory})
        response: OrchestratorResponse = result["response"]

        logger.info(
            "Question routed: intent=%s, routed_to=%s, handoff=%s",
            response.reported_intent.value, response.routed_to,
            response.handoff_occurred,
        )
        return response

    async def stream(
        self,
        question: str,
        memory: ConversationMemory | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream the answer to `question` from a single agent.

        Streaming follows the single-intent route: the question is
        classified with classify_intent() and an intent without an agent
        falls back to IT. Multi-topic fan-out and handoff need complete
        answers and are only done by process(). The start chunk is extended
        with the intent, its confidence and the agent routed to.

        Raises:
            OrchestrationError: before the first chunk, when classification
                fails or no agent (not even IT) is available.
        """
        logger.info(
            "Streaming question: '%s' (memory=%s)",
            question[:80], memory is not None,
        )
        if question.strip():
            history = await self._recent_history(memory)
            classification = await self._classifier.classify_intent(
                question, history or None,
            )
            query = question
        else:
            classification = CLARIFICATION_CLASSIFICATION
            query = CLARIFICATION_PROMPT

        agent = await self.get_agent_by_intent(classification.intent)
        if agent is None:
            agent = await self.get_agent_by_intent(FALLBACK_INTENT)
        if agent is None:
            raise OrchestrationError(
                f"No agent for intent '{classification.intent.value}' "
                f"and no {FALLBACK_INTENT.value} fallback",
                ErrorKind.AGENT_RESOLUTION_FAILURE,
            )

        async for chunk in agent.stream(query, memory):
            if chunk.type == "start":
                chunk = chunk.model_copy(update={"metadata": {
                    **(chunk.metadata or {}),
                    "intent": classification.intent.value,
                    "confidence": classification.confidence,
                    "routed_to": agent.name,
                }})
            yield chunk

    def get_agents(self) -> list[Agent]:
        """Agents that exist right now (lazy mode: only those already built)."""
        if self._registry is not None:
            return [
                agent
                for name in self._registry.initialized_names()
                if (agent := self._registry.get_cached(name)) is not None
            ]
        return list(self._agents.values())

    def get_agent(self, name: str) -> Agent | None:
        if self._registry is not None:
            return self._registry.get_cached(name)
        for agent in self._agents.values():
            if agent.name == name:
                return agent
        return None

    def agent_names(self) -> list[str]:
        """Every routable agent name, built or not."""
        if self._registry is not None:
            return self._registry.registered_names()
        return [agent.name for agent in self._agents.values()]

    async def get_agent_by_intent(self, intent: Intent) -> Agent | None:
        """
        Resolve the agent for `intent`.

        Returns None when there is none (including `general`, which has no
        agent) or when lazy construction fails. Never raises.
        """
        if self._registry is None:
            return self._agents.get(intent)

        name = self._agent_names.get(intent)
        if name is None:
            return None
        try:
            return await self._registry.get_agent(name)
        except Exception as e:
            logger.error("Failed to construct agent %s: %s", name, e)
            return None

    # -----------------------------------------------------------------------
    # Conversation History
    # -----------------------------------------------------------------------

    async def _recent_history(
        self, memory: ConversationMemory | None,
    ) -> list[ConversationTurn]:
        """
        Read recent turns from memory for the classifier.

        Keeps the last `history_turn_limit` turns and drops empty ones.
        Any failure yields an empty history rather than failing the request.
        """
        if memory is None or self._history_turn_limit <= 0:
            return []

        try:
            stored = await memory.load_turns()
            turns = [normalise_turn(item) for item in stored]
        except Exception as e:
            logger.warning("Failed to load conversation history: %s", e)
            return []

        recent = turns[-self._history_turn_limit:]
        history = [t for t in recent if t is not None and t.content.strip()]
        logger.debug("Loaded %d history turns", len(history))
        return history

    # -----------------------------------------------------------------------
    # Graph Assembly
    # -----------------------------------------------------------------------

    def _build_graph(self):
        builder = StateGraph(RouterState)
        builder.add_node("clarify", self._clarify_node)
        builder.add_node("load_history", self._load_history_node)
        builder.add_node("classify", self._classify_node)
        builder.add_node("single_topic", self._single_topic_node)
        builder.add_node("multi_topic", self._multi_topic_node)
        builder.add_node("handoff", self._handoff_node)

        builder.add_conditional_edges(
            START, _route_input, ["clarify", "load_history"],
        )
        builder.add_edge("clarify", END)
        builder.add_edge("load_history", "classify")
        builder.add_conditional_edges(
            "classify", _route_classification, ["single_topic", "multi_topic"],
        )
        builder.add_edge("multi_topic", END)
        builder.add_conditional_edges(
            "single_topic", self._route_handoff, ["handoff", END],
        )
        builder.add_edge("handoff", END)

        return builder.compile()

    def _route_handoff(self, state: RouterState) -> str:
        if not self._handoff_enabled or state.get("agent") is None:
            return END
        agent_response = state["response"].agent_response
        if isinstance(agent_response, AgentResponse) and agent_response.handoff_request:
            return "handoff"
        return END

    # -----------------------------------------------------------------------
    # Node Functions
    # -----------------------------------------------------------------------
    # Each node receives the full state and returns a partial update dict.
    # -----------------------------------------------------------------------

    async def _clarify_node(self, state: RouterState) -> dict:
        """Empty input: skip classification and let IT ask what is needed."""
        logger.info("Empty question, asking for clarification via %s", FALLBACK_INTENT.value)

        agent = await self.get_agent_by_intent(FALLBACK_INTENT)
        if agent is None:
            raise OrchestrationError(
                "No agent available to handle an empty question",
                ErrorKind.AGENT_RESOLUTION_FAILURE,
            )

        agent_response = await _invoke(agent, CLARIFICATION_PROMPT, state.get("memory"))
        classification = CLARIFICATION_CLASSIFICATION
        return {
            "classification": classification,
            "response": OrchestratorResponse(
                intent=FALLBACK_INTENT,
                classification=classification,
                routed_to=agent.name,
                agent_response=agent_response,
            ),
        }

    async def _load_history_node(self, state: RouterState) -> dict:
        return {"history": await self._recent_history(state.get("memory"))}

    async def _classify_node(self, state: RouterState) -> dict:
        outcome = await self._classifier.classify_multi_intent(
            state["question"], state.get("history") or None,
        )
        if isinstance(outcome, Degraded):
            logger.info(
                "Using single-intent classification after degrade: %s",
                outcome.error,
            )
        return {"classification": outcome.classification}

    async def _single_topic_node(self, state: RouterState) -> dict:
        classification = _expect(state["classification"], IntentClassification)
        question = state["question"]
        memory = state.get("memory")

        agent = await self.get_agent_by_intent(classification.intent)
        if agent is None:
            logger.warning(
                "No agent for intent %s, falling back to %s",
                classification.intent.value, FALLBACK_INTENT.value,
            )
            fallback = await self.get_agent_by_intent(FALLBACK_INTENT)
            if fallback is None:
                raise OrchestrationError(
                    f"No agent for intent '{classification.intent.value}' "
                    f"and no {FALLBACK_INTENT.value} fallback",
                    ErrorKind.AGENT_RESOLUTION_FAILURE,
                )
            agent_response = await _invoke(fallback, question, memory)
            # agent=None: the fallback answer is final, no handoff
            return {
                "agent": None,
                "response": OrchestratorResponse(
                    intent=classification.intent,
                    classification=classification,
                    routed_to=fallback.name,
                    agent_response=agent_response,
                ),
            }

        agent_response = await _invoke(agent, question, memory)
        return {
            "agent": agent,
            "response": OrchestratorResponse(
                intent=classification.intent,
                classification=classification,
                routed_to=agent.name,
                agent_response=agent_response,
            ),
        }

    async def _multi_topic_node(self, state: RouterState) -> dict:
        classification = _expect(state["classification"], MultiIntentClassification)
        memory = state.get("memory")

        resolved: list[tuple[Intent, str, Agent]] = []
        for item in classification.intents:
            agent = await self.get_agent_by_intent(item.intent)
            if agent is None:
                logger.warning("No agent for intent %s, skipping sub-query", item.intent.value)
                continue
            resolved.append((item.intent, item.sub_query, agent))

        if not resolved:
            raise OrchestrationError(
                "No agents available for any sub-query",
                ErrorKind.EMPTY_RESULT_SET,
            )

        logger.info(
            "Invoking %d agents concurrently: %s",
            len(resolved), [agent.name for _, _, agent in resolved],
        )
        # Each agent writes to its own deferred view; turns reach the
        # session only after the whole batch and the merge succeed
        views = [
            DeferredMemory(memory) if memory is not None else None
            for _ in resolved
        ]
        tasks = [
            asyncio.create_task(agent.invoke(sub_query, view))
            for (_, sub_query, agent), view in zip(resolved, views)
        ]
        try:
            responses = await asyncio.gather(*tasks)
        except Exception as e:
            # Siblings still in flight are cancelled; their results are never read
            for task in tasks:
                task.cancel()
            logger.error("Concurrent agent invocation failed: %s", e)
            raise OrchestrationError(
                "Agent invocation failed",
                ErrorKind.AGENT_INVOCATION_FAILURE,
                cause=e,
            ) from e

        results = {
            intent: response
            for (intent, _, _), response in zip(resolved, responses)
        }
        try:
            merged = await self._merger.merge(
                results, state["question"], classification.intents,
            )
        except Exception as e:
            logger.error(
                "Merging %d answers failed (strategy=%s): %s",
                len(results), self._merger.strategy.value, e,
            )
            raise OrchestrationError(
                "Failed to merge agent answers",
                ErrorKind.AGENT_INVOCATION_FAILURE,
                cause=e,
            ) from e

        for view in views:
            if view is not None:
                await view.commit()

        return {
            "response": OrchestratorResponse(
                intents=[intent for intent, _, _ in resolved],
                classification=classification,
                routed_to=[agent.name for _, _, agent in resolved],
                agent_response=merged,
            ),
        }

    async def _handoff_node(self, state: RouterState) -> dict:
        """
        Delegate to the agent named in the handoff request.

        An unavailable, disallowed or failing target degrades to the
        original answer with handoff_occurred=False.
        """
        previous = state["response"]
        source_agent = state["agent"]
        agent_response = previous.agent_response
        request = agent_response.handoff_request

        def degraded() -> dict:
            return {"response": previous.model_copy(update={"handoff_occurred": False})}

        target = await self.get_agent_by_intent(request.requested_agent)
        if target is None:
            logger.warning(
                "Handoff target unavailable (%s): %s → %s",
                ErrorKind.HANDOFF_TARGET_UNAVAILABLE.value,
                source_agent.name, request.requested_agent.value,
            )
            return degraded()

        if not self._handoff_chain.is_handoff_allowed(target.name, [source_agent.name]):
            logger.warning(
                "Handoff not allowed: %s → %s (max_depth=%d)",
                source_agent.name, target.name, self._handoff_chain.max_depth,
            )
            return degraded()

        context = HandoffContext(
            original_query=state["question"],
            previous_agent=source_agent.name,
            handoff_reason=request.reason.value,
            previous_response=agent_response,
            conversation_history=state.get("history", []),
        )
        try:
            handed_off = await self._handoff_chain.process_handoff(
                request, context, target, state.get("memory"),
            )
        except Exception as e:
            logger.warning(
                "Handoff to %s failed, keeping %s's answer: %s",
                target.name, source_agent.name, e,
            )
            return degraded()

        return {
            "response": previous.model_copy(update={
                "agent_response": handed_off,
                "handoff_occurred": True,
                "handoff_chain": [source_agent.name, target.name],
            }),
        }


# ---------------------------------------------------------------------------
# Routing Functions
# ---------------------------------------------------------------------------


def _route_input(state: RouterState) -> str:
    if not state["question"].strip():
        return "clarify"
    return "load_history"


def _route_classification(state: RouterState) -> str:
    if isinstance(state["classification"], MultiIntentClassification):
        return "multi_topic"
    return "single_topic"


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _invoke(
    agent: Agent,
    query: str,
    memory: ConversationMemory | None,
) -> AgentResponse:
    """Invoke one agent, wrapping any failure as AGENT_INVOCATION_FAILURE."""
    try:
        return await agent.invoke(query, memory)
    except Exception as e:
        logger.error("Agent %s failed: %s", agent.name, e)
        raise OrchestrationError(
            f"Agent '{agent.name}' failed",
            ErrorKind.AGENT_INVOCATION_FAILURE,
            cause=e,
        ) from e


def _expect(classification, kind: type[ClassificationT]) -> ClassificationT:
    """Narrow the state's classification to the kind a node handles."""
    if not isinstance(classification, kind):
        raise TypeError(
            f"Expected {kind.__name__}, got {type(classification).__name__}"
        )
    return classification
