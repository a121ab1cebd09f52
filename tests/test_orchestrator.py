# =============================================================================
# Unit Tests — Orchestrator
# =============================================================================
#
# Tests the routing graph end to end with fake agents and a mocked
# classifier: empty-input guard, single-topic routing and fallback,
# handoff and its degrade paths, multi-topic fan-out and failure, history
# extraction, lazy agent resolution, and streaming.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.agents.classifier import Degraded, Detected
from app.agents.handoff import HandoffChain
from app.agents.merger import ResultMerger
from app.agents.orchestrator import CLARIFICATION_PROMPT, Orchestrator
from app.agents.registry import AgentRegistry
from app.errors import ErrorKind, OrchestrationError
from app.models.orchestration import (
    AgentMetadata,
    AgentResponse,
    AgentTimings,
    ConversationTurn,
    HandoffReason,
    HandoffRequest,
    Intent,
    IntentClassification,
    MergedResponse,
    MultiIntentClassification,
    MultiIntentItem,
    OrchestratorResponse,
    StreamChunk,
)
from app.services.memory import BufferMemory


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeAgent:
    """Agent double that records its calls."""

    def __init__(self, name, answer=None, handoff=None, error=None, delay=0.0):
        self.name = name
        self.description = f"{name} agent"
        self.calls: list[tuple[str, object]] = []
        self.cancelled = False
        self._answer = answer or f"{name} answer"
        self._handoff = handoff
        self._error = error
        self._delay = delay

    async def invoke(self, query, memory=None):
        self.calls.append((query, memory))
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self._error is not None:
            raise self._error
        if memory is not None:
            await memory.save_context(query, self._answer)
        return AgentResponse(
            answer=self._answer,
            metadata=AgentMetadata(
                agent=self.name,
                model="fake-model",
                timings=AgentTimings(retrieval_ms=3, llm_generation_ms=7, total_ms=10),
            ),
            handoff_request=self._handoff,
        )

    async def stream(self, query, memory=None):
        self.calls.append((query, memory))
        yield StreamChunk(type="start", metadata={"agent": self.name})
        if self._error is not None:
            yield StreamChunk(type="error", content=str(self._error))
            return
        yield StreamChunk(type="token", content=self._answer)
        if memory is not None:
            await memory.save_context(query, self._answer)
        yield StreamChunk(type="end", content=self._answer, metadata={"agent": self.name})


class ListMemory:
    """Memory double returning a fixed list of stored turns."""

    def __init__(self, turns=None, error=None):
        self._turns = turns or []
        self._error = error

    async def load_turns(self):
        if self._error is not None:
            raise self._error
        return list(self._turns)

    async def save_context(self, user_input, output):
        pass


def _agents(*names, **overrides):
    agents = {Intent(name): FakeAgent(name) for name in names}
    for name, agent in overrides.items():
        agents[Intent(name)] = agent
    return agents


def _single(intent: Intent, confidence: float = 0.9) -> Detected:
    return Detected(IntentClassification(intent=intent, confidence=confidence))


def _multi(*pairs, primary=None) -> Detected:
    return Detected(MultiIntentClassification(
        intents=[
            MultiIntentItem(intent=intent, confidence=0.8, sub_query=sub_query)
            for intent, sub_query in pairs
        ],
        primary_intent=primary,
    ))


def _classifier(outcome) -> AsyncMock:
    classifier = AsyncMock()
    classifier.classify_multi_intent.return_value = outcome
    return classifier


def _handoff_to(intent: Intent) -> HandoffRequest:
    return HandoffRequest(
        requested_agent=intent,
        reason=HandoffReason.OUT_OF_SCOPE,
        context="Needs a legal opinion on the contract clause.",
        partial_answer="HR can only share the policy text.",
    )


# ---------------------------------------------------------------------------
# Test: Construction & Introspection
# ---------------------------------------------------------------------------


class TestOrchestratorSetup:
    """Tests for construction and agent lookup."""

    def test_requires_exactly_one_agent_source(self):
        with pytest.raises(ValueError):
            Orchestrator(_classifier(None))
        with pytest.raises(ValueError):
            Orchestrator(_classifier(None), agents={}, registry=AgentRegistry())

    def test_get_agents_and_get_agent(self):
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(_classifier(None), agents=agents)
        assert orchestrator.get_agents() == list(agents.values())
        assert orchestrator.get_agent("it") is agents[Intent.IT]
        assert orchestrator.get_agent("legal") is None
        assert orchestrator.agent_names() == ["hr", "it"]

    def test_general_has_no_agent(self):
        orchestrator = Orchestrator(_classifier(None), agents=_agents("hr", "it"))
        assert _run(orchestrator.get_agent_by_intent(Intent.GENERAL)) is None


# ---------------------------------------------------------------------------
# Test: Empty-Input Guard
# ---------------------------------------------------------------------------


class TestEmptyInput:
    """Tests for the clarification path taken on empty questions."""

    @pytest.mark.parametrize("question", ["", "   ", "\n\t"])
    def test_empty_question_goes_to_it_without_classifying(self, question):
        classifier = _classifier(_single(Intent.HR))
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(classifier, agents=agents)

        response = _run(orchestrator.process(question))

        classifier.classify_multi_intent.assert_not_called()
        assert response.intent == Intent.IT
        assert response.classification.confidence == 0.5
        assert "Empty query" in response.classification.reasoning
        assert response.routed_to == "it"
        assert agents[Intent.IT].calls[0][0] == CLARIFICATION_PROMPT
        assert agents[Intent.HR].calls == []

    def test_empty_question_without_it_agent_fails(self):
        orchestrator = Orchestrator(_classifier(None), agents=_agents("hr"))
        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process(""))
        assert exc_info.value.kind == ErrorKind.AGENT_RESOLUTION_FAILURE


# ---------------------------------------------------------------------------
# Test: Single-Topic Path
# ---------------------------------------------------------------------------


class TestSingleTopic:
    """Tests for routing a single-topic question."""

    def test_routes_to_classified_agent(self):
        agents = _agents("hr", "it")
        memory = ListMemory()
        orchestrator = Orchestrator(_classifier(_single(Intent.HR)), agents=agents)

        response = _run(orchestrator.process("What is the leave policy?", memory))

        assert response.intent == Intent.HR
        assert response.intents is None
        assert response.routed_to == "hr"
        assert response.agent_response.answer == "hr answer"
        assert response.handoff_occurred is None
        assert response.handoff_chain is None
        query, passed_memory = agents[Intent.HR].calls[0]
        assert query == "What is the leave policy?"
        assert passed_memory is memory

    def test_missing_agent_falls_back_to_it(self):
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(_classifier(_single(Intent.GENERAL, 0.6)), agents=agents)

        response = _run(orchestrator.process("What's for lunch?"))

        assert response.intent == Intent.GENERAL
        assert response.routed_to == "it"
        assert agents[Intent.IT].calls[0][0] == "What's for lunch?"

    def test_it_fallback_skips_handoff(self):
        it = FakeAgent("it", handoff=_handoff_to(Intent.LEGAL))
        agents = _agents("legal", it=it)
        orchestrator = Orchestrator(_classifier(_single(Intent.GENERAL)), agents=agents)

        response = _run(orchestrator.process("Anything?"))

        assert response.routed_to == "it"
        assert response.handoff_occurred is None
        assert agents[Intent.LEGAL].calls == []

    def test_missing_agent_and_no_it_fails(self):
        orchestrator = Orchestrator(_classifier(_single(Intent.LEGAL)), agents=_agents("hr"))
        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("Is this contract valid?"))
        assert exc_info.value.kind == ErrorKind.AGENT_RESOLUTION_FAILURE

    def test_agent_failure_is_wrapped(self):
        error = RuntimeError("LLM timeout")
        agents = _agents("it", hr=FakeAgent("hr", error=error))
        orchestrator = Orchestrator(_classifier(_single(Intent.HR)), agents=agents)

        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("What is the leave policy?"))
        assert exc_info.value.kind == ErrorKind.AGENT_INVOCATION_FAILURE
        assert exc_info.value.cause is error
        assert exc_info.value.__cause__ is error

    def test_classification_failure_propagates(self):
        classifier = AsyncMock()
        classifier.classify_multi_intent.side_effect = OrchestrationError(
            "Failed to classify intent", ErrorKind.CLASSIFICATION_FAILURE,
        )
        orchestrator = Orchestrator(classifier, agents=_agents("hr", "it"))
        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("What is the leave policy?"))
        assert exc_info.value.kind == ErrorKind.CLASSIFICATION_FAILURE

    def test_degraded_classification_is_used(self):
        outcome = Degraded(
            classification=IntentClassification(intent=Intent.IT, confidence=0.7),
            error=ValueError("bad JSON"),
        )
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(_classifier(outcome), agents=agents)

        response = _run(orchestrator.process("VPN and leave?"))

        assert response.intent == Intent.IT
        assert response.routed_to == "it"


# ---------------------------------------------------------------------------
# Test: Handoff
# ---------------------------------------------------------------------------


class TestHandoff:
    """Tests for agent-to-agent handoff on the single-topic path."""

    QUESTION = "Can HR enforce the non-compete in my contract?"

    def test_handoff_to_requested_agent(self):
        hr = FakeAgent("hr", answer="HR can only share the policy text.",
                       handoff=_handoff_to(Intent.LEGAL))
        legal = FakeAgent("legal", answer="Non-competes are limited to 12 months.")
        agents = _agents("it", hr=hr, legal=legal)
        orchestrator = Orchestrator(_classifier(_single(Intent.HR)), agents=agents)

        response = _run(orchestrator.process(self.QUESTION))

        assert response.handoff_occurred is True
        assert response.handoff_chain == ["hr", "legal"]
        assert response.routed_to == "hr"
        assert response.intent == Intent.HR
        assert response.agent_response.answer == "Non-competes are limited to 12 months."
        prompt = legal.calls[0][0]
        assert "Previous Agent: hr" in prompt
        assert "Previous Response: HR can only share the policy text." in prompt
        assert self.QUESTION in prompt

    def test_unavailable_target_keeps_original_answer(self):
        hr = FakeAgent("hr", handoff=_handoff_to(Intent.LEGAL))
        orchestrator = Orchestrator(_classifier(_single(Intent.HR)), agents=_agents("it", hr=hr))

        response = _run(orchestrator.process(self.QUESTION))

        assert response.handoff_occurred is False
        assert response.handoff_chain is None
        assert response.agent_response.answer == "hr answer"

    def test_failing_target_keeps_original_answer(self):
        hr = FakeAgent("hr", handoff=_handoff_to(Intent.LEGAL))
        legal = FakeAgent("legal", error=RuntimeError("LLM timeout"))
        orchestrator = Orchestrator(
            _classifier(_single(Intent.HR)), agents=_agents(hr=hr, legal=legal),
        )

        response = _run(orchestrator.process(self.QUESTION))

        assert response.handoff_occurred is False
        assert response.agent_response.answer == "hr answer"

    def test_depth_limit_blocks_handoff(self):
        hr = FakeAgent("hr", handoff=_handoff_to(Intent.LEGAL))
        legal = FakeAgent("legal")
        orchestrator = Orchestrator(
            _classifier(_single(Intent.HR)),
            handoff_chain=HandoffChain(max_depth=1),
            agents=_agents(hr=hr, legal=legal),
        )

        response = _run(orchestrator.process(self.QUESTION))

        assert response.handoff_occurred is False
        assert legal.calls == []

    def test_handoff_disabled(self):
        hr = FakeAgent("hr", handoff=_handoff_to(Intent.LEGAL))
        legal = FakeAgent("legal")
        orchestrator = Orchestrator(
            _classifier(_single(Intent.HR)),
            agents=_agents(hr=hr, legal=legal),
            handoff_enabled=False,
        )

        response = _run(orchestrator.process(self.QUESTION))

        assert response.handoff_occurred is None
        assert response.agent_response.handoff_request is not None
        assert legal.calls == []


# ---------------------------------------------------------------------------
# Test: Multi-Topic Path
# ---------------------------------------------------------------------------


class TestMultiTopic:
    """Tests for concurrent fan-out and merging."""

    def test_each_agent_gets_its_sub_query(self):
        agents = _agents("hr", "it", "finance")
        memory = ListMemory()
        classification = _multi(
            (Intent.HR, "What are the health benefits?"),
            (Intent.IT, "How do I reset my password?"),
            primary=Intent.IT,
        )
        orchestrator = Orchestrator(_classifier(classification), agents=agents)

        response = _run(orchestrator.process(
            "What are the health benefits and how do I reset my password?", memory,
        ))

        assert response.intent is None
        assert response.intents == [Intent.HR, Intent.IT]
        assert response.reported_intent == Intent.IT
        assert response.routed_to == ["hr", "it"]
        assert isinstance(response.agent_response, MergedResponse)
        assert response.agent_response.metadata.agents == ["hr", "it"]
        assert [q for q, _ in agents[Intent.HR].calls] == ["What are the health benefits?"]
        assert [q for q, _ in agents[Intent.IT].calls] == ["How do I reset my password?"]
        assert agents[Intent.FINANCE].calls == []

    def test_reported_intent_defaults_to_first_item(self):
        classification = _multi((Intent.FINANCE, "Invoice?"), (Intent.LEGAL, "Contract?"))
        orchestrator = Orchestrator(
            _classifier(classification), agents=_agents("finance", "legal"),
        )
        response = _run(orchestrator.process("Invoice and contract?"))
        assert response.reported_intent == Intent.FINANCE

    def test_merge_strategy_is_applied(self):
        classification = _multi((Intent.HR, "Q1"), (Intent.IT, "Q2"))
        orchestrator = Orchestrator(
            _classifier(classification),
            merger=ResultMerger("structured"),
            agents=_agents("hr", "it"),
        )
        response = _run(orchestrator.process("Q1 and Q2"))
        assert response.agent_response.answer.startswith("# Answer Summary")

    def test_unresolved_items_are_skipped(self):
        classification = _multi((Intent.HR, "Leave?"), (Intent.GENERAL, "Weather?"))
        orchestrator = Orchestrator(_classifier(classification), agents=_agents("hr", "it"))

        response = _run(orchestrator.process("Leave and weather?"))

        assert response.intents == [Intent.HR]
        assert response.routed_to == ["hr"]
        assert "Weather?" not in response.agent_response.answer

    def test_no_resolved_agents_fails(self):
        classification = _multi((Intent.FINANCE, "Invoice?"), (Intent.LEGAL, "Contract?"))
        orchestrator = Orchestrator(_classifier(classification), agents=_agents("hr", "it"))

        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("Invoice and contract?"))
        assert exc_info.value.kind == ErrorKind.EMPTY_RESULT_SET

    def test_one_failure_fails_the_whole_batch(self):
        slow = FakeAgent("hr", delay=5.0)
        error = RuntimeError("knowledge base offline")
        failing = FakeAgent("it", error=error)
        classification = _multi((Intent.HR, "Leave?"), (Intent.IT, "VPN?"))
        orchestrator = Orchestrator(
            _classifier(classification), agents=_agents(hr=slow, it=failing),
        )

        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("Leave and VPN?"))
        assert exc_info.value.kind == ErrorKind.AGENT_INVOCATION_FAILURE
        assert exc_info.value.cause is error
        assert slow.cancelled is True

    def test_failed_batch_leaves_memory_untouched(self):
        memory = BufferMemory()
        fast = FakeAgent("hr")
        failing = FakeAgent("it", error=RuntimeError("VPN gateway down"), delay=0.05)
        classification = _multi((Intent.HR, "Leave?"), (Intent.IT, "VPN?"))
        orchestrator = Orchestrator(
            _classifier(classification), agents=_agents(hr=fast, it=failing),
        )

        with pytest.raises(OrchestrationError):
            _run(orchestrator.process("Leave and VPN?", memory))

        # hr finished first, but its turn must not outlive the failed request
        assert fast.calls
        assert len(memory) == 0

    def test_successful_batch_saves_turns_in_sub_query_order(self):
        memory = BufferMemory()
        slow_hr = FakeAgent("hr", answer="20 days of leave", delay=0.05)
        classification = _multi((Intent.HR, "Leave?"), (Intent.IT, "VPN?"))
        orchestrator = Orchestrator(
            _classifier(classification), agents=_agents("it", hr=slow_hr),
        )

        _run(orchestrator.process("Leave and VPN?", memory))

        turns = _run(memory.load_turns())
        assert [turn.content for turn in turns] == [
            "Leave?", "20 days of leave", "VPN?", "it answer",
        ]

    def test_merge_failure_is_wrapped(self):
        llm = AsyncMock()
        error = RuntimeError("synthesis down")
        llm.complete.side_effect = error
        memory = BufferMemory()
        classification = _multi((Intent.HR, "Leave?"), (Intent.IT, "VPN?"))
        orchestrator = Orchestrator(
            _classifier(classification),
            merger=ResultMerger("llm_synthesis", llm=llm),
            agents=_agents("hr", "it"),
        )

        with pytest.raises(OrchestrationError) as exc_info:
            _run(orchestrator.process("Leave and VPN?", memory))
        assert exc_info.value.kind == ErrorKind.AGENT_INVOCATION_FAILURE
        assert exc_info.value.cause is error
        assert len(memory) == 0

    def test_reported_intent_needs_multi_intent_classification(self):
        response = OrchestratorResponse(
            intents=[Intent.HR],
            classification=IntentClassification(intent=Intent.HR, confidence=0.9),
            routed_to=["hr"],
            agent_response=AgentResponse(
                answer="a",
                metadata=AgentMetadata(
                    agent="hr",
                    model="fake-model",
                    timings=AgentTimings(retrieval_ms=0, llm_generation_ms=0, total_ms=0),
                ),
            ),
        )
        with pytest.raises(TypeError):
            response.reported_intent


# ---------------------------------------------------------------------------
# Test: History Extraction
# ---------------------------------------------------------------------------


class TestHistoryExtraction:
    """Tests for the history handed to the classifier."""

    def test_last_turns_are_passed_without_empty_ones(self):
        turns = [{"role": "user", "content": f"question {i}"} for i in range(11)]
        turns.append({"type": "ai", "content": ""})
        classifier = _classifier(_single(Intent.HR))
        orchestrator = Orchestrator(classifier, agents=_agents("hr", "it"))

        _run(orchestrator.process("And the next one?", ListMemory(turns)))

        question, history = classifier.classify_multi_intent.call_args.args
        assert question == "And the next one?"
        # Last 10 stored turns are 2..10 plus the empty one, which is dropped
        assert [turn.content for turn in history] == [f"question {i}" for i in range(2, 11)]
        assert all(isinstance(turn, ConversationTurn) for turn in history)

    def test_history_limit_is_configurable(self):
        turns = [{"role": "user", "content": f"q{i}"} for i in range(5)]
        classifier = _classifier(_single(Intent.HR))
        orchestrator = Orchestrator(
            classifier, agents=_agents("hr", "it"), history_turn_limit=2,
        )

        _run(orchestrator.process("next?", ListMemory(turns)))

        _, history = classifier.classify_multi_intent.call_args.args
        assert [turn.content for turn in history] == ["q3", "q4"]

    def test_load_failure_is_swallowed(self):
        classifier = _classifier(_single(Intent.HR))
        orchestrator = Orchestrator(classifier, agents=_agents("hr", "it"))

        response = _run(orchestrator.process(
            "What is the leave policy?", ListMemory(error=RuntimeError("redis down")),
        ))

        assert response.routed_to == "hr"
        _, history = classifier.classify_multi_intent.call_args.args
        assert history is None

    def test_no_memory_means_no_history(self):
        classifier = _classifier(_single(Intent.HR))
        orchestrator = Orchestrator(classifier, agents=_agents("hr", "it"))
        _run(orchestrator.process("What is the leave policy?"))
        _, history = classifier.classify_multi_intent.call_args.args
        assert history is None


# ---------------------------------------------------------------------------
# Test: Lazy Agent Resolution
# ---------------------------------------------------------------------------


class TestLazyResolution:
    """Tests for orchestrators backed by an AgentRegistry."""

    def _registry(self, built: list[str], failing: set[str] = frozenset()):
        registry = AgentRegistry()

        def factory_for(name):
            async def factory():
                if name in failing:
                    raise RuntimeError(f"cannot open {name} knowledge base")
                built.append(name)
                return FakeAgent(name)
            return factory

        for name in ("hr", "it", "finance", "legal"):
            registry.register_factory(name, factory_for(name))
        return registry

    def test_agents_built_on_first_use(self):
        built: list[str] = []
        orchestrator = Orchestrator(
            _classifier(_single(Intent.FINANCE)), registry=self._registry(built),
        )
        assert orchestrator.get_agents() == []
        assert orchestrator.agent_names() == ["hr", "it", "finance", "legal"]

        response = _run(orchestrator.process("Where is my refund?"))

        assert response.routed_to == "finance"
        assert built == ["finance"]
        assert [agent.name for agent in orchestrator.get_agents()] == ["finance"]
        assert orchestrator.get_agent("finance") is not None
        assert orchestrator.get_agent("hr") is None

    def test_factory_failure_falls_back_to_it(self):
        built: list[str] = []
        orchestrator = Orchestrator(
            _classifier(_single(Intent.LEGAL)),
            registry=self._registry(built, failing={"legal"}),
        )

        response = _run(orchestrator.process("Is this contract valid?"))

        assert response.routed_to == "it"
        assert built == ["it"]

    def test_custom_agent_names(self):
        registry = AgentRegistry()

        async def factory():
            return FakeAgent("people-ops")

        registry.register_factory("people-ops", factory)
        orchestrator = Orchestrator(
            _classifier(_single(Intent.HR)),
            registry=registry,
            agent_names={Intent.HR: "people-ops"},
        )

        response = _run(orchestrator.process("Leave policy?"))

        assert response.routed_to == "people-ops"


# ---------------------------------------------------------------------------
# Test: Streaming
# ---------------------------------------------------------------------------


def _stream(orchestrator: Orchestrator, question: str, memory=None) -> list[StreamChunk]:
    async def collect():
        return [chunk async for chunk in orchestrator.stream(question, memory)]

    return _run(collect())


def _intent_classifier(intent: Intent, confidence: float = 0.9) -> AsyncMock:
    classifier = AsyncMock()
    classifier.classify_intent.return_value = IntentClassification(
        intent=intent, confidence=confidence,
    )
    return classifier


class TestStreaming:
    """Tests for Orchestrator.stream()."""

    def test_streams_from_classified_agent(self):
        agents = _agents("hr", "it")
        classifier = _intent_classifier(Intent.HR, 0.85)
        orchestrator = Orchestrator(classifier, agents=agents)

        chunks = _stream(orchestrator, "What is the leave policy?")

        assert [c.type for c in chunks] == ["start", "token", "end"]
        assert chunks[0].metadata == {
            "agent": "hr", "intent": "hr", "confidence": 0.85, "routed_to": "hr",
        }
        assert chunks[-1].content == "hr answer"
        classifier.classify_multi_intent.assert_not_called()
        assert agents[Intent.IT].calls == []

    def test_missing_agent_falls_back_to_it(self):
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(_intent_classifier(Intent.GENERAL, 0.6), agents=agents)

        chunks = _stream(orchestrator, "What's for lunch?")

        assert chunks[0].metadata["intent"] == "general"
        assert chunks[0].metadata["routed_to"] == "it"
        assert agents[Intent.IT].calls[0][0] == "What's for lunch?"

    def test_empty_question_streams_clarification(self):
        classifier = _intent_classifier(Intent.HR)
        agents = _agents("hr", "it")
        orchestrator = Orchestrator(classifier, agents=agents)

        chunks = _stream(orchestrator, "   ")

        classifier.classify_intent.assert_not_called()
        assert chunks[0].metadata["routed_to"] == "it"
        assert chunks[0].metadata["confidence"] == 0.5
        assert agents[Intent.IT].calls[0][0] == CLARIFICATION_PROMPT

    def test_history_is_passed_to_classifier(self):
        classifier = _intent_classifier(Intent.IT)
        memory = ListMemory([
            {"role": "user", "content": "My laptop won't boot."},
            {"role": "assistant", "content": "Try holding the power button."},
        ])
        orchestrator = Orchestrator(classifier, agents=_agents("it"))

        _stream(orchestrator, "Still nothing?", memory)

        _, history = classifier.classify_intent.call_args.args
        assert [turn.content for turn in history] == [
            "My laptop won't boot.", "Try holding the power button.",
        ]

    def test_classification_failure_raises_before_first_chunk(self):
        classifier = AsyncMock()
        classifier.classify_intent.side_effect = OrchestrationError(
            "Failed to classify intent", ErrorKind.CLASSIFICATION_FAILURE,
        )
        orchestrator = Orchestrator(classifier, agents=_agents("hr", "it"))

        with pytest.raises(OrchestrationError) as exc_info:
            _stream(orchestrator, "How much leave?")
        assert exc_info.value.kind == ErrorKind.CLASSIFICATION_FAILURE

    def test_no_agent_and_no_it_fails(self):
        orchestrator = Orchestrator(_intent_classifier(Intent.LEGAL), agents=_agents("hr"))
        with pytest.raises(OrchestrationError) as exc_info:
            _stream(orchestrator, "Is this contract valid?")
        assert exc_info.value.kind == ErrorKind.AGENT_RESOLUTION_FAILURE

    def test_agent_error_chunk_is_forwarded(self):
        hr = FakeAgent("hr", error=RuntimeError("vector store offline"))
        orchestrator = Orchestrator(_intent_classifier(Intent.HR), agents=_agents("it", hr=hr))

        chunks = _stream(orchestrator, "How much leave?")

        assert [c.type for c in chunks] == ["start", "error"]
        assert chunks[-1].content == "vector store offline"

    def test_turn_saved_to_memory(self):
        memory = BufferMemory()
        orchestrator = Orchestrator(_intent_classifier(Intent.HR), agents=_agents("hr"))

        _stream(orchestrator, "How much leave?", memory)

        turns = _run(memory.load_turns())
        assert [t.content for t in turns] == ["How much leave?", "hr answer"]
