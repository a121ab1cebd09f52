# =============================================================================
# Orchestration Records — Pydantic V2 Schemas
# =============================================================================
#
# The records that flow through a single request: classification results,
# agent answers, handoff requests, merged multi-agent answers and the
# top-level response handed back to callers.
#
# DESIGN DECISION: Frozen models.
# Every record is created once per request and never mutated. `frozen=True`
# turns accidental attribute assignment into an error.
#
# DESIGN DECISION: Tagged classification union.
# IntentClassification and MultiIntentClassification carry a `kind`
# discriminator ("single" / "multi"). The orchestrator branches on the
# variant type, and the one-item multi case is collapsed by the classifier
# before a variant is ever constructed.
# =============================================================================

from __future__ import annotations

import enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Intent(str, enum.Enum):
    """Closed set of query categories. Also the routing key to an agent."""

    HR = "hr"
    IT = "it"
    FINANCE = "finance"
    LEGAL = "legal"
    GENERAL = "general"


class HandoffReason(str, enum.Enum):
    OUT_OF_SCOPE = "out_of_scope"
    LOW_CONFIDENCE = "low_confidence"
    REQUIRES_EXPERTISE = "requires_expertise"
    USER_REQUEST = "user_request"
    INCOMPLETE_ANSWER = "incomplete_answer"


class MergeStrategy(str, enum.Enum):
    CONCATENATION = "concatenation"
    LLM_SYNTHESIS = "llm_synthesis"
    STRUCTURED = "structured"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class IntentClassification(_Record):
    """A single-topic classification."""

    kind: Literal["single"] = "single"
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str | None = None


class MultiIntentItem(_Record):
    """One sub-topic of a multi-topic query, with a self-contained sub-query."""

    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    sub_query: str = Field(min_length=1)
    reasoning: str | None = None


class MultiIntentClassification(_Record):
    """A query decomposed into sub-queries for several agents."""

    kind: Literal["multi"] = "multi"
    intents: list[MultiIntentItem] = Field(min_length=1)
    requires_multiple_agents: bool = True
    primary_intent: Intent | None = None

    @property
    def reported_intent(self) -> Intent:
        """primary_intent when supplied, otherwise the first item's intent."""
        return self.primary_intent or self.intents[0].intent


Classification = Annotated[
    IntentClassification | MultiIntentClassification,
    Field(discriminator="kind"),
]


class ConversationTurn(_Record):
    role: Literal["user", "assistant", "system"]
    content: str


# ---------------------------------------------------------------------------
# Agent Responses
# ---------------------------------------------------------------------------


class Source(_Record):
    """A retrieved document chunk cited by an agent answer."""

    id: str
    text: str
    source_id: str = ""
    score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(_Record):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AgentTimings(_Record):
    retrieval_ms: int = 0
    llm_generation_ms: int = 0
    total_ms: int = 0


class AgentMetadata(_Record):
    agent: str
    model: str
    token_usage: TokenUsage | None = None
    timings: AgentTimings = Field(default_factory=AgentTimings)


class HandoffRequest(_Record):
    """Signals that an agent cannot fully answer and names who should."""

    requested_agent: Intent
    reason: HandoffReason
    context: str = ""
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    partial_answer: str | None = None


class AgentResponse(_Record):
    """The result of exactly one agent invocation."""

    answer: str
    sources: list[Source] = Field(default_factory=list)
    metadata: AgentMetadata
    handoff_request: HandoffRequest | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Merged Responses (multi-topic path)
# ---------------------------------------------------------------------------


class IntentSources(_Record):
    intent: Intent
    agent: str
    sources: list[Source] = Field(default_factory=list)


class MergeTimings(_Record):
    execution_ms: int = 0  # Sum of per-agent total_ms
    merge_ms: int = 0      # Wall-clock spent inside merge()
    total_ms: int = 0      # execution_ms + merge_ms


class MergedMetadata(_Record):
    agents: list[str]
    intents: list[Intent]
    merge_strategy: MergeStrategy
    timings: MergeTimings


class MergedResponse(_Record):
    answer: str
    sources: list[IntentSources] = Field(default_factory=list)
    metadata: MergedMetadata


# ---------------------------------------------------------------------------
# Quality Evaluation
# ---------------------------------------------------------------------------


class Evaluation(_Record):
    """LLM-as-judge scores for one answer, each from 1 to 10."""

    relevance: float = Field(ge=1, le=10)
    completeness: float = Field(ge=1, le=10)
    accuracy: float = Field(ge=1, le=10)
    overall: float = Field(ge=1, le=10)
    reasoning: str | None = None


# ---------------------------------------------------------------------------
# Top-level Response
# ---------------------------------------------------------------------------


class OrchestratorResponse(_Record):
    """
    Caller-facing result of `Orchestrator.process()`.

    Single-topic answers set `intent`; multi-topic answers set `intents`.
    Never both.
    """

    intent: Intent | None = None
    intents: list[Intent] | None = None
    classification: Classification
    routed_to: str | list[str]
    agent_response: AgentResponse | MergedResponse
    handoff_occurred: bool | None = None
    handoff_chain: list[str] | None = None
    # Set only when the caller asked for a quality evaluation
    evaluation: Evaluation | None = None

    @model_validator(mode="after")
    def _exactly_one_intent_field(self) -> OrchestratorResponse:
        if (self.intent is None) == (self.intents is None):
            raise ValueError("Exactly one of 'intent' or 'intents' must be set")
        return self

    @property
    def reported_intent(self) -> Intent:
        """The single intent to report for this request, whichever path ran."""
        if self.intent is not None:
            return self.intent
        if not isinstance(self.classification, MultiIntentClassification):
            raise TypeError("Multi-topic response without a multi-intent classification")
        return self.classification.reported_intent


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


StreamChunkType = Literal["start", "retrieval", "token", "end", "error"]


class StreamChunk(_Record):
    """
    One event of a streamed answer.

    A stream is `start`, `retrieval`, any number of `token` chunks, then
    `end` with the final answer, timings and sources. A failure at any
    point ends the stream with a single `error` chunk instead.
    """

    type: StreamChunkType
    content: str | None = None
    metadata: dict[str, Any] | None = None
