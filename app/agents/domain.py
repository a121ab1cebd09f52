# =============================================================================
# Domain Agents — Knowledge-Base-Bound Answer Generation
# =============================================================================
#
# A domain agent answers questions for one department (HR, IT, Finance,
# Legal) from that department's knowledge base:
#
#   retrieve chunks ──▶ format numbered context ──▶ LLM answer ──▶ response
#
# DESIGN DECISION: Composition over subclassing.
# All four agents behave identically; only their profile (name, topics,
# knowledge-base collection) differs. One DomainAgent class takes an
# AgentProfile, a Retriever and an LLMProvider.
#
# DESIGN DECISION: Handoff via a trailing directive line.
# The system prompt tells the model to end its reply with
#   HANDOFF: <department> | <reason> | <context for the next agent>
# when the question belongs elsewhere. The line is stripped from the
# answer and parsed into a HandoffRequest. A malformed directive is
# dropped; the answer is still returned.
#
# DESIGN DECISION: Context formatted with numbered references.
# Chunks are presented as [1], [2], etc. so the LLM can cite sources.
#
# STREAMING: `stream()` runs the same pipeline but emits StreamChunk events
# (start, retrieval, token..., end) as the LLM produces text. A line that
# could become a HANDOFF directive is held back until it is known not to
# be one, so directives never reach the client.
# =============================================================================

from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from app.config import Settings, settings
from app.models.orchestration import (
    AgentMetadata,
    AgentResponse,
    AgentTimings,
    HandoffReason,
    HandoffRequest,
    Intent,
    Source,
    StreamChunk,
    TokenUsage,
)
from app.services.llm import LLMProvider, LLMResponse
from app.services.memory import ConversationMemory, normalise_turn
from app.services.retriever import RetrievedDocument, Retriever

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class Agent(Protocol):
    """
    What the orchestrator needs from an answering pipeline.

    `name` is the stable identifier used in routing and merge metadata.
    `invoke()` must raise on failure rather than return an empty answer.
    `stream()` reports failure as a final error chunk instead.
    """

    name: str

    async def invoke(
        self,
        query: str,
        memory: ConversationMemory | None = None,
    ) -> AgentResponse:
        ...

    def stream(
        self,
        query: str,
        memory: ConversationMemory | None = None,
    ) -> AsyncIterator[StreamChunk]:
        ...


# ---------------------------------------------------------------------------
# Agent Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentProfile:
    """Configuration that distinguishes one domain agent from another."""

    name: str
    intent: Intent
    display_name: str
    description: str
    topics: str
    collection: str


def default_profiles(config: Settings | None = None) -> dict[Intent, AgentProfile]:
    """The four department profiles, with collections taken from settings."""
    config = config or settings
    return {
        Intent.HR: AgentProfile(
            name="hr",
            intent=Intent.HR,
            display_name="HR",
            description=(
                "Handles HR-related queries including benefits, leave "
                "policies, and employee handbook questions"
            ),
            topics=(
                "benefits, leave policies, employee handbook, onboarding, "
                "performance reviews"
            ),
            collection=config.hr_collection,
        ),
        Intent.IT: AgentProfile(
            name="it",
            intent=Intent.IT,
            display_name="IT Support",
            description=(
                "Handles IT support queries including password resets, "
                "software and hardware issues, and access requests"
            ),
            topics=(
                "password reset, software issues, hardware problems, access "
                "requests, technical troubleshooting"
            ),
            collection=config.it_collection,
        ),
        Intent.FINANCE: AgentProfile(
            name="finance",
            intent=Intent.FINANCE,
            display_name="Finance",
            description=(
                "Handles finance and billing queries including invoices, "
                "refunds, payment methods, and expense reports"
            ),
            topics=(
                "invoices, billing, refunds, payment methods, expense "
                "reports, pricing"
            ),
            collection=config.finance_collection,
        ),
        Intent.LEGAL: AgentProfile(
            name="legal",
            intent=Intent.LEGAL,
            display_name="Legal",
            description=(
                "Handles legal and compliance queries including terms of "
                "service, privacy policy, and contracts"
            ),
            topics=(
                "terms of service, privacy policy, compliance requirements, "
                "legal documents, contracts"
            ),
            collection=config.legal_collection,
        ),
    }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """You are the {display_name} support assistant for the \
company. You handle: {topics}.

Rules:
- Answer using ONLY the provided context
- Cite sources using [1], [2], etc. matching the chunk numbers
- If the context doesn't contain enough information, say so
- Be concise and accurate
- Use the previous conversation, if any, to understand follow-up questions

If the question (or part of it) belongs to another department, answer what \
you can and end your reply with exactly one line in this format:
HANDOFF: <hr|it|finance|legal> | <out_of_scope|low_confidence|\
requires_expertise|user_request|incomplete_answer> | <what the other \
department needs to know>
Omit the HANDOFF line when you can answer fully."""

NO_DOCUMENTS_ANSWER = (
    "I couldn't find relevant information to answer your question."
)

_HANDOFF_RE = re.compile(
    r"^\s*HANDOFF:\s*(?P<agent>[\w-]+)\s*\|\s*(?P<reason>[\w-]+)\s*"
    r"(?:\|\s*(?P<context>.*))?$",
    re.IGNORECASE | re.MULTILINE,
)


# ---------------------------------------------------------------------------
# Domain Agent
# ---------------------------------------------------------------------------


class DomainAgent:
    """A retrieval-augmented answering pipeline for one department."""

    def __init__(
        self,
        profile: AgentProfile,
        retriever: Retriever,
        llm: LLMProvider,
        history_turn_limit: int = 10,
    ) -> None:
        self.profile = profile
        self._retriever = retriever
        self._llm = llm
        self._history_turn_limit = history_turn_limit
        logger.debug("Agent initialized: %s", profile.name)

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def description(self) -> str:
        return self.profile.description

    async def invoke(
        self,
        query: str,
        memory: ConversationMemory | None = None,
    ) -> AgentResponse:
        """
        Answer `query` from this agent's knowledge base.

        Retrieval and LLM errors propagate unchanged; the orchestrator
        decides what they mean for the request.
        """
        logger.info("Agent %s processing question: '%s'", self.name, query[:80])

        start = time.monotonic()
        documents = await self._retriever.retrieve(query)
        retrieval_ms = int((time.monotonic() - start) * 1000)

        llm_start = time.monotonic()
        if not documents:
            logger.info("Agent %s: no documents retrieved", self.name)
            answer = NO_DOCUMENTS_ANSWER
            model = "n/a"
            token_usage = None
            handoff = None
        else:
            history = await self._load_history(memory)
            user_message = _user_message(query, documents)
            response = await self._llm.complete(
                messages=history + [{"role": "user", "content": user_message}],
                system=self._system_prompt(),
            )
            answer, handoff = _split_handoff(response.content, self.profile.intent)
            model = response.model
            token_usage = _token_usage(response)
        llm_ms = int((time.monotonic() - llm_start) * 1000)

        if memory is not None:
            await memory.save_context(query, answer)

        logger.info(
            "Agent %s complete: model=%s, sources=%d, handoff=%s",
            self.name, model, len(documents),
            handoff.requested_agent.value if handoff else None,
        )

        return AgentResponse(
            answer=answer,
            sources=[_to_source(doc) for doc in documents],
            metadata=AgentMetadata(
                agent=self.name,
                model=model,
                token_usage=token_usage,
                timings=AgentTimings(
                    retrieval_ms=retrieval_ms,
                    llm_generation_ms=llm_ms,
                    total_ms=retrieval_ms + llm_ms,
                ),
            ),
            handoff_request=handoff,
            confidence=_confidence(documents),
        )

    async def stream(
        self,
        query: str,
        memory: ConversationMemory | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Answer `query` as a stream of StreamChunk events.

        Emits start, retrieval, token... and end. The end chunk carries the
        final answer (HANDOFF directive removed), any handoff request,
        timings and sources. A failure is reported as a single error chunk
        and ends the stream.
        """
        logger.info("Agent %s streaming question: '%s'", self.name, query[:80])
        start = time.monotonic()

        try:
            yield StreamChunk(type="start", metadata={"agent": self.name})

            documents = await self._retriever.retrieve(query)
            retrieval_ms = int((time.monotonic() - start) * 1000)
            yield StreamChunk(
                type="retrieval",
                metadata={"document_count": len(documents), "search_time_ms": retrieval_ms},
            )

            llm_start = time.monotonic()
            model = "n/a"
            token_usage = None
            if not documents:
                text = NO_DOCUMENTS_ANSWER
                yield StreamChunk(type="token", content=text)
            else:
                history = await self._load_history(memory)
                user_message = _user_message(query, documents)
                directive_filter = _DirectiveFilter()
                text = ""
                async for item in self._llm.stream(
                    messages=history + [{"role": "user", "content": user_message}],
                    system=self._system_prompt(),
                ):
                    if isinstance(item, LLMResponse):
                        text = item.content
                        model = item.model
                        token_usage = _token_usage(item)
                        continue
                    visible = directive_filter.feed(item)
                    if visible:
                        yield StreamChunk(type="token", content=visible)
                tail = directive_filter.finish()
                if tail:
                    yield StreamChunk(type="token", content=tail)
            llm_ms = int((time.monotonic() - llm_start) * 1000)

            answer, handoff = _split_handoff(text, self.profile.intent)
            if memory is not None:
                await memory.save_context(query, answer)

            yield StreamChunk(
                type="end",
                content=answer,
                metadata={
                    "agent": self.name,
                    "model": model,
                    "token_usage": token_usage.model_dump() if token_usage else None,
                    "timings": AgentTimings(
                        retrieval_ms=retrieval_ms,
                        llm_generation_ms=llm_ms,
                        total_ms=retrieval_ms + llm_ms,
                    ).model_dump(),
                    "sources": [_to_source(doc).model_dump() for doc in documents],
                    "handoff_request": handoff.model_dump(mode="json") if handoff else None,
                },
            )
        except Exception as e:
            logger.error("Agent %s streaming failed: %s", self.name, e)
            yield StreamChunk(
                type="error",
                content=str(e) or "An error occurred during streaming",
                metadata={"agent": self.name},
            )

    def _system_prompt(self) -> str:
        return _SYSTEM_PROMPT.format(
            display_name=self.profile.display_name,
            topics=self.profile.topics,
        )

    async def _load_history(
        self, memory: ConversationMemory | None,
    ) -> list[dict[str, str]]:
        """Recent user/assistant turns as chat messages, starting with a user turn."""
        if memory is None or self._history_turn_limit == 0:
            return []
        turns = [normalise_turn(item) for item in await memory.load_turns()]
        messages = [
            {"role": turn.role, "content": turn.content}
            for turn in turns[-self._history_turn_limit:]
            if turn is not None
            and turn.role in ("user", "assistant")
            and turn.content
        ]
        while messages and messages[0]["role"] != "user":
            messages.pop(0)
        return messages


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _format_context(documents: list[RetrievedDocument]) -> str:
    """
    Format retrieved chunks as numbered context for the LLM.

    Example output:
        [1] (benefits.md):
        Employees are eligible for health insurance from day one...

        ---

        [2]:
        Dental coverage is optional...
    """
    sections = []
    for i, doc in enumerate(documents, 1):
        source_label = f" ({doc.source})" if doc.source else ""
        sections.append(f"[{i}]{source_label}:\n{doc.content}")
    return "\n\n---\n\n".join(sections)


def _user_message(query: str, documents: list[RetrievedDocument]) -> str:
    return (
        f"Context ({len(documents)} document chunks):\n\n"
        f"{_format_context(documents)}\n\n"
        f"Question: {query}"
    )


def _token_usage(response: LLMResponse) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=response.input_tokens,
        completion_tokens=response.output_tokens,
        total_tokens=response.input_tokens + response.output_tokens,
    )


def _split_handoff(
    text: str, own_intent: Intent,
) -> tuple[str, HandoffRequest | None]:
    """Strip a HANDOFF directive from the reply and parse it."""
    matches = list(_HANDOFF_RE.finditer(text))
    if not matches:
        return text.strip(), None

    # Only the last directive counts
    match = matches[-1]
    answer = (text[: match.start()] + text[match.end():]).strip()

    try:
        target = Intent(match.group("agent").lower())
    except ValueError:
        logger.warning(
            "Ignoring handoff to unknown department '%s'", match.group("agent"),
        )
        return answer, None
    if target == own_intent:
        return answer, None

    try:
        reason = HandoffReason(match.group("reason").lower())
    except ValueError:
        reason = HandoffReason.OUT_OF_SCOPE

    return answer, HandoffRequest(
        requested_agent=target,
        reason=reason,
        context=(match.group("context") or "").strip(),
        partial_answer=answer or None,
    )


class _DirectiveFilter:
    """
    Passes streamed text through while holding back HANDOFF lines.

    A line is held only while it could still turn into a directive. Once
    it clearly cannot, it is released and the rest of the line streams
    straight through. A complete directive line is dropped.
    """

    _MARKER = "HANDOFF:"

    def __init__(self) -> None:
        self._held = ""
        self._passing = False

    def feed(self, text: str) -> str:
        out = []
        for piece in text.splitlines(keepends=True):
            if self._passing:
                out.append(piece)
            else:
                self._held += piece
                head = self._held.lstrip().upper()
                if head and not (
                    head.startswith(self._MARKER) or self._MARKER.startswith(head)
                ):
                    out.append(self._held)
                    self._held = ""
                    self._passing = True
            if piece.endswith("\n"):
                out.append(self._release())
                self._passing = False
        return "".join(out)

    def finish(self) -> str:
        return self._release()

    def _release(self) -> str:
        held, self._held = self._held, ""
        if _HANDOFF_RE.match(held.rstrip("\n")):
            return ""
        return held


def _to_source(doc: RetrievedDocument) -> Source:
    return Source(
        id=doc.id,
        text=doc.content,
        source_id=doc.source,
        score=doc.similarity_score,
        metadata=doc.metadata,
    )


def _confidence(documents: list[RetrievedDocument]) -> float | None:
    """Best retrieval similarity, clamped to [0, 1]."""
    if not documents:
        return None
    best = max(doc.similarity_score for doc in documents)
    return min(max(best, 0.0), 1.0)
