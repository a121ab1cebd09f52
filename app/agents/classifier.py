# =============================================================================
# Intent Classifier — Single and Multi-Intent Routing Decisions
# =============================================================================
#
# Turns a raw question (plus optional conversation history) into either:
#   - IntentClassification       — one topic, one agent
#   - MultiIntentClassification  — several topics, one sub-query each
#
# DESIGN DECISION: LLM classification with structured output.
# Support questions are phrased far too freely for keyword rules, and
# follow-ups ("How do I apply?") only make sense next to the transcript.
# The reply is validated against a Pydantic schema whose `intent` field is
# the closed Intent enum, so an arbitrary string can never leak through.
#
# DESIGN DECISION: The fallback is part of the return type.
# classify_multi_intent() returns Detected(...) when multi-intent
# detection worked, or Degraded(...) carrying a single-intent
# classification and the error that forced the fallback. The orchestrator
# never has to catch anything to find out which path ran.
#
# DESIGN DECISION: Normalise at construction time.
# A "multi" answer with a single distinct intent is collapsed into an
# IntentClassification before anything downstream sees it, so callers only
# ever branch on two shapes. Duplicate intents are folded into one item
# because results are keyed by intent when they are merged.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from app.errors import ErrorKind, OrchestrationError
from app.models.orchestration import (
    Intent,
    IntentClassification,
    MultiIntentClassification,
    MultiIntentItem,
)
from app.services.llm import LLMProvider, generate_structured
from app.services.memory import normalise_turn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_CATEGORIES = """\
- hr: Human resources questions (benefits, leave policies, employee \
handbook, onboarding, performance reviews)
- it: IT support questions (password reset, software issues, hardware \
problems, access requests, technical troubleshooting)
- finance: Finance and billing questions (invoices, billing, refunds, \
payment methods, expense reports, pricing)
- legal: Legal and compliance questions (terms of service, privacy \
policy, compliance requirements, legal documents, contracts)
- general: General questions that don't fit into the above categories"""

_CLASSIFICATION_SYSTEM = f"""You are an intent classification system for a \
customer support chatbot.
Classify user queries into one of these categories:

{_CATEGORIES}

Be precise and choose the most appropriate category. If a query could fit \
multiple categories, choose the primary intent.
If a previous conversation is provided and the new query is a short \
follow-up (for example "How do I apply?"), classify it into the category of \
the topic being discussed.
Give a confidence between 0 and 1 and a one-line reasoning."""

_MULTI_INTENT_SYSTEM = f"""You are an intent analysis system for a customer \
support chatbot. Each category is answered by a different specialist:

{_CATEGORIES}

Decide whether the query covers more than one distinct topic.
- If it does, return one item per topic with its own category, confidence \
and a self-contained sub_query that can be answered without the rest of \
the original query (repeat any subject the sub-question depends on). Set \
requires_multiple_agents to true and primary_intent to the most important \
category.
- If it does not, return exactly one item whose sub_query is the full \
query and set requires_multiple_agents to false.
- When unsure whether a query is one topic or two, split it.
If a previous conversation is provided, use it to resolve follow-up \
questions."""


# ---------------------------------------------------------------------------
# Structured Output Schemas
# ---------------------------------------------------------------------------


class _IntentOutput(BaseModel):
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence score between 0 and 1")
    reasoning: str | None = Field(default=None, description="Brief explanation of the classification")


class _MultiIntentItemOutput(BaseModel):
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    sub_query: str = Field(min_length=1, description="Self-contained question for this topic")
    reasoning: str | None = None


class _MultiIntentOutput(BaseModel):
    intents: list[_MultiIntentItemOutput] = Field(min_length=1)
    requires_multiple_agents: bool
    primary_intent: Intent | None = None


# ---------------------------------------------------------------------------
# Outcome Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Detected:
    """Multi-intent detection succeeded (the result may still be single)."""

    classification: IntentClassification | MultiIntentClassification


@dataclass(frozen=True)
class Degraded:
    """Multi-intent detection failed; single-intent classification was used."""

    classification: IntentClassification
    error: Exception


MultiIntentOutcome = Detected | Degraded


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class IntentClassifier:
    """Classifies questions with an injected LLM provider."""

    def __init__(
        self,
        llm: LLMProvider,
        history_turn_limit: int = 10,
        temperature: float = 0.1,
        max_tokens: int = 1024,
    ) -> None:
        self._llm = llm
        self._history_turn_limit = history_turn_limit
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def classify_intent(
        self,
        question: str,
        history: Sequence[Any] | None = None,
    ) -> IntentClassification:
        """
        Classify `question` into exactly one Intent.

        Raises:
            OrchestrationError: kind CLASSIFICATION_FAILURE when the LLM call
                fails or its reply does not validate. Not retried here.
        """
        prompt = self._build_prompt(question, history)
        try:
            result = await generate_structured(
                self._llm,
                _IntentOutput,
                system=_CLASSIFICATION_SYSTEM,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            logger.error(
                "Failed to classify intent: %s (question: '%s')",
                e, question[:80],
            )
            raise OrchestrationError(
                "Failed to classify intent",
                ErrorKind.CLASSIFICATION_FAILURE,
                cause=e,
            ) from e

        logger.debug(
            "Intent classified: %s (confidence=%.2f, question: '%s')",
            result.intent.value, result.confidence, question[:80],
        )
        return IntentClassification(
            intent=result.intent,
            confidence=result.confidence,
            reasoning=result.reasoning,
        )

    async def classify_multi_intent(
        self,
        question: str,
        history: Sequence[Any] | None = None,
    ) -> MultiIntentOutcome:
        """
        Detect whether `question` spans several topics and decompose it.

        Any failure of the multi-intent call falls back to
        classify_intent() on the same input and is reported as Degraded.
        Only a failure of that fallback raises.
        """
        prompt = self._build_prompt(question, history)
        try:
            result = await generate_structured(
                self._llm,
                _MultiIntentOutput,
                system=_MULTI_INTENT_SYSTEM,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
            classification = normalise_multi_intent(result)
        except Exception as e:
            logger.warning(
                "Multi-intent classification failed, falling back to "
                "single intent: %s",
                e,
            )
            single = await self.classify_intent(question, history)
            return Degraded(classification=single, error=e)

        if isinstance(classification, MultiIntentClassification):
            logger.info(
                "Multi-intent detected: %s (question: '%s')",
                [item.intent.value for item in classification.intents],
                question[:80],
            )
        return Detected(classification=classification)

    def _build_prompt(self, question: str, history: Sequence[Any] | None) -> str:
        transcript = format_history(history, self._history_turn_limit)
        if transcript:
            logger.debug(
                "Classifying with conversation context (question: '%s')",
                question[:80],
            )
            return (
                f"Previous conversation:\n{transcript}\n\n"
                f"Classify this query: {question}"
            )
        return f"Classify this query: {question}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_history(history: Sequence[Any] | None, limit: int = 10) -> str:
    """
    Render the last `limit` turns as "role: content" lines.

    Turns without content are skipped. Returns "" when there is nothing
    to show.
    """
    if not history or limit <= 0:
        return ""
    turns = [normalise_turn(item) for item in history]
    lines = [
        f"{turn.role}: {turn.content}"
        for turn in turns
        if turn is not None and turn.content.strip()
    ]
    return "\n".join(lines[-limit:])


def normalise_multi_intent(
    result: _MultiIntentOutput,
) -> IntentClassification | MultiIntentClassification:
    """
    Build the classification variant from a raw multi-intent reply.

    - Items sharing an intent are folded into one (sub-queries joined,
      highest confidence kept).
    - One distinct intent → IntentClassification.
    - Several distinct intents → MultiIntentClassification, even if the
      model set requires_multiple_agents to false: splitting is preferred
      over silently dropping a topic.
    """
    folded: dict[Intent, MultiIntentItem] = {}
    for item in result.intents:
        existing = folded.get(item.intent)
        if existing is None:
            folded[item.intent] = MultiIntentItem(
                intent=item.intent,
                confidence=item.confidence,
                sub_query=item.sub_query.strip(),
                reasoning=item.reasoning,
            )
            continue
        reasons = [r for r in (existing.reasoning, item.reasoning) if r]
        folded[item.intent] = MultiIntentItem(
            intent=item.intent,
            confidence=max(existing.confidence, item.confidence),
            sub_query=f"{existing.sub_query} {item.sub_query.strip()}",
            reasoning="; ".join(reasons) or None,
        )

    items = list(folded.values())
    if len(items) == 1:
        only = items[0]
        return IntentClassification(
            intent=only.intent,
            confidence=only.confidence,
            reasoning=only.reasoning,
        )

    if not result.requires_multiple_agents:
        logger.info(
            "Model reported a single topic but returned %d intents; splitting",
            len(items),
        )

    primary = result.primary_intent if result.primary_intent in folded else None
    return MultiIntentClassification(
        intents=items,
        requires_multiple_agents=True,
        primary_intent=primary,
    )
