# =============================================================================
# Response Evaluator — LLM-as-Judge Quality Scores
# =============================================================================
#
# Scores a finished answer on three dimensions plus an overall grade, each
# from 1 to 10:
#
#   relevance:    does the answer address the question?
#   completeness: is enough information given?
#   accuracy:     is the answer supported by the retrieved context?
#
# The judge sees the question, the answer and the source texts the agents
# answered from. Its reply is constrained to the Evaluation schema through
# generate_structured().
#
# DESIGN DECISION: Evaluation never fails the request.
# It is an optional add-on to an answer the user already has. If the judge
# call fails or its reply does not validate, the error is logged and a
# neutral score of 5 on every dimension is returned with the error in
# `reasoning`.
# =============================================================================

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from app.models.orchestration import (
    AgentResponse,
    Evaluation,
    MergedResponse,
    OrchestratorResponse,
)
from app.services.llm import LLMProvider, generate_structured

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 5.0

_EVALUATION_SYSTEM = """You are an evaluation system for customer support \
responses. Evaluate the quality of an answer based on:

1. Relevance: How well does the answer address the question?
2. Completeness: Does the answer provide sufficient information?
3. Accuracy: Is the answer accurate based on the provided context?

Rate each dimension from 1-10, then provide an overall score.
Be strict but fair in your evaluation."""

_EVALUATION_PROMPT = """Question: {question}

Answer: {answer}

Context Sources:
{context}

Evaluate this response:"""


class _EvaluationOutput(BaseModel):
    relevance: float = Field(
        ge=1, le=10, description="How relevant is the answer to the question? (1-10)",
    )
    completeness: float = Field(
        ge=1, le=10, description="How complete is the answer? (1-10)",
    )
    accuracy: float = Field(
        ge=1, le=10,
        description="How accurate is the answer based on the context? (1-10)",
    )
    overall: float = Field(ge=1, le=10, description="Overall quality score (1-10)")
    reasoning: str | None = Field(
        default=None, description="Brief explanation of the scores",
    )


class ResponseEvaluator:
    """Grades answers with an injected LLM provider."""

    def __init__(self, llm: LLMProvider, temperature: float = 0.3) -> None:
        self._llm = llm
        self._temperature = temperature

    async def evaluate(self, question: str, answer: str, context: str) -> Evaluation:
        """Score one answer. Never raises; see the module notes."""
        try:
            result = await generate_structured(
                self._llm,
                _EvaluationOutput,
                system=_EVALUATION_SYSTEM,
                messages=[{
                    "role": "user",
                    "content": _EVALUATION_PROMPT.format(
                        question=question,
                        answer=answer,
                        context=context or "(no sources)",
                    ),
                }],
                temperature=self._temperature,
            )
        except Exception as e:
            logger.error(
                "Failed to evaluate response: %s (question: '%s', "
                "answer_length=%d, context_length=%d)",
                e, question[:80], len(answer), len(context),
            )
            return Evaluation(
                relevance=NEUTRAL_SCORE,
                completeness=NEUTRAL_SCORE,
                accuracy=NEUTRAL_SCORE,
                overall=NEUTRAL_SCORE,
                reasoning=f"Evaluation failed: {e}",
            )

        logger.info(
            "Response evaluated: overall=%.1f (relevance=%.1f, completeness=%.1f, "
            "accuracy=%.1f)",
            result.overall, result.relevance, result.completeness, result.accuracy,
        )
        return Evaluation(**result.model_dump())

    async def evaluate_response(
        self, question: str, response: OrchestratorResponse,
    ) -> OrchestratorResponse:
        """Return `response` with its evaluation attached."""
        evaluation = await self.evaluate(
            question,
            response.agent_response.answer,
            context_from_response(response.agent_response),
        )
        return response.model_copy(update={"evaluation": evaluation})


def context_from_response(agent_response: AgentResponse | MergedResponse) -> str:
    """
    Join the source texts behind an answer into one context string.

    Single-agent answers carry their sources directly; merged answers carry
    them grouped per intent.
    """
    if isinstance(agent_response, MergedResponse):
        texts = [
            source.text
            for group in agent_response.sources
            for source in group.sources
        ]
    else:
        texts = [source.text for source in agent_response.sources]
    return "\n\n".join(text for text in texts if text)
