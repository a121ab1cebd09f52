# =============================================================================
# Result Merger — Combining Answers From Several Agents
# =============================================================================
#
# A multi-topic query produces one AgentResponse per intent. The merger
# turns them into a single MergedResponse using one of three strategies:
#
#   concatenation  — "[INTENT - sub-query]" sections joined by a "---"
#                    separator. Fast, lossless, no extra LLM call.
#   llm_synthesis  — one extra LLM call writes a single coherent answer.
#                    Slower, may trade verbatim detail for coherence.
#   structured     — markdown: "# Answer Summary" then "## INTENT: ..."
#                    subsections.
#
# Sources are aggregated the same way for every strategy: one entry per
# intent, in sub-query order, carrying that agent's own sources.
#
# TIMING:
#   execution_ms = sum of each agent's total_ms (the agents ran in
#                  parallel, but wall-clock is not tracked separately)
#   merge_ms     = time spent inside merge()
#   total_ms     = execution_ms + merge_ms
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence

from app.models.orchestration import (
    AgentResponse,
    Intent,
    IntentSources,
    MergedMetadata,
    MergedResponse,
    MergeStrategy,
    MergeTimings,
    MultiIntentItem,
)
from app.services.llm import LLMProvider

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"

_SYNTHESIS_SYSTEM = """You are synthesizing answers from multiple \
specialized support agents into a coherent, unified response.

Original question: {original_query}

You have received answers from {agent_count} different agents. Combine \
them into a single, well-structured answer that:
1. Addresses every aspect of the original question
2. Maintains accuracy and completeness
3. Organizes information logically
4. Preserves important details from each agent
5. Eliminates redundancy

If answers conflict, prefer the most specific source and note the conflict."""


class ResultMerger:
    """Merges per-intent agent responses under a fixed strategy."""

    def __init__(
        self,
        strategy: MergeStrategy | str = MergeStrategy.CONCATENATION,
        llm: LLMProvider | None = None,
        synthesis_temperature: float | None = None,
    ) -> None:
        self.strategy = MergeStrategy(strategy)
        if self.strategy is MergeStrategy.LLM_SYNTHESIS and llm is None:
            raise ValueError("llm_synthesis merge strategy requires an LLM provider")
        self._llm = llm
        self._synthesis_temperature = synthesis_temperature

    async def merge(
        self,
        results: Mapping[Intent, AgentResponse],
        original_query: str,
        sub_queries: Sequence[MultiIntentItem],
    ) -> MergedResponse:
        """
        Combine `results` into one response.

        `sub_queries` fixes the order of sections, sources and intents.
        Sub-queries with no entry in `results` are left out.
        """
        start = time.monotonic()
        ordered = [
            (item.intent, item.sub_query, results[item.intent])
            for item in sub_queries
            if item.intent in results
        ]

        if self.strategy is MergeStrategy.LLM_SYNTHESIS:
            answer = await self._synthesize(ordered, original_query)
        elif self.strategy is MergeStrategy.STRUCTURED:
            answer = _structured(ordered)
        else:
            answer = _concatenate(ordered)

        merge_ms = int((time.monotonic() - start) * 1000)
        execution_ms = sum(
            response.metadata.timings.total_ms for response in results.values()
        )

        merged = MergedResponse(
            answer=answer,
            sources=[
                IntentSources(
                    intent=intent,
                    agent=response.metadata.agent,
                    sources=response.sources,
                )
                for intent, _, response in ordered
            ],
            metadata=MergedMetadata(
                agents=[response.metadata.agent for _, _, response in ordered],
                intents=[intent for intent, _, _ in ordered],
                merge_strategy=self.strategy,
                timings=MergeTimings(
                    execution_ms=execution_ms,
                    merge_ms=merge_ms,
                    total_ms=execution_ms + merge_ms,
                ),
            ),
        )

        logger.info(
            "Results merged: strategy=%s, agents=%s, merge_ms=%d, total_ms=%d",
            self.strategy.value, merged.metadata.agents,
            merge_ms, merged.metadata.timings.total_ms,
        )
        return merged

    async def _synthesize(
        self,
        ordered: list[tuple[Intent, str, AgentResponse]],
        original_query: str,
    ) -> str:
        responses_text = SECTION_SEPARATOR.join(
            f"Agent: {response.metadata.agent} ({intent.value})\n"
            f"Question: {sub_query}\n"
            f"Answer: {response.answer}"
            for intent, sub_query, response in ordered
        )
        result = await self._llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"Agent Responses:\n\n{responses_text}\n\n"
                    "Please synthesize these into a single, coherent answer "
                    f"to the original question: {original_query}"
                ),
            }],
            system=_SYNTHESIS_SYSTEM.format(
                original_query=original_query,
                agent_count=len(ordered),
            ),
            temperature=self._synthesis_temperature,
        )
        return result.content


def _concatenate(ordered: list[tuple[Intent, str, AgentResponse]]) -> str:
    return SECTION_SEPARATOR.join(
        f"[{intent.value.upper()} - {sub_query}]\n\n{response.answer}"
        for intent, sub_query, response in ordered
    )


def _structured(ordered: list[tuple[Intent, str, AgentResponse]]) -> str:
    sections = ["# Answer Summary\n"]
    sections.extend(
        f"## {intent.value.upper()}: {sub_query}\n\n{response.answer}\n"
        for intent, sub_query, response in ordered
    )
    return "\n".join(sections)
