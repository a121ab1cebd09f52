# =============================================================================
# Handoff Chain — Agent-to-Agent Delegation
# =============================================================================
#
# When an agent answers with a HandoffRequest ("this belongs to Legal"),
# the orchestrator passes the query to the requested agent through this
# chain. The target receives a composite prompt carrying everything the
# first agent knew: the original query, who handed off and why, the
# partial answer and the handoff context.
#
# LOOP & DEPTH PROTECTION:
#   is_handoff_allowed() rejects a target that already appears in the chain
#   and rejects any handoff once the chain holds `max_depth` agents.
#   Depth is checked against the chain recorded so far, so with the default
#   max_depth=2 a chain of ["hr"] may hand off once, and ["hr", "legal"]
#   may not hand off again. That is one hop, not two.
#
# The chain itself is not recorded inside the AgentResponse; the
# orchestrator attaches `handoff_chain` to its own response.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.agents.domain import Agent
from app.models.orchestration import (
    AgentResponse,
    ConversationTurn,
    HandoffRequest,
)
from app.services.memory import ConversationMemory

logger = logging.getLogger(__name__)


_HANDOFF_PROMPT = """system: You are receiving a handoff from another \
support agent.

Previous Context:
- Original Query: {original_query}
- Previous Agent: {previous_agent}
- Handoff Reason: {handoff_reason}
- Previous Response: {previous_response}

Your task is to provide a complete answer to the user's question, building \
on any partial information provided by the previous agent.

human: {handoff_context}

Please provide a complete answer to the original question: {original_query}"""


@dataclass(frozen=True)
class HandoffContext:
    """What the delegating side knows at the moment of handoff."""

    original_query: str
    previous_agent: str
    handoff_reason: str
    previous_response: AgentResponse | None = None
    conversation_history: list[ConversationTurn] = field(default_factory=list)


class HandoffChain:
    """Validates and executes handoffs between agents."""

    def __init__(self, max_depth: int = 2) -> None:
        self.max_depth = max_depth

    def is_handoff_allowed(
        self,
        target_agent: str,
        handoff_chain: Sequence[str],
    ) -> bool:
        """
        False if `target_agent` was already visited in this request, or if
        the chain so far already holds `max_depth` agents.
        """
        if target_agent in handoff_chain:
            return False
        if len(handoff_chain) >= self.max_depth:
            return False
        return True

    async def process_handoff(
        self,
        handoff_request: HandoffRequest,
        context: HandoffContext,
        target_agent: Agent,
        memory: ConversationMemory | None = None,
    ) -> AgentResponse:
        """Invoke `target_agent` with a prompt that carries the handoff context."""
        logger.info(
            "Processing handoff: %s → %s (reason=%s)",
            context.previous_agent,
            handoff_request.requested_agent.value,
            handoff_request.reason.value,
        )

        prompt = self.build_handoff_prompt(handoff_request, context)
        response = await target_agent.invoke(prompt, memory)

        logger.info(
            "Handoff completed: %s → %s (answer length=%d)",
            context.previous_agent, target_agent.name, len(response.answer),
        )
        return response

    @staticmethod
    def build_handoff_prompt(
        handoff_request: HandoffRequest,
        context: HandoffContext,
    ) -> str:
        previous_answer = (
            context.previous_response.answer
            if context.previous_response is not None
            and context.previous_response.answer
            else handoff_request.partial_answer or ""
        )
        return _HANDOFF_PROMPT.format(
            original_query=context.original_query,
            previous_agent=context.previous_agent,
            handoff_reason=context.handoff_reason,
            previous_response=previous_answer,
            handoff_context=handoff_request.context,
        )
