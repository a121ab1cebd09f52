# =============================================================================
# Conversation Memory — Per-Session Turn Buffers
# =============================================================================
#
# Holds the running transcript of a conversation so that:
#   - the classifier can resolve short follow-ups ("How do I apply?")
#   - domain agents can answer with the prior turns in their prompt
#
# DESIGN DECISION: In-process only.
# Memory lives as long as the process. Persisting transcripts is a concern
# for whatever hosts this service, not for the router.
#
# DESIGN DECISION: Async interface.
# `load_turns()` / `save_context()` are coroutines so a Redis- or DB-backed
# memory can replace BufferMemory without touching callers.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any, Protocol

from app.models.orchestration import ConversationTurn

logger = logging.getLogger(__name__)

# Role names used by LangChain-style message objects and plain dicts
_ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "humanmessage": "user",
    "assistant": "assistant",
    "ai": "assistant",
    "aimessage": "assistant",
    "system": "system",
    "systemmessage": "system",
}


def normalise_turn(item: Any) -> ConversationTurn | None:
    """
    Convert a stored message into a ConversationTurn.

    Accepts ConversationTurn, dicts with role/type and content/text keys,
    and objects exposing `role` or `type` plus `content`. Unknown roles are
    treated as "user". Returns None when there is no content at all.
    """
    if isinstance(item, ConversationTurn):
        return item

    if isinstance(item, dict):
        role = item.get("role") or item.get("type")
        content = item.get("content", item.get("text"))
    else:
        role = (
            getattr(item, "role", None)
            or getattr(item, "type", None)
            or type(item).__name__
        )
        content = getattr(item, "content", getattr(item, "text", None))

    if content is None:
        return None
    return ConversationTurn(
        role=_ROLE_ALIASES.get(str(role).lower(), "user"),
        content=content if isinstance(content, str) else str(content),
    )


class ConversationMemory(Protocol):
    """What the orchestrator and the agents need from a memory object."""

    async def load_turns(self) -> list: ...

    async def save_context(self, user_input: str, output: str) -> None: ...


class BufferMemory:
    """
    Ordered list of conversation turns, oldest first.

    When `max_turns` is set, the oldest turns are dropped once the buffer
    grows past it.
    """

    def __init__(self, max_turns: int | None = None) -> None:
        self._turns: list[ConversationTurn] = []
        self._max_turns = max_turns

    def __len__(self) -> int:
        return len(self._turns)

    async def load_turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    async def save_context(self, user_input: str, output: str) -> None:
        """Record one user question and the assistant's answer."""
        self._turns.append(ConversationTurn(role="user", content=user_input))
        self._turns.append(ConversationTurn(role="assistant", content=output))
        if self._max_turns and len(self._turns) > self._max_turns:
            del self._turns[: len(self._turns) - self._max_turns]

    async def clear(self) -> None:
        self._turns.clear()


class SessionMemoryStore:
    """
    Maps session ids to BufferMemory instances.

    With memory_type="none" every lookup returns None and requests run
    without history.
    """

    def __init__(self, memory_type: str = "buffer", max_turns: int = 50) -> None:
        self._memory_type = memory_type
        self._max_turns = max_turns
        self._sessions: dict[str, BufferMemory] = {}

    def get_or_create(self, session_id: str) -> BufferMemory | None:
        if self._memory_type == "none":
            return None
        memory = self._sessions.get(session_id)
        if memory is None:
            memory = BufferMemory(max_turns=self._max_turns)
            self._sessions[session_id] = memory
            logger.debug("Created buffer memory for session '%s'", session_id)
        return memory

    def get(self, session_id: str) -> BufferMemory | None:
        return self._sessions.get(session_id)

    async def clear(self, session_id: str) -> bool:
        """Drop a session's memory. Returns False if it did not exist."""
        memory = self._sessions.pop(session_id, None)
        if memory is None:
            return False
        await memory.clear()
        logger.info("Memory cleared for session '%s'", session_id)
        return True

    async def clear_all(self) -> int:
        count = len(self._sessions)
        for memory in self._sessions.values():
            await memory.clear()
        self._sessions.clear()
        logger.info("All memories cleared (%d sessions)", count)
        return count


class DeferredMemory:
    """
    Read-through view of another memory that holds writes back.

    Reads go to the wrapped memory. `save_context()` only queues the turn;
    `commit()` writes the queue through in order. Used when several agents
    answer parts of one request and their turns must only be kept if the
    whole request succeeds.
    """

    def __init__(self, memory: ConversationMemory) -> None:
        self._memory = memory
        self._pending: list[tuple[str, str]] = []

    @property
    def pending(self) -> list[tuple[str, str]]:
        return list(self._pending)

    async def load_turns(self) -> list:
        return await self._memory.load_turns()

    async def save_context(self, user_input: str, output: str) -> None:
        self._pending.append((user_input, output))

    async def commit(self) -> int:
        """Write the queued turns to the wrapped memory. Returns how many."""
        count = len(self._pending)
        for user_input, output in self._pending:
            await self._memory.save_context(user_input, output)
        self._pending.clear()
        return count
