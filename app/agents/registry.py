# =============================================================================
# Agent Registry — Lazy Agent Construction
# =============================================================================
#
# Building a domain agent opens a knowledge-base collection and an LLM
# client. In lazy mode the orchestrator asks this registry for agents by
# name; each agent is built by its factory on first reference and cached.
#
# DESIGN DECISION: Per-name asyncio.Lock around construction.
# Two concurrent requests that both miss the cache would otherwise build
# the same agent twice. The lock is taken only on a miss, so cached reads
# stay lock-free.
#
# DESIGN DECISION: Append-only cache.
# Instances are never evicted or replaced during normal operation;
# clear_instances() exists for tests and reloads.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable

from app.agents.domain import Agent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[], Awaitable[Agent]]


class AgentRegistry:
    """Builds agents on first use and caches them by name."""

    def __init__(self) -> None:
        self._factories: dict[str, AgentFactory] = {}
        self._instances: dict[str, Agent] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def register_factory(self, name: str, factory: AgentFactory) -> None:
        self._factories[name] = factory
        logger.debug("Agent factory registered: %s", name)

    async def get_agent(self, name: str) -> Agent | None:
        """
        Return the cached agent, building it on first reference.

        Returns None when no factory is registered under `name`. A factory
        that raises propagates its exception and caches nothing.
        """
        instance = self._instances.get(name)
        if instance is not None:
            return instance

        factory = self._factories.get(name)
        if factory is None:
            logger.warning("No factory found for agent: %s", name)
            return None

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            # Another task may have finished construction while we waited
            instance = self._instances.get(name)
            if instance is not None:
                return instance

            logger.info("Initializing agent (lazy load): %s", name)
            start = time.monotonic()
            instance = await factory()
            self._instances[name] = instance
            logger.info(
                "Agent initialized: %s (%d ms)",
                name, int((time.monotonic() - start) * 1000),
            )
        return instance

    def get_cached(self, name: str) -> Agent | None:
        """The already-built agent for `name`, without triggering construction."""
        return self._instances.get(name)

    def is_initialized(self, name: str) -> bool:
        return name in self._instances

    def registered_names(self) -> list[str]:
        return list(self._factories)

    def initialized_names(self) -> list[str]:
        return list(self._instances)

    async def prewarm(self, names: Iterable[str]) -> None:
        """Build the named agents concurrently ahead of the first request."""
        names = list(names)
        logger.info("Pre-warming agents: %s", names)
        await asyncio.gather(*(self.get_agent(name) for name in names))

    def stats(self) -> dict:
        return {
            "registered": len(self._factories),
            "initialized": len(self._instances),
            "registered_agents": self.registered_names(),
            "initialized_agents": self.initialized_names(),
        }

    def clear_instances(self) -> None:
        self._instances.clear()
        logger.info("All agent instances cleared")
