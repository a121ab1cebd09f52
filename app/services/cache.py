# =============================================================================
# LLM Response Cache — In-Process TTL Cache for Completions
# =============================================================================
#
# Identical prompts are common in a support desk ("How do I reset my
# password?"). Caching completions saves an LLM round trip and its cost for
# every repeat within the TTL.
#
# DESIGN DECISION: Cache at the provider boundary.
# CachedLLMProvider wraps any LLMProvider and satisfies the same protocol,
# so the classifier, agents and merger are unaware of it. The key covers
# everything that shapes the reply: model, system prompt, messages,
# temperature and max_tokens.
#
# DESIGN DECISION: Lazy expiry, no background sweeper.
# An expired entry is dropped when it is looked up, and `purge_expired()`
# sweeps the rest on every write. No timer task has to be started or
# cancelled with the event loop.
#
# Streaming completions pass straight through and are never cached.
# =============================================================================

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from app.services.llm import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cache Store
# ---------------------------------------------------------------------------


@dataclass
class _CacheEntry:
    value: LLMResponse
    created_at: float
    hits: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        """Share of lookups served from the cache, 0.0 when none were made."""
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class ResponseCache:
    """Maps cache keys to LLM responses for `ttl_seconds`."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._stats = CacheStats()

    def lookup(self, key: str) -> LLMResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if self._expired(entry):
            del self._entries[key]
            self._stats.evictions += 1
            self._stats.misses += 1
            return None

        entry.hits += 1
        self._stats.hits += 1
        logger.debug("Cache hit: key=%s, hits=%d", key[:12], entry.hits)
        return entry.value

    def update(self, key: str, value: LLMResponse) -> None:
        self.purge_expired()
        self._entries[key] = _CacheEntry(value=value, created_at=self._clock())
        logger.debug("Cache entry added: key=%s, size=%d", key[:12], len(self._entries))

    def purge_expired(self) -> int:
        expired = [key for key, entry in self._entries.items() if self._expired(entry)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._stats.evictions += len(expired)
            logger.debug("Cache purge: %d expired, %d left", len(expired), len(self._entries))
        return len(expired)

    def clear(self) -> int:
        """Drop every entry. Returns how many were dropped."""
        count = len(self._entries)
        self._entries.clear()
        self._stats.evictions += count
        logger.info("Cache cleared (%d entries)", count)
        return count

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            evictions=self._stats.evictions,
            size=len(self._entries),
        )

    def _expired(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds


def cache_key(
    model: str,
    messages: list[dict[str, str]],
    system: str | None,
    temperature: float | None,
    max_tokens: int | None,
) -> str:
    payload = json.dumps(
        {
            "model": model,
            "system": system,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Caching Provider
# ---------------------------------------------------------------------------


class CachedLLMProvider:
    """LLMProvider that answers repeated requests from a ResponseCache."""

    def __init__(self, provider: LLMProvider, cache: ResponseCache) -> None:
        self._provider = provider
        self.cache = cache

    @property
    def model_name(self) -> str:
        return getattr(self._provider, "model_name", type(self._provider).__name__)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        key = cache_key(self.model_name, messages, system, temperature, max_tokens)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        response = await self._provider.complete(
            messages=messages,
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        self.cache.update(key, response)
        return response

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str | LLMResponse]:
        return self._provider.stream(
            messages=messages,
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def clear_cache(self) -> int:
        return self.cache.clear()
