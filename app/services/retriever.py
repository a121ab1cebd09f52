# =============================================================================
# Knowledge-Base Retriever — Per-Domain Document Lookup
# =============================================================================
#
# Each domain agent (HR, IT, Finance, Legal) is bound to its own knowledge
# base. This module defines the narrow interface agents consume, plus a
# ChromaDB adapter where every domain is one collection.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Agents only need `retrieve(query)`. Tests pass a tiny fake; production
# passes ChromaRetriever. Nothing inherits from anything.
#
# DESIGN DECISION: Similarity search is Chroma's job.
# The adapter embeds the query (embedder.py), asks Chroma for the nearest
# chunks and converts cosine distance into a similarity score. Chunks below
# the configured threshold are dropped.
#
# ARCHITECTURE:
#   Retriever (Protocol)
#   └── ChromaRetriever   — one Chroma collection per domain
#       ├── add_documents() — sync, used when loading a knowledge base
#       └── retrieve()      — async via asyncio.to_thread() wrapper
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import chromadb

from app.config import Settings, settings
from app.services.embedder import embed_query

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RetrievedDocument:
    """A single chunk returned from a knowledge base."""

    id: str
    content: str
    source: str
    similarity_score: float  # 0.0–1.0, higher = more relevant
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class Retriever(Protocol):
    """Anything that can return relevant chunks for a query."""

    async def retrieve(self, query: str) -> list[RetrievedDocument]:
        ...


# ---------------------------------------------------------------------------
# ChromaDB Implementation
# ---------------------------------------------------------------------------


def create_chroma_client(config: Settings | None = None):
    """
    Build a Chroma client from settings.

    - chroma_url set         → HttpClient (Docker / remote server)
    - chroma_persist_dir set → PersistentClient (on-disk, local)
    - neither                → ephemeral in-process Client (tests, demos)
    """
    config = config or settings
    if config.chroma_url:
        return chromadb.HttpClient(host=config.chroma_url)
    if config.chroma_persist_dir:
        return chromadb.PersistentClient(path=config.chroma_persist_dir)
    return chromadb.Client()


class ChromaRetriever:
    """
    Retriever over a single Chroma collection.

    DESIGN DECISION: Cosine distance, so `1 - distance` is a similarity
    score comparable with the configured threshold.
    """

    def __init__(
        self,
        collection_name: str,
        client=None,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
    ) -> None:
        self._client = client or create_chroma_client()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self.collection_name = collection_name
        self._top_k = top_k or settings.retrieval_top_k
        self._threshold = (
            similarity_threshold
            if similarity_threshold is not None
            else settings.retrieval_similarity_threshold
        )

    def add_documents(
        self,
        ids: list[str],
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> int:
        """Store chunks in the collection. Returns the number stored."""
        sanitised = [_sanitise_chroma_metadata(m) for m in metadatas]
        self._collection.add(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=sanitised,
        )
        logger.info(
            "Stored %d chunks in collection '%s'",
            len(ids), self.collection_name,
        )
        return len(ids)

    async def retrieve(self, query: str) -> list[RetrievedDocument]:
        """
        Embed the query and return the nearest chunks above the threshold.

        Both the embedding call and the Chroma client are synchronous, so
        the whole lookup runs in a worker thread.
        """

        def _sync_retrieve() -> list[RetrievedDocument]:
            embedding = embed_query(query)
            results = self._collection.query(
                query_embeddings=[embedding],
                n_results=self._top_k,
                include=["documents", "metadatas", "distances"],
            )

            documents: list[RetrievedDocument] = []
            if not (results and results["ids"] and results["ids"][0]):
                return documents

            for i, chroma_id in enumerate(results["ids"][0]):
                distance = (
                    results["distances"][0][i] if results["distances"] else 0.0
                )
                similarity = round(1.0 - distance, 4)
                if similarity < self._threshold:
                    continue
                metadata = (
                    results["metadatas"][0][i] if results["metadatas"] else {}
                ) or {}
                content = (
                    results["documents"][0][i] if results["documents"] else ""
                )
                documents.append(RetrievedDocument(
                    id=chroma_id,
                    content=content,
                    source=str(metadata.get("source", "")),
                    similarity_score=similarity,
                    metadata=dict(metadata),
                ))
            return documents

        documents = await asyncio.to_thread(_sync_retrieve)
        logger.debug(
            "Retrieved %d chunks from '%s' (threshold=%.2f)",
            len(documents), self.collection_name, self._threshold,
        )
        return documents


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
