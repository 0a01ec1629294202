"""
Retrieval-augmented memory pipeline.

Stores memory items with embeddings (chunking long text), searches them with
deduplication and query-specific boosts, and renders retrieved memories into a
token-bounded context block for the chat model.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Optional, Sequence

import core.config as config
from core.errors import EmbeddingFailed
from core.services.llm_providers import ChatProvider
from core.services.memory_shared import parse_timestamp, to_rfc3339, utc_now
from core.services.memory_stores import MemoryHit, MemoryItem, MemoryStore, SearchOptions

logger = config.logger

CONTEXT_HEADER = "Relevant context from your memory:"
DUPLICATE_SIMILARITY = 0.9
TRUNCATION_RESERVE_TOKENS = 100
TRUNCATION_MARGIN_TOKENS = 20


@dataclass
class PipelineConfig:
    max_context_tokens: int = config.RAG_MAX_CONTEXT_TOKENS
    top_k: int = config.RAG_TOP_K
    min_score: float = config.RAG_MIN_SCORE
    chunk_size: int = config.RAG_CHUNK_SIZE
    chunk_overlap: int = config.RAG_CHUNK_OVERLAP
    summarize_threshold: int = config.RAG_SUMMARIZE_THRESHOLD


def estimate_tokens(text: str) -> int:
    # ~4 characters per token
    return (len(text) + 3) // 4


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut text to roughly max_tokens, preferring a word boundary."""
    max_chars = max(0, max_tokens * 4)
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars // 2:
        truncated = truncated[:last_space]
    return truncated


def text_similarity(first: str, second: str) -> float:
    """Jaccard similarity over lowercase word sets."""
    words_first = set(first.lower().split())
    words_second = set(second.lower().split())
    if not words_first and not words_second:
        return 1.0
    if not words_first or not words_second:
        return 0.0
    intersection = len(words_first & words_second)
    union = len(words_first) + len(words_second) - intersection
    return intersection / union if union else 1.0


def format_timestamp(metadata: dict) -> str:
    for key in ("created_at", "stored_at"):
        raw = metadata.get(key)
        if isinstance(raw, str):
            parsed = parse_timestamp(raw)
            if parsed is None:
                return raw
            return f"{parsed:%b} {parsed.day}, {parsed:%H:%M}"
    return "unknown"


class MemoryPipeline:
    def __init__(
        self,
        store: MemoryStore,
        embedder: ChatProvider,
        pipeline_config: Optional[PipelineConfig] = None,
    ):
        self.memory_store = store
        self.embedder = embedder
        self.config = pipeline_config or PipelineConfig()

    async def _embed(self, texts: Sequence[str]) -> list[list[float]]:
        vectors = await self.embedder.embed(list(texts))
        if len(vectors) != len(texts) or any(not vector for vector in vectors):
            raise EmbeddingFailed("no embeddings generated")
        return vectors

    def chunk_item(self, item: MemoryItem) -> list[MemoryItem]:
        """Split long text into overlapping windows, tagging chunk metadata."""
        text = item.text
        size = self.config.chunk_size
        if len(text) <= size:
            return [item]
        step = max(1, size - self.config.chunk_overlap)
        chunks = []
        start = 0
        while True:
            end = min(start + size, len(text))
            metadata = dict(item.metadata)
            metadata["chunk_index"] = len(chunks)
            metadata["parent_text_length"] = len(text)
            chunks.append(MemoryItem(kind=item.kind, text=text[start:end], metadata=metadata))
            if end >= len(text):
                break
            start += step
        for chunk in chunks:
            chunk.metadata["chunk_count"] = len(chunks)
        return chunks

    async def store(self, tenant_id: str, user_id: str, item: MemoryItem) -> str:
        """Embed and persist an item; returns the id of the first stored chunk."""
        started = time.monotonic()
        metadata = dict(item.metadata or {})
        metadata["stored_at"] = to_rfc3339(utc_now().replace(microsecond=0))
        prepared = replace(item, metadata=metadata, embedding=None)

        items = self.chunk_item(prepared)
        vectors = await self._embed([chunk.text for chunk in items])
        for chunk, vector in zip(items, vectors):
            chunk.embedding = vector

        ids = await asyncio.to_thread(self.memory_store.upsert, tenant_id, user_id, items)
        if not ids:
            raise EmbeddingFailed("no items were stored")

        logger.info(
            "memory_item_stored",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "kind": item.kind,
                "chunks": len(items),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return ids[0]

    async def search(
        self,
        tenant_id: str,
        user_id: str,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> list[MemoryHit]:
        started = time.monotonic()
        if options is None:
            options = SearchOptions(top_k=self.config.top_k, min_score=self.config.min_score)
        if not options.query_text:
            options = replace(options, query_text=query)

        vectors = await self._embed([query])
        hits = await asyncio.to_thread(self.memory_store.search, tenant_id, user_id, vectors[0], options)
        processed = self.post_process(hits, query)

        logger.info(
            "memory_search_completed",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "hits": len(processed),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return processed

    def post_process(self, hits: list[MemoryHit], query: str) -> list[MemoryHit]:
        if not hits:
            return []
        unique = self.deduplicate(hits)
        boosted = self.apply_query_boosts(unique, query)
        return sorted(boosted, key=lambda hit: hit.score, reverse=True)

    @staticmethod
    def deduplicate(hits: list[MemoryHit]) -> list[MemoryHit]:
        unique: list[MemoryHit] = []
        for hit in hits:
            if any(text_similarity(hit.text, kept.text) > DUPLICATE_SIMILARITY for kept in unique):
                continue
            unique.append(hit)
        return unique

    @staticmethod
    def apply_query_boosts(hits: list[MemoryHit], query: str) -> list[MemoryHit]:
        lowered = query.lower()
        wants_recent = "recent" in lowered or "latest" in lowered
        wants_tasks = "task" in lowered or "todo" in lowered
        wants_events = any(word in lowered for word in ("schedule", "appointment", "meeting"))
        now = utc_now()

        boosted = []
        for hit in hits:
            score = hit.score
            if wants_recent:
                created_at = parse_timestamp(hit.metadata.get("created_at"))
                if created_at is not None:
                    age = (now - created_at).total_seconds()
                    if age < 24 * 3600:
                        score *= 1.2
                    elif age < 7 * 24 * 3600:
                        score *= 1.1
            if wants_tasks and hit.kind == "task":
                score *= 1.15
            if wants_events and hit.kind == "event":
                score *= 1.15
            boosted.append(hit if score == hit.score else hit.with_score(score))
        return boosted

    def build_context(self, results: Sequence[MemoryHit], max_tokens: int = 0) -> str:
        """Render hits into a context block that fits within max_tokens."""
        if not results:
            return ""
        if max_tokens <= 0:
            max_tokens = self.config.max_context_tokens

        parts = [CONTEXT_HEADER]
        current = estimate_tokens(CONTEXT_HEADER)
        for hit in results:
            line = f"- {hit.kind} ({format_timestamp(hit.metadata)}, score: {hit.score:.2f}): {hit.text}"
            line_tokens = estimate_tokens(line)
            if current + line_tokens > max_tokens:
                if current + TRUNCATION_RESERVE_TOKENS <= max_tokens:
                    parts.append(truncate_text(line, max_tokens - current - TRUNCATION_MARGIN_TOKENS) + "...")
                break
            parts.append(line)
            current += line_tokens

        logger.debug(
            "memory_context_built",
            extra={"memory_items": len(results), "context_items_used": len(parts) - 1, "estimated_tokens": current},
        )
        return "\n".join(parts)

    async def get_context(self, tenant_id: str, user_id: str, query: str, max_tokens: int = 0) -> str:
        hits = await self.search(tenant_id, user_id, query)
        return self.build_context(hits, max_tokens)

    async def update(self, tenant_id: str, user_id: str, memory_id: str, fields: dict) -> None:
        """Update a stored memory; a text change is re-embedded."""
        changes = dict(fields)
        if changes.get("text"):
            vectors = await self._embed([changes["text"]])
            changes["embedding"] = vectors[0]
        await asyncio.to_thread(self.memory_store.update_by_id, tenant_id, user_id, memory_id, changes)

    async def delete(self, tenant_id: str, user_id: str, memory_id: str) -> None:
        await asyncio.to_thread(self.memory_store.delete_by_id, tenant_id, user_id, memory_id)

    def summarize_if_needed(self, text: str) -> str:
        """Shorten text above the summarize threshold, keeping its head and tail."""
        if estimate_tokens(text) <= self.config.summarize_threshold:
            return text
        half = self.config.summarize_threshold // 2
        head = truncate_text(text, half)
        tail_chars = max(0, half * 4 - len("\n...\n"))
        tail = text[-tail_chars:] if tail_chars else ""
        return f"{head}\n...\n{tail}"
