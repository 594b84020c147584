"""Query-time retrieval: similarity search, deduplication, re-ranking and context expansion."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.chunk import ChunkMetadata
from botkit_rag.models.retrieval import ContextChunk, SimilarChunk, SourceInfo
from botkit_rag.services.cache_service import CacheService, make_cache_key
from botkit_rag.services.document_loader import PostSource
from botkit_rag.services.embedding_service import EmbeddingsGenerator
from botkit_rag.services.vector_store import CACHE_GROUP, VectorStore
from botkit_rag.utils.errors import RAGException, RetrievalError
from botkit_rag.utils.logging import get_logger

logger = get_logger("retriever")

TYPE_BOOSTS = {
    "page": 1.2,
    "post": 1.1,
    "product": 1.15,
    "course": 1.15,
}
RECENCY_DECAY_DAYS = 30
RECENCY_WEIGHT = 0.2

_WORD = re.compile(r"[a-z]+(?:['-][a-z]+)*")


def word_set(text: str) -> Set[str]:
    return set(_WORD.findall(text.lower()))


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the lowercase word sets of two texts."""
    words_a, words_b = word_set(text_a), word_set(text_b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Retriever:
    """
    Turn a natural-language query into ranked, deduplicated passages.

    Options accepted by ``find_context`` (defaults from RetrievalSettings):
    max_results, min_similarity, context_window, deduplication_threshold,
    reranking_enabled, filters.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embeddings: EmbeddingsGenerator,
        cache: CacheService,
        post_source: Optional[PostSource] = None,
        settings: Optional[Settings] = None,
        default_model: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.vector_store = vector_store
        self.embeddings = embeddings
        self.cache = cache
        self.post_source = post_source
        self.default_model = default_model or self.settings.embedding.embedding_model
        self.context_ttl = self.settings.cache.context_ttl

    @property
    def default_options(self) -> Dict[str, Any]:
        retrieval = self.settings.retrieval
        return {
            "max_results": retrieval.max_results,
            "min_similarity": retrieval.min_similarity,
            "context_window": retrieval.context_window,
            "deduplication_threshold": retrieval.deduplication_threshold,
            "reranking_enabled": retrieval.reranking_enabled,
        }

    def find_context(
        self, query: str, owner_id: Optional[int], options: Optional[Dict[str, Any]] = None
    ) -> List[ContextChunk]:
        """
        Retrieve context passages for a query.

        Raises:
            RetrievalError: Wrapping any embedding or storage failure
        """
        options = options or {}
        cache_key = make_cache_key("context_", query, owner_id, options)
        cached = self.cache.get(cache_key, group=CACHE_GROUP)
        if cached is not None:
            return [ContextChunk.model_validate(item) for item in cached]

        opts = {**self.default_options, **options}
        try:
            query_vector = self.embeddings.embed_query(query, model=self.default_model)
            similar = self.vector_store.find_similar(
                owner_id,
                query_vector,
                limit=int(opts["max_results"]),
                min_similarity=float(opts["min_similarity"]),
                filters=opts.get("filters") or None,
                model=self.default_model,
            )
            if similar:
                top = ", ".join(f"{c.similarity:.3f}" for c in similar[:3])
                logger.debug(f"Found {len(similar)} similar chunks; top scores: {top}")
            else:
                logger.debug("No similar chunks found")
            context = self._process_results(similar, opts)
        except RAGException as e:
            raise RetrievalError(f"Failed to find context: {e.message}") from e
        except Exception as e:
            raise RetrievalError(f"Failed to find context: {e}") from e

        self.cache.set(
            cache_key,
            [c.model_dump(mode="json") for c in context],
            group=CACHE_GROUP,
            ttl=self.context_ttl,
        )
        return context

    def _process_results(self, chunks: List[SimilarChunk], opts: Dict[str, Any]) -> List[ContextChunk]:
        chunks = self.deduplicate(chunks, float(opts["deduplication_threshold"]))
        if opts["reranking_enabled"]:
            chunks = self.rerank(chunks)
        window = int(opts["context_window"])

        context: List[ContextChunk] = []
        for chunk in chunks:
            before, after = [], []
            if window > 0 and chunk.metadata.document_id is not None:
                before, after = self.vector_store.get_adjacent_chunks(
                    chunk.metadata.document_id, chunk.metadata.chunk_index, window
                )
            context.append(
                ContextChunk(
                    content=chunk.content,
                    metadata=chunk.metadata,
                    relevance=chunk.similarity,
                    source=self.format_source(chunk.metadata),
                    before=before,
                    after=after,
                )
            )
        return context

    @staticmethod
    def deduplicate(chunks: List[SimilarChunk], threshold: float) -> List[SimilarChunk]:
        """Drop chunks whose word-set Jaccard similarity to an accepted chunk meets the threshold."""
        accepted: List[SimilarChunk] = []
        for chunk in chunks:
            if any(jaccard_similarity(chunk.content, kept.content) >= threshold for kept in accepted):
                continue
            accepted.append(chunk)
        return accepted

    def rerank(self, chunks: List[SimilarChunk], now: Optional[datetime] = None) -> List[SimilarChunk]:
        now = now or datetime.now(timezone.utc)
        return sorted(chunks, key=lambda c: self.rank_score(c, now), reverse=True)

    @staticmethod
    def rank_score(chunk: SimilarChunk, now: datetime) -> float:
        """Similarity boosted by recency (decaying over ~30 days) and content type."""
        score = chunk.similarity
        meta = chunk.metadata
        if meta.created_at:
            created = _parse_timestamp(meta.created_at)
            if created is not None:
                age_days = max(0.0, (now - created).total_seconds() / 86400)
                recency = 1 / (1 + age_days / RECENCY_DECAY_DAYS)
                score *= 1 + recency * RECENCY_WEIGHT
        if meta.post_type:
            score *= TYPE_BOOSTS.get(meta.post_type, 1.0)
        return score

    def format_source(self, metadata: ChunkMetadata) -> SourceInfo:
        """Resolve a human readable origin for a chunk."""
        url = ""
        if metadata.post_id is not None:
            if self.post_source is not None:
                url = self.post_source.get_permalink(metadata.post_id) or ""
        elif metadata.file_path:
            url = metadata.file_path
        elif metadata.url:
            url = metadata.url
        return SourceInfo(
            type=metadata.source_type or "unknown",
            title=metadata.title or "",
            url=url,
        )

    def get_settings(self) -> Dict[str, Any]:
        return {"default_model": self.default_model, "default_settings": self.default_options}
