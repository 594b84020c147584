"""Embedding generation with batching and a content-addressed cache."""

import hashlib
import time
from functools import lru_cache
from typing import Dict, List, Optional

import tiktoken

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.chunk import TextChunk
from botkit_rag.models.embedding import ChunkEmbedding
from botkit_rag.services.cache_service import CacheService
from botkit_rag.services.llm_providers import LLMProvider
from botkit_rag.utils.errors import EmbeddingGenerationError
from botkit_rag.utils.logging import get_logger

logger = get_logger("embedding_service")

CACHE_GROUP = "embeddings"
DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=32)
def _encoding_for(model: Optional[str]) -> "tiktoken.Encoding":
    if model:
        try:
            return tiktoken.encoding_for_model(model)
        except KeyError:
            logger.debug(f"No tiktoken encoding registered for {model}; using {DEFAULT_ENCODING}")
    return tiktoken.get_encoding(DEFAULT_ENCODING)


def estimate_tokens(text: str, model: Optional[str] = None) -> int:
    """Token count of ``text`` under the model's encoding (cl100k_base when unknown)."""
    if not text:
        return 0
    return len(_encoding_for(model).encode(text))


class EmbeddingsGenerator:
    """
    Convert text chunks into vectors through an LLM provider.

    - Cache key is md5(content + model); a hit skips the provider and is
      combined with the chunk's current metadata, never the cached one
    - Misses are accumulated into batches (default 20, clamped to 1..100)
      and flushed when full or when the input is exhausted
    - Multi-batch calls pause briefly between batches
    """

    def __init__(
        self,
        provider: LLMProvider,
        cache: CacheService,
        settings: Optional[Settings] = None,
        sleep=time.sleep,
    ):
        self.settings = settings or get_settings()
        self.provider = provider
        self.cache = cache
        self.default_model = self.settings.embedding.embedding_model
        self.batch_size = self.settings.embedding.embedding_batch_size
        self.batch_pause = self.settings.embedding.embedding_batch_pause
        self.cache_ttl = self.settings.cache.embedding_ttl
        self._sleep = sleep

    @staticmethod
    def cache_key(content: str, model: str) -> str:
        return "embedding_" + hashlib.md5((content + model).encode("utf-8")).hexdigest()

    def generate_embeddings(
        self, chunks: List[TextChunk], model: Optional[str] = None
    ) -> List[ChunkEmbedding]:
        """
        Generate embeddings for a list of chunks.

        Args:
            chunks: Text chunks to embed
            model: Embedding model (defaults to the configured model)

        Returns:
            ChunkEmbedding objects aligned with the input order

        Raises:
            EmbeddingGenerationError: If any provider batch fails
        """
        if not chunks:
            return []

        model = model or self.default_model
        results: List[Optional[ChunkEmbedding]] = [None] * len(chunks)
        pending: List[int] = []
        cache_hits = 0
        batches = 0

        try:
            for index, chunk in enumerate(chunks):
                cached = self.cache.get(self.cache_key(chunk.content, model), group=CACHE_GROUP)
                if cached:
                    results[index] = ChunkEmbedding(
                        embedding=cached["embedding"],
                        model=cached.get("model", model),
                        content=chunk.content,
                        metadata=chunk.metadata.model_copy(deep=True),
                    )
                    cache_hits += 1
                else:
                    pending.append(index)

                if pending and (len(pending) >= self.batch_size or index == len(chunks) - 1):
                    self._flush(chunks, pending, model, results)
                    pending = []
                    batches += 1
                    if len(chunks) > self.batch_size and index < len(chunks) - 1:
                        self._sleep(self.batch_pause)
        except EmbeddingGenerationError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise EmbeddingGenerationError(
                f"Failed to generate embeddings: {e}",
                model=model,
                details={"error_type": type(e).__name__},
            ) from e

        logger.info(
            f"Generated embeddings: model={model}, chunks={len(chunks)}, "
            f"cache_hits={cache_hits}, batches={batches}"
        )
        return [r for r in results if r is not None]

    def _flush(
        self,
        chunks: List[TextChunk],
        indices: List[int],
        model: str,
        results: List[Optional[ChunkEmbedding]],
    ) -> None:
        texts = [chunks[i].content for i in indices]
        total_tokens = sum(estimate_tokens(t, model) for t in texts)
        logger.debug(f"Embedding batch: count={len(texts)}, tokens={total_tokens}, model={model}")

        vectors = self.provider.embed(texts, model=model)
        if len(vectors) != len(texts):
            raise EmbeddingGenerationError(
                "Embedding response size mismatch",
                model=model,
                details={"expected": len(texts), "got": len(vectors)},
            )

        for i, vector in zip(indices, vectors):
            chunk = chunks[i]
            results[i] = ChunkEmbedding(
                embedding=vector,
                model=model,
                content=chunk.content,
                metadata=chunk.metadata.model_copy(deep=True),
            )
            self.cache.set(
                self.cache_key(chunk.content, model),
                {"embedding": list(vector), "model": model},
                group=CACHE_GROUP,
                ttl=self.cache_ttl,
            )

    def embed_query(self, text: str, model: Optional[str] = None) -> List[float]:
        """Embed a single piece of text through the same cached path."""
        embeddings = self.generate_embeddings([TextChunk(content=text)], model=model)
        if not embeddings:
            raise EmbeddingGenerationError("No embedding returned for query", model=model or self.default_model)
        return embeddings[0].embedding

    def set_batch_size(self, size: int) -> None:
        self.batch_size = max(1, min(100, size))

    def set_default_model(self, model: str) -> None:
        self.default_model = model

    def get_settings(self) -> Dict[str, object]:
        return {"default_model": self.default_model, "batch_size": self.batch_size}
