"""Composition root: builds the service graph from settings."""

from typing import Optional

from botkit_rag.config import Settings, get_settings
from botkit_rag.services.cache_service import CacheService
from botkit_rag.services.chunking_service import TextChunker
from botkit_rag.services.conversation_service import ConversationHistory
from botkit_rag.services.document_loader import DocumentLoader, PostSource
from botkit_rag.services.embedding_service import EmbeddingsGenerator
from botkit_rag.services.llm_providers import get_llm_provider
from botkit_rag.services.migration_service import MigrationEngine
from botkit_rag.services.rag_engine import RAGEngine
from botkit_rag.services.rate_limiter import RateLimiter
from botkit_rag.services.remote_index import RemoteVectorIndex
from botkit_rag.services.retriever import Retriever
from botkit_rag.services.vector_store import VectorStore


def build_remote_index(settings: Settings) -> Optional[RemoteVectorIndex]:
    """Remote index when enabled and configured, otherwise None (local search)."""
    if not settings.remote_index_active:
        return None
    return RemoteVectorIndex(settings=settings)


def build_rag_engine(
    settings: Optional[Settings] = None,
    cache: Optional[CacheService] = None,
    post_source: Optional[PostSource] = None,
) -> RAGEngine:
    """Construct the engine and its collaborators. Call once per process."""
    settings = settings or get_settings()
    cache = cache or CacheService(settings=settings)
    provider = get_llm_provider(settings=settings)

    embeddings = EmbeddingsGenerator(provider, cache, settings=settings)
    vector_store = VectorStore(cache, remote_index=build_remote_index(settings), settings=settings)
    retriever = Retriever(vector_store, embeddings, cache, post_source=post_source, settings=settings)

    return RAGEngine(
        loader=DocumentLoader(settings=settings, post_source=post_source),
        chunker=TextChunker(settings=settings),
        embeddings=embeddings,
        vector_store=vector_store,
        retriever=retriever,
        llm=provider,
        history=ConversationHistory(cache, settings=settings),
        rate_limiter=RateLimiter(settings=settings),
        settings=settings,
    )


def build_migration_engine(
    settings: Optional[Settings] = None, cache: Optional[CacheService] = None
) -> MigrationEngine:
    settings = settings or get_settings()
    remote_index = RemoteVectorIndex(settings=settings) if settings.remote_index.is_configured else None
    return MigrationEngine(
        remote_index=remote_index,
        cache=cache or CacheService(settings=settings),
        settings=settings,
    )
