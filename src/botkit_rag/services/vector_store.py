"""Chunk and embedding persistence with local or remote similarity search."""

from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from botkit_rag.config import Settings, get_settings
from botkit_rag.database.session import get_session_context
from botkit_rag.models.chunk import ChunkMetadata
from botkit_rag.models.embedding import ChunkEmbedding
from botkit_rag.models.retrieval import NeighbourChunk, SimilarChunk
from botkit_rag.models.vector import VectorIndexEntry
from botkit_rag.repositories.chatbot_repository import ContentRelationshipRepository
from botkit_rag.repositories.chunk_repository import ChunkRepository, EmbeddingRepository
from botkit_rag.services.cache_service import CacheService, make_cache_key
from botkit_rag.services.remote_index import RemoteVectorIndex
from botkit_rag.utils.errors import RAGException, StorageError
from botkit_rag.utils.logging import get_logger
from botkit_rag.utils.vectors import cosine_similarity, deserialize_vector, serialize_vector

logger = get_logger("vector_store")

SessionScope = Callable[[], AbstractContextManager]

CACHE_GROUP = "search"
COLUMN_FIELDS = ("content", "document_id", "chunk_index")


def _matches_filters(metadata: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected and str(actual) not in {str(v) for v in expected}:
                return False
        elif actual != expected and str(actual) != str(expected):
            return False
    return True


class VectorStore:
    """
    Persist chunks and embeddings and answer nearest-neighbour queries.

    When a remote index is supplied and configured, vectors live there (keyed
    by the string chunk id) and similarity search is delegated to it. Chunk
    rows are always stored locally.
    """

    def __init__(
        self,
        cache: CacheService,
        remote_index: Optional[RemoteVectorIndex] = None,
        session_scope: SessionScope = get_session_context,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.remote_index = remote_index
        self._session_scope = session_scope
        self.similarity_ttl = self.settings.cache.similarity_ttl

    @property
    def uses_remote(self) -> bool:
        return self.remote_index is not None and self.remote_index.is_configured()

    def store_embeddings(self, embeddings: Sequence[ChunkEmbedding]) -> List[int]:
        """
        Store each embedding with its chunk.

        Each chunk is committed on its own, so a failure part-way leaves the
        earlier chunks in place.

        Returns:
            Assigned chunk ids, in input order

        Raises:
            StorageError: If a chunk or vector cannot be persisted
        """
        stored: List[int] = []
        try:
            for embedding in embeddings:
                stored.append(self._store_one(embedding))
        except RAGException as e:
            raise StorageError(
                f"Failed to store embeddings: {e.message}",
                details={"stored": len(stored), "error": e.code},
            ) from e
        except Exception as e:
            raise StorageError(
                f"Failed to store embeddings: {e}",
                details={"stored": len(stored)},
            ) from e
        finally:
            if stored:
                self._clear_related_caches(stored)
        return stored

    def _store_one(self, embedding: ChunkEmbedding) -> int:
        meta = embedding.metadata
        if meta.document_id is None:
            raise StorageError("Chunk metadata is missing document_id")
        stored_meta = {k: v for k, v in meta.to_flat_dict().items() if k not in COLUMN_FIELDS}

        with self._session_scope() as session:
            chunk = ChunkRepository(session).create_chunk(
                document_id=meta.document_id,
                content=embedding.content,
                chunk_index=meta.chunk_index,
                metadata=stored_meta,
            )
            chunk_id = chunk.id
            if not self.uses_remote:
                EmbeddingRepository(session).upsert(
                    chunk_id, serialize_vector(embedding.embedding), embedding.model
                )

        if self.uses_remote:
            self.remote_index.upsert(
                [
                    VectorIndexEntry(
                        id=str(chunk_id),
                        values=embedding.embedding,
                        metadata={
                            **stored_meta,
                            "content": embedding.content,
                            "document_id": meta.document_id,
                            "chunk_index": meta.chunk_index,
                        },
                    )
                ]
            )
        return chunk_id

    def find_similar(
        self,
        owner_id: Optional[int],
        query_vector: Sequence[float],
        limit: int = 5,
        min_similarity: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> List[SimilarChunk]:
        """
        Nearest chunks to a query vector, most similar first.

        Args:
            owner_id: Chatbot whose knowledge base scopes the search
            query_vector: Embedded query
            limit: Maximum number of matches
            min_similarity: Matches below this cosine similarity are dropped
            filters: Extra metadata equality filters (a list value means "any of")
            model: Only compare against vectors produced by this embedding model
        """
        cache_key = make_cache_key(
            "similar_", owner_id, model, list(query_vector), limit, min_similarity, filters or {}
        )
        cached = self.cache.get(cache_key, group=CACHE_GROUP)
        if cached is not None:
            return [SimilarChunk.model_validate(item) for item in cached]

        try:
            if self.uses_remote:
                results = self._find_remote(owner_id, query_vector, limit, min_similarity, filters)
            else:
                results = self._find_local(owner_id, query_vector, limit, min_similarity, filters, model)
        except RAGException as e:
            raise StorageError(f"Failed to find similar vectors: {e.message}") from e

        self.cache.set(
            cache_key,
            [r.model_dump(mode="json") for r in results],
            group=CACHE_GROUP,
            ttl=self.similarity_ttl,
        )
        return results

    def _find_remote(
        self,
        owner_id: Optional[int],
        query_vector: Sequence[float],
        limit: int,
        min_similarity: float,
        filters: Optional[Dict[str, Any]],
    ) -> List[SimilarChunk]:
        remote_filters: Dict[str, Any] = dict(filters or {})
        if owner_id:
            with self._session_scope() as session:
                document_ids = ContentRelationshipRepository(session).document_ids_for_bot(owner_id)
            if not document_ids:
                return []
            remote_filters["document_id"] = document_ids

        matches = self.remote_index.query(query_vector, top_k=limit, filters=remote_filters)
        results = []
        for match in matches:
            if match.score < min_similarity:
                continue
            metadata = dict(match.metadata)
            content = str(metadata.pop("content", "") or "")
            results.append(
                SimilarChunk(
                    chunk_id=int(match.id),
                    content=content,
                    similarity=match.score,
                    metadata=ChunkMetadata.from_flat_dict(metadata),
                )
            )
        return results

    def _find_local(
        self,
        owner_id: Optional[int],
        query_vector: Sequence[float],
        limit: int,
        min_similarity: float,
        filters: Optional[Dict[str, Any]],
        model: Optional[str] = None,
    ) -> List[SimilarChunk]:
        with self._session_scope() as session:
            repo = EmbeddingRepository(session)
            rows = repo.candidates(owner_id, model=model) if owner_id is not None else []
            if not rows:
                if owner_id is not None:
                    logger.warning(
                        f"No knowledge base chunks linked to chatbot {owner_id}; "
                        "falling back to an unscoped search across all chunks"
                    )
                rows = repo.candidates(None, model=model)

        # A chunk may carry vectors from several models; keep its best comparable one.
        best: Dict[int, SimilarChunk] = {}
        for chunk_id, content, chunk_index, document_id, metadata, vector in rows:
            values = deserialize_vector(vector)
            if len(values) != len(query_vector):
                continue
            flat = {**(metadata or {}), "document_id": document_id, "chunk_index": chunk_index}
            if not _matches_filters(flat, filters):
                continue
            similarity = cosine_similarity(query_vector, values)
            if similarity < min_similarity:
                continue
            current = best.get(chunk_id)
            if current is not None and current.similarity >= similarity:
                continue
            best[chunk_id] = SimilarChunk(
                chunk_id=chunk_id,
                content=content,
                similarity=similarity,
                metadata=ChunkMetadata.from_flat_dict(flat),
            )

        ranked = sorted(best.values(), key=lambda chunk: chunk.similarity, reverse=True)
        return ranked[:limit]

    def get_adjacent_chunks(
        self, document_id: int, chunk_index: int, window: int
    ) -> Tuple[List[NeighbourChunk], List[NeighbourChunk]]:
        """Up to ``window`` chunks on each side of a position, in document order."""
        with self._session_scope() as session:
            before, after = ChunkRepository(session).neighbours(document_id, chunk_index, window)
            return (
                [self._neighbour(c) for c in before],
                [self._neighbour(c) for c in after],
            )

    @staticmethod
    def _neighbour(chunk) -> NeighbourChunk:
        return NeighbourChunk(
            content=chunk.content,
            chunk_index=chunk.chunk_index,
            metadata=ChunkMetadata.from_flat_dict(
                {**(chunk.chunk_metadata or {}), "document_id": chunk.document_id, "chunk_index": chunk.chunk_index}
            ),
        )

    def delete_document_embeddings(self, document_id: int) -> Dict[str, Any]:
        """Remove every chunk and vector of a document."""
        try:
            with self._session_scope() as session:
                chunks = ChunkRepository(session)
                chunk_ids = chunks.ids_for_document(document_id)
                deleted_embeddings = 0
                deleted_chunks = 0
                if chunk_ids:
                    if self.uses_remote:
                        deleted_embeddings = self.remote_index.delete(chunk_ids)
                        EmbeddingRepository(session).delete_for_chunks(chunk_ids)
                    else:
                        deleted_embeddings = EmbeddingRepository(session).delete_for_chunks(chunk_ids)
                    deleted_chunks = chunks.delete_by_ids(chunk_ids)
        except RAGException as e:
            raise StorageError(f"Failed to delete document data: {e.message}") from e

        self._clear_related_caches(chunk_ids)
        logger.info(
            f"Deleted document data: document_id={document_id}, chunks={deleted_chunks}, "
            f"embeddings={deleted_embeddings}"
        )
        return {
            "deleted_chunks": deleted_chunks,
            "deleted_embeddings": deleted_embeddings,
            "success": True,
        }

    def get_stats(self) -> Dict[str, Any]:
        try:
            with self._session_scope() as session:
                stats = ChunkRepository(session).stats()
                local_embeddings = EmbeddingRepository(session).count()
            if self.uses_remote:
                stats["total_embeddings"] = int(
                    self.remote_index.describe_stats().get("total_vector_count", 0)
                )
            else:
                stats["total_embeddings"] = local_embeddings
            return stats
        except RAGException as e:
            raise StorageError(f"Failed to get database statistics: {e.message}") from e

    def _clear_related_caches(self, chunk_ids: Sequence[int]) -> None:
        for chunk_id in chunk_ids:
            self.cache.delete(f"chunk_{chunk_id}", group=CACHE_GROUP)
        self.cache.delete_pattern("similar_*", group=CACHE_GROUP)
        self.cache.delete_pattern("context_*", group=CACHE_GROUP)
