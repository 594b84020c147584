"""Repositories for chunks and their embeddings."""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Row, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botkit_rag.database.models import Chunk, ContentRelationship, Document, Embedding, utcnow
from botkit_rag.repositories.base import BaseRepository
from botkit_rag.utils.errors import DatabaseError

logger = logging.getLogger(__name__)


class ChunkRepository(BaseRepository[Chunk]):
    """Repository for chunk operations."""

    def __init__(self, session: Session):
        super().__init__(Chunk, session)

    def create_chunk(
        self, document_id: int, content: str, chunk_index: int, metadata: Dict[str, Any]
    ) -> Chunk:
        return self.create(
            document_id=document_id,
            content=content,
            chunk_index=chunk_index,
            chunk_metadata=metadata,
        )

    def upsert_chunk(
        self,
        chunk_id: int,
        document_id: int,
        content: str,
        chunk_index: int,
        metadata: Dict[str, Any],
    ) -> Chunk:
        """Insert or update a chunk keyed by an explicit id."""
        try:
            chunk = self.session.get(Chunk, chunk_id)
            if chunk is None:
                chunk = Chunk(id=chunk_id)
                self.session.add(chunk)
            chunk.document_id = document_id
            chunk.content = content
            chunk.chunk_index = chunk_index
            chunk.chunk_metadata = metadata
            self.session.flush()
            return chunk
        except SQLAlchemyError as e:
            logger.error(f"Error upserting chunk {chunk_id}: {e}")
            self.session.rollback()
            raise DatabaseError(f"Failed to upsert chunk {chunk_id}") from e

    def ids_for_document(self, document_id: int) -> List[int]:
        try:
            result = self.session.execute(
                select(Chunk.id).where(Chunk.document_id == document_id).order_by(Chunk.chunk_index)
            )
            return [row[0] for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing chunks for document {document_id}: {e}")
            raise DatabaseError("Failed to list document chunks") from e

    def delete_by_ids(self, chunk_ids: Sequence[int]) -> int:
        if not chunk_ids:
            return 0
        try:
            result = self.session.execute(delete(Chunk).where(Chunk.id.in_(list(chunk_ids))))
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting chunks: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to delete chunks") from e

    def neighbours(
        self, document_id: int, chunk_index: int, window: int
    ) -> Tuple[List[Chunk], List[Chunk]]:
        """
        Chunks surrounding a position in a document.

        Returns:
            (before, after), both in ascending chunk_index order
        """
        try:
            before = list(
                self.session.execute(
                    select(Chunk)
                    .where(Chunk.document_id == document_id)
                    .where(Chunk.chunk_index < chunk_index)
                    .order_by(Chunk.chunk_index.desc())
                    .limit(window)
                ).scalars()
            )
            before.reverse()
            after = list(
                self.session.execute(
                    select(Chunk)
                    .where(Chunk.document_id == document_id)
                    .where(Chunk.chunk_index > chunk_index)
                    .order_by(Chunk.chunk_index.asc())
                    .limit(window)
                ).scalars()
            )
            return before, after
        except SQLAlchemyError as e:
            logger.error(f"Error loading neighbours of {document_id}#{chunk_index}: {e}")
            raise DatabaseError("Failed to load neighbouring chunks") from e

    def for_migration(
        self,
        source_types: Optional[Sequence[str]] = None,
        document_ids: Optional[Sequence[int]] = None,
    ) -> List[Row]:
        """(Chunk, Document) pairs ordered by chunk id, optionally filtered."""
        try:
            query = select(Chunk, Document).join(Document, Chunk.document_id == Document.id)
            if source_types:
                query = query.where(Document.source_type.in_(list(source_types)))
            if document_ids:
                query = query.where(Document.id.in_(list(document_ids)))
            return list(self.session.execute(query.order_by(Chunk.id)).all())
        except SQLAlchemyError as e:
            logger.error(f"Error selecting chunks for migration: {e}")
            raise DatabaseError("Failed to select chunks for migration") from e

    def stats(self) -> Dict[str, Any]:
        try:
            row = self.session.execute(
                select(
                    func.count(Chunk.id),
                    func.count(func.distinct(Chunk.document_id)),
                    func.avg(func.length(Chunk.content)),
                )
            ).one()
            return {
                "total_chunks": int(row[0] or 0),
                "total_documents": int(row[1] or 0),
                "average_chunk_size": round(float(row[2] or 0.0), 2),
            }
        except SQLAlchemyError as e:
            logger.error(f"Error computing chunk stats: {e}")
            raise DatabaseError("Failed to compute chunk statistics") from e

    def delete_all(self) -> int:
        try:
            result = self.session.execute(delete(Chunk))
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error clearing chunks: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to clear chunks") from e


class EmbeddingRepository(BaseRepository[Embedding]):
    """Repository for stored vectors."""

    def __init__(self, session: Session):
        super().__init__(Embedding, session)

    def upsert(self, chunk_id: int, vector: str, model: str) -> Embedding:
        """Replace the embedding for (chunk_id, model), or insert it."""
        try:
            existing = self.session.execute(
                select(Embedding).where(Embedding.chunk_id == chunk_id).where(Embedding.model == model)
            ).scalar_one_or_none()
            if existing is not None:
                existing.embedding = vector
                existing.created_at = utcnow()
                self.session.flush()
                return existing
            return self.create(chunk_id=chunk_id, embedding=vector, model=model)
        except SQLAlchemyError as e:
            logger.error(f"Error upserting embedding for chunk {chunk_id}: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to store embedding") from e

    def get_for_chunk(self, chunk_id: int, model: Optional[str] = None) -> Optional[Embedding]:
        """Most recent embedding of a chunk, optionally for one model."""
        try:
            query = select(Embedding).where(Embedding.chunk_id == chunk_id)
            if model:
                query = query.where(Embedding.model == model)
            query = query.order_by(Embedding.created_at.desc(), Embedding.id.desc()).limit(1)
            return self.session.execute(query).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error loading embedding for chunk {chunk_id}: {e}")
            raise DatabaseError("Failed to load embedding") from e

    def replace_for_chunk(self, chunk_id: int, vector: str, model: str) -> Embedding:
        """Drop every embedding of a chunk and store a single new one."""
        try:
            self.session.execute(delete(Embedding).where(Embedding.chunk_id == chunk_id))
            return self.create(chunk_id=chunk_id, embedding=vector, model=model)
        except SQLAlchemyError as e:
            logger.error(f"Error replacing embedding for chunk {chunk_id}: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to replace embedding") from e

    def delete_for_chunks(self, chunk_ids: Sequence[int]) -> int:
        if not chunk_ids:
            return 0
        try:
            result = self.session.execute(delete(Embedding).where(Embedding.chunk_id.in_(list(chunk_ids))))
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting embeddings: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to delete embeddings") from e

    def candidates(self, owner_id: Optional[int] = None, model: Optional[str] = None) -> List[Row]:
        """
        Rows for local similarity search.

        With an owner id only chunks of documents linked to that chatbot's
        knowledge base are returned.

        Returns:
            Rows of (chunk_id, content, chunk_index, document_id, metadata, embedding)
        """
        try:
            query = select(
                Chunk.id,
                Chunk.content,
                Chunk.chunk_index,
                Chunk.document_id,
                Chunk.chunk_metadata,
                Embedding.embedding,
            ).join(Embedding, Embedding.chunk_id == Chunk.id)
            if owner_id is not None:
                query = query.join(
                    ContentRelationship, ContentRelationship.target_id == Chunk.document_id
                ).where(
                    ContentRelationship.source_type == "chatbot",
                    ContentRelationship.source_id == owner_id,
                    ContentRelationship.relationship_type == "knowledge_base",
                )
            if model:
                query = query.where(Embedding.model == model)
            return list(self.session.execute(query.order_by(Chunk.id)).all())
        except SQLAlchemyError as e:
            logger.error(f"Error loading similarity candidates: {e}")
            raise DatabaseError("Failed to load similarity candidates") from e

    def delete_all(self) -> int:
        try:
            result = self.session.execute(delete(Embedding))
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error clearing embeddings: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to clear embeddings") from e
