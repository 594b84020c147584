"""Repository for documents and their processing metadata."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botkit_rag.database.models import Document, DocumentMeta, utcnow
from botkit_rag.models.document import DocumentStatus
from botkit_rag.repositories.base import BaseRepository
from botkit_rag.utils.errors import DatabaseError

logger = logging.getLogger(__name__)


class DocumentRepository(BaseRepository[Document]):
    """Repository for document operations."""

    def __init__(self, session: Session):
        super().__init__(Document, session)

    def find_by_source(self, source_type: str, source_id: int) -> Optional[Document]:
        """Find the document ingested from a given source record."""
        try:
            result = self.session.execute(
                select(Document)
                .where(Document.source_type == source_type)
                .where(Document.source_id == source_id)
                .order_by(Document.id)
                .limit(1)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error finding document for {source_type}:{source_id}: {e}")
            raise DatabaseError("Failed to look up document by source") from e

    def get_pending(self, limit: int = 5) -> List[Document]:
        """Pending documents, oldest first."""
        try:
            result = self.session.execute(
                select(Document)
                .where(Document.status == DocumentStatus.PENDING.value)
                .order_by(Document.created_at.asc(), Document.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing pending documents: {e}")
            raise DatabaseError("Failed to list pending documents") from e

    def set_status(self, document_id: int, status: DocumentStatus) -> Optional[Document]:
        return self.update(document_id, status=status.value, updated_at=utcnow())

    def upsert_meta(self, document_id: int, values: Dict[str, Any]) -> None:
        """Insert or replace metadata entries for a document."""
        try:
            existing = {
                m.meta_key: m
                for m in self.session.execute(
                    select(DocumentMeta).where(DocumentMeta.document_id == document_id)
                ).scalars()
            }
            for key, value in values.items():
                if key in existing:
                    existing[key].meta_value = value
                    existing[key].updated_at = utcnow()
                else:
                    self.session.add(DocumentMeta(document_id=document_id, meta_key=key, meta_value=value))
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error storing metadata for document {document_id}: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to store document metadata") from e

    def get_meta(self, document_id: int) -> Dict[str, Any]:
        try:
            rows = self.session.execute(
                select(DocumentMeta).where(DocumentMeta.document_id == document_id)
            ).scalars()
            return {row.meta_key: row.meta_value for row in rows}
        except SQLAlchemyError as e:
            logger.error(f"Error reading metadata for document {document_id}: {e}")
            raise DatabaseError("Failed to read document metadata") from e

    def count_by_source_type(self) -> List[Tuple[str, int]]:
        """(source_type, document count) pairs."""
        try:
            result = self.session.execute(
                select(Document.source_type, func.count(Document.id))
                .group_by(Document.source_type)
                .order_by(Document.source_type)
            )
            return [(row[0], int(row[1])) for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error grouping documents by source type: {e}")
            raise DatabaseError("Failed to group documents") from e

    def delete_all(self) -> int:
        """Delete every document and its metadata rows. Returns documents removed."""
        try:
            self.session.execute(delete(DocumentMeta))
            result = self.session.execute(delete(Document))
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error clearing documents: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to clear documents") from e
