"""Bulk transfer of vectors between the local store and the remote index."""

import gc
import mimetypes
import os
import resource
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from pydantic import ValidationError

from botkit_rag.config import Settings, get_settings
from botkit_rag.database.models import utcnow
from botkit_rag.database.session import get_session_context
from botkit_rag.models.migration import (
    ClearResult,
    ClearTarget,
    MigrationDirection,
    MigrationLock,
    MigrationOptions,
    MigrationResult,
    MigrationScope,
)
from botkit_rag.models.vector import VectorIndexEntry, VectorMatch
from botkit_rag.repositories.chatbot_repository import ContentRelationshipRepository
from botkit_rag.repositories.chunk_repository import ChunkRepository, EmbeddingRepository
from botkit_rag.repositories.document_repository import DocumentRepository
from botkit_rag.repositories.options_repository import OptionsRepository
from botkit_rag.services.cache_service import CacheService
from botkit_rag.services.migration_logger import MigrationLogger
from botkit_rag.services.remote_index import RemoteVectorIndex
from botkit_rag.services.vector_store import CACHE_GROUP, SessionScope
from botkit_rag.utils.errors import MigrationError, RAGException
from botkit_rag.utils.logging import get_logger
from botkit_rag.utils.vectors import deserialize_vector, serialize_vector

logger = get_logger("migration_service")

LOCK_KEY = "botkit_migration_lock"
LAST_MIGRATION_KEY = "botkit_last_migration_time"


def _batches(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def peak_memory_mb() -> float:
    """Peak resident set size of this process in MB."""
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and kilobytes elsewhere
    if sys.platform == "darwin":
        return peak / (1024 * 1024)
    return peak / 1024


class MigrationEngine:
    """
    Copy vectors between the local tables and the remote index, or clear either.

    One migration runs at a time, guarded by a lock row in ``app_options``.
    A lock older than ``lock_stale_seconds`` is treated as abandoned.
    Per-item failures are counted and logged; only setup failures abort a run.
    """

    def __init__(
        self,
        remote_index: Optional[RemoteVectorIndex] = None,
        cache: Optional[CacheService] = None,
        session_scope: SessionScope = get_session_context,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        memory_probe: Callable[[], float] = peak_memory_mb,
    ):
        self.settings = settings or get_settings()
        self.remote_index = remote_index
        self.cache = cache
        self._session_scope = session_scope
        self._clock = clock
        self._memory_probe = memory_probe
        self.batch_size = max(1, self.settings.migration.batch_size)
        self.embedding_model = self.settings.embedding.embedding_model

    @property
    def remote_configured(self) -> bool:
        return self.remote_index is not None and self.remote_index.is_configured()

    def can_migrate(self) -> bool:
        return self.settings.remote_index.enabled and self.remote_configured

    def get_migration_status(self) -> Dict[str, Any]:
        with self._session_scope() as session:
            local_count = ChunkRepository(session).count()
            lock = self._read_lock(OptionsRepository(session))
            last_migration = OptionsRepository(session).get_value(LAST_MIGRATION_KEY, "")

        remote_count = 0
        if self.remote_configured:
            try:
                remote_count = int(self.remote_index.describe_stats().get("total_vector_count", 0))
            except RAGException as e:
                logger.warning(f"Failed to get remote index stats: {e.message}")

        return {
            "local_database": {
                "enabled": True,
                "configured": True,
                "chunk_count": local_count,
                "status": "has_data" if local_count > 0 else "empty",
            },
            "remote_database": {
                "enabled": self.settings.remote_index.enabled,
                "configured": self.remote_configured,
                "chunk_count": remote_count,
                "status": "configured" if self.remote_configured else "not_configured",
            },
            "migration_available": self.can_migrate(),
            "last_migration": last_migration,
            "migration_in_progress": lock is not None and not self._is_stale(lock),
        }

    def _read_lock(self, options: OptionsRepository) -> Optional[MigrationLock]:
        value = options.get_value(LOCK_KEY)
        if not value:
            return None
        try:
            return MigrationLock.model_validate(value)
        except ValidationError:
            logger.warning("Ignoring malformed migration lock")
            return None

    def _is_stale(self, lock: MigrationLock) -> bool:
        return lock.age_seconds(self._clock()) > self.settings.migration.lock_stale_seconds

    def _acquire_lock(self, direction: MigrationDirection) -> bool:
        with self._session_scope() as session:
            options = OptionsRepository(session)
            lock = self._read_lock(options)
            if lock is not None:
                if not self._is_stale(lock):
                    return False
                logger.warning(
                    f"Clearing stale migration lock from {lock.started_at.isoformat()} "
                    f"({lock.direction.value})"
                )
            options.set_value(
                LOCK_KEY,
                MigrationLock(started_at=self._clock(), direction=direction).model_dump(mode="json"),
            )
        return True

    def _release_lock(self) -> None:
        try:
            with self._session_scope() as session:
                OptionsRepository(session).delete(LOCK_KEY)
        except RAGException as e:
            logger.error(f"Failed to release migration lock: {e.message}")

    def start_migration(self, options: Union[MigrationOptions, Dict[str, Any]]) -> MigrationResult:
        """
        Validate options, take the lock and run the requested direction.

        The lock is always released when the run ends.
        """
        if not isinstance(options, MigrationOptions):
            try:
                options = MigrationOptions.model_validate(options)
            except ValidationError:
                return MigrationResult(success=False, message="Invalid migration options")

        if not self._acquire_lock(options.direction):
            return MigrationResult(success=False, message="Migration is already in progress")

        try:
            if options.direction == MigrationDirection.TO_REMOTE:
                result = self.migrate_to_remote(options)
            else:
                result = self.migrate_to_local(options)
            with self._session_scope() as session:
                OptionsRepository(session).set_value(LAST_MIGRATION_KEY, self._clock().isoformat())
            return result
        except MigrationError as e:
            logger.error(f"Migration failed: {e.message}")
            return MigrationResult(
                success=False,
                message=f"Migration failed: {e.message}",
                migrated_count=e.migrated_count,
                error_count=e.error_count,
            )
        finally:
            self._release_lock()

    def _require_remote(self) -> RemoteVectorIndex:
        if not self.remote_configured:
            raise MigrationError("Remote index is not configured")
        return self.remote_index

    def _check_resources(self, started: float, log: MigrationLogger, warned: Dict[str, bool]) -> None:
        # Peak RSS never falls, so only the first crossing is acted on.
        if not warned.get("memory") and self._memory_probe() > self.settings.migration.memory_high_water_mb:
            warned["memory"] = True
            collected = gc.collect()
            log.info("Peak memory above high-water mark, forced garbage collection", {"collected": collected})
        budget = self.settings.migration.time_budget_seconds
        if not warned.get("time") and time.monotonic() - started > budget:
            warned["time"] = True
            log.warning(f"Migration exceeded its {budget}s time budget; continuing to completion")

    def migrate_to_remote(self, options: MigrationOptions) -> MigrationResult:
        """Upsert local chunks and their stored vectors into the remote index."""
        remote = self._require_remote()
        source_types = options.content_types if options.scope == MigrationScope.BY_TYPE else None
        document_ids = options.document_ids if options.scope == MigrationScope.SELECTED else None

        with self._session_scope() as session:
            rows = [
                {
                    "chunk_id": chunk.id,
                    "document_id": chunk.document_id,
                    "content": chunk.content,
                    "chunk_index": chunk.chunk_index,
                    "metadata": dict(chunk.chunk_metadata or {}),
                    "source_type": document.source_type,
                    "source_id": document.source_id,
                    "mime_type": document.mime_type,
                    "file_path": document.file_path,
                }
                for chunk, document in ChunkRepository(session).for_migration(source_types, document_ids)
            ]

        if not rows:
            return MigrationResult(success=True, message="No data to migrate")

        totals = Counter(row["document_id"] for row in rows)
        migrated = 0
        errors = 0
        started = time.monotonic()
        warned: Dict[str, bool] = {}

        with MigrationLogger(options.direction, self.settings.migration.log_dir) as log:
            log.info(
                "Starting migration to remote index",
                {"chunks": len(rows), "scope": options.scope.value, "batch_size": self.batch_size},
            )
            for batch_number, batch in enumerate(_batches(rows, self.batch_size), start=1):
                self._check_resources(started, log, warned)
                for row in batch:
                    chunk_id = row["chunk_id"]
                    try:
                        with self._session_scope() as session:
                            embedding = EmbeddingRepository(session).get_for_chunk(chunk_id)
                        if embedding is None:
                            errors += 1
                            log.warning(f"Chunk {chunk_id} has no stored embedding, skipping")
                            continue
                        metadata = self.reconstruct_metadata(row, totals[row["document_id"]])
                        remote.upsert(
                            [
                                VectorIndexEntry(
                                    id=str(chunk_id),
                                    values=deserialize_vector(embedding.embedding),
                                    metadata={**metadata, "content": row["content"]},
                                )
                            ]
                        )
                        migrated += 1
                    except RAGException as e:
                        errors += 1
                        log.error(f"Failed to migrate chunk {chunk_id}: {e.message}", e.details)
                log.info(f"Batch {batch_number} complete", {"migrated": migrated, "errors": errors})

            return self._finish(log, migrated, errors, started)

    def reconstruct_metadata(self, row: Dict[str, Any], total_chunks: int) -> Dict[str, Any]:
        """Full remote payload for a local chunk, merged over its stored metadata."""
        existing = row["metadata"]
        source_type = row["source_type"] or "post"
        content = row["content"]
        chunk_index = int(row["chunk_index"])
        now = self._clock().isoformat()

        extension = existing.get("extension") or "txt"
        mime_type = existing.get("mime_type") or "text/plain"
        if source_type == "file" and row["file_path"]:
            extension = os.path.splitext(row["file_path"])[1].lstrip(".").lower() or extension
            mime_type = row["mime_type"] or mimetypes.guess_type(row["file_path"])[0] or mime_type

        metadata = {
            **existing,
            "source": existing.get("source") or source_type,
            "source_type": source_type,
            "document_id": int(row["document_id"]),
            "post_id": row["source_id"] if source_type == "post" and row["source_id"] else existing.get("post_id"),
            "post_type": existing.get("post_type") or source_type,
            "mime_type": mime_type,
            "extension": extension,
            "last_modified": existing.get("last_modified") or now,
            "chunk_index": chunk_index,
            "total_chunks": int(total_chunks),
            "has_previous": chunk_index > 0,
            "has_next": chunk_index < total_chunks - 1,
            "has_overlap_prev": bool(existing.get("has_overlap_prev", False)),
            "has_overlap_next": bool(existing.get("has_overlap_next", False)),
            "size": len(content),
            "original_size": existing.get("original_size") or len(content),
            "migration_source": "local_to_remote",
            "migration_timestamp": now,
        }
        return {k: v for k, v in metadata.items() if v is not None}

    def migrate_to_local(self, options: MigrationOptions) -> MigrationResult:
        """Copy remote vectors into the local chunk and embedding tables."""
        remote = self._require_remote()
        filters: Dict[str, Any] = {}
        if options.scope == MigrationScope.BY_TYPE and options.content_types:
            filters["source_type"] = list(options.content_types)
        elif options.scope == MigrationScope.SELECTED and options.document_ids:
            filters["document_id"] = list(options.document_ids)

        migrated = 0
        errors = 0
        started = time.monotonic()
        warned: Dict[str, bool] = {}

        with MigrationLogger(options.direction, self.settings.migration.log_dir) as log:
            log.info("Starting migration to local store", {"scope": options.scope.value, "filters": filters})
            try:
                pages = remote.scan(batch_size=self.batch_size, filters=filters or None)
                for batch_number, batch in enumerate(pages, start=1):
                    self._check_resources(started, log, warned)
                    for vector in batch:
                        failure = self._store_vector_locally(vector)
                        if failure is None:
                            migrated += 1
                        else:
                            errors += 1
                            log.error(f"Failed to store vector {vector.id} locally: {failure}")
                    log.info(f"Batch {batch_number} complete", {"migrated": migrated, "errors": errors})
            except RAGException as e:
                log.error(f"Reading from the remote index failed: {e.message}", e.details)
                log.write_summary(migrated, errors + 1, time.monotonic() - started)
                raise MigrationError(
                    f"Failed to read vectors from the remote index: {e.message}",
                    migrated_count=migrated,
                    error_count=errors + 1,
                ) from e

            if migrated == 0 and errors == 0:
                log.info("No data to migrate from the remote index")
                log.write_summary(0, 0, time.monotonic() - started)
                return MigrationResult(
                    success=True, message="No data to migrate from the remote index", log_file=log.log_file
                )
            return self._finish(log, migrated, errors, started)

    def _store_vector_locally(self, vector: VectorMatch) -> Optional[str]:
        """Upsert one remote vector. Returns a failure reason, or None on success."""
        metadata = dict(vector.metadata)
        content = metadata.pop("content", None)
        document_id = metadata.pop("document_id", None)
        chunk_index = metadata.pop("chunk_index", 0)
        if not content or not document_id:
            return "Missing required data: content or document_id"
        if not vector.values:
            return "Vector has no values"
        if not str(vector.id).isdigit():
            return f"Vector id is not a chunk id: {vector.id}"

        chunk_id = int(vector.id)
        document_id = int(document_id)
        metadata["migration_source"] = "remote_to_local"
        metadata["migration_timestamp"] = self._clock().isoformat()
        try:
            with self._session_scope() as session:
                if not DocumentRepository(session).exists(document_id):
                    return f"Document does not exist: {document_id}"
                ChunkRepository(session).upsert_chunk(chunk_id, document_id, content, int(chunk_index), metadata)
                EmbeddingRepository(session).upsert(
                    chunk_id, serialize_vector(vector.values), self.embedding_model
                )
        except RAGException as e:
            return e.message
        return None

    def _finish(self, log: MigrationLogger, migrated: int, errors: int, started: float) -> MigrationResult:
        duration = time.monotonic() - started
        if self.cache is not None:
            self.cache.flush_group(CACHE_GROUP)
        message = f"Migration completed. Migrated: {migrated}, Errors: {errors}"
        if errors == 0:
            log.success(message)
        else:
            log.warning(message)
        log.write_summary(migrated, errors, duration)
        logger.info(message)
        return MigrationResult(
            success=errors == 0,
            message=message,
            migrated_count=migrated,
            error_count=errors,
            duration=round(duration, 3),
            log_file=log.log_file,
        )

    def get_available_content_types(self) -> Dict[str, Dict[str, Any]]:
        """Document source types with counts; post and page placeholders when empty."""
        with self._session_scope() as session:
            grouped = DocumentRepository(session).count_by_source_type()
        types = {
            source_type: {"name": source_type.replace("-", " ").replace("_", " ").capitalize(), "count": count}
            for source_type, count in grouped
        }
        if not types:
            types = {"post": {"name": "Posts", "count": 0}, "page": {"name": "Pages", "count": 0}}
        return types

    def clear_database(
        self, target: Union[ClearTarget, str], options: Optional[Dict[str, Any]] = None
    ) -> ClearResult:
        """
        Clear a store.

        Targets:
        - local: chunks and embeddings; documents are kept
        - knowledge_base: chunks, embeddings, knowledge-base links and documents
        - remote: every vector in the remote index
        """
        try:
            target = ClearTarget(target)
        except ValueError:
            return ClearResult(success=False, message="Invalid database specified")

        try:
            if target == ClearTarget.REMOTE:
                result = self._clear_remote()
            else:
                result = self._clear_local(include_documents=target == ClearTarget.KNOWLEDGE_BASE)
        except RAGException as e:
            logger.error(f"Database clear failed: {e.message}")
            return ClearResult(success=False, message=f"Failed to clear database: {e.message}")

        if result.success and self.cache is not None:
            self.cache.flush_group(CACHE_GROUP)
        return result

    def _clear_local(self, include_documents: bool) -> ClearResult:
        cleared: Dict[str, int] = {}
        with self._session_scope() as session:
            cleared["embeddings"] = EmbeddingRepository(session).delete_all()
            cleared["chunks"] = ChunkRepository(session).delete_all()
            if include_documents:
                cleared["content_relationships"] = ContentRelationshipRepository(session).delete_all()
                cleared["documents"] = DocumentRepository(session).delete_all()
        logger.info(f"Cleared local tables: {cleared}")
        return ClearResult(
            success=True,
            message=f"Cleared {len(cleared)} tables from local database",
            cleared_tables=cleared,
        )

    def _clear_remote(self) -> ClearResult:
        if not self.remote_configured:
            return ClearResult(success=False, message="Remote index is not configured")
        count = int(self.remote_index.describe_stats().get("total_vector_count", 0))
        self.remote_index.delete_all()
        return ClearResult(
            success=True,
            message="Cleared all vectors from the remote index",
            cleared_tables={"remote_vectors": count},
        )

    def list_logs(self) -> List[Dict[str, Any]]:
        return MigrationLogger.list_logs(self.settings.migration.log_dir)
