"""Remote vector index backed by Qdrant."""

import json
import re
from typing import Any, Dict, Iterator, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.vector import VectorIndexEntry, VectorMatch
from botkit_rag.utils.errors import RemoteIndexError
from botkit_rag.utils.logging import get_logger

logger = get_logger("remote_index")

ESSENTIAL_FIELDS = frozenset(
    {
        "content",
        "document_id",
        "chunk_index",
        "post_type",
        "source_type",
        "source",
        "post_id",
        "mime_type",
        "extension",
        "last_modified",
        "total_chunks",
        "has_previous",
        "has_next",
        "has_overlap_prev",
        "has_overlap_next",
        "size",
        "original_size",
        "migration_source",
        "migration_timestamp",
    }
)
MAX_FIELD_LENGTH = 1000
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


def clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reduce chunk metadata to the payload stored in the remote index.

    Only essential fields are kept and nulls are dropped. Lists and dicts are
    JSON encoded. Strings other than ``content`` are truncated to 1000
    characters, and control characters are stripped. Booleans and numbers
    keep their type.
    """
    cleaned: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None or key not in ESSENTIAL_FIELDS:
            continue
        if isinstance(value, (bool, int, float)):
            cleaned[key] = value
            continue
        if isinstance(value, (list, dict)):
            value = json.dumps(value)
        text = str(value)
        if key != "content" and len(text) > MAX_FIELD_LENGTH:
            text = text[:MAX_FIELD_LENGTH] + "..."
        if key != "content":
            text = _CONTROL_CHARS.sub("", text)
        else:
            # newlines and tabs carry structure in chunk text
            text = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", text)
        if text.strip():
            cleaned[key] = text
    return cleaned


def _build_filter(filters: Optional[Dict[str, Any]]) -> Optional[Filter]:
    if not filters:
        return None
    conditions = []
    for key, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            conditions.append(FieldCondition(key=key, match=MatchAny(any=list(value))))
        else:
            conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))
    return Filter(must=conditions)


def _point_id(entry_id: Any) -> Any:
    text = str(entry_id)
    return int(text) if text.isdigit() else text


class RemoteVectorIndex:
    """
    Qdrant implementation of the remote vector index.

    Strategy:
    - One collection per installation (REMOTE_INDEX_COLLECTION)
    - Point id is the integer chunk id; payload is the cleaned chunk metadata
    - The collection is created on first upsert, sized to the first vector
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[QdrantClient] = None):
        self.settings = settings or get_settings()
        self.collection = self.settings.remote_index.collection
        self._client = client
        self._collection_ready = False

    def is_configured(self) -> bool:
        return self._client is not None or self.settings.remote_index.is_configured

    def _get_client(self) -> QdrantClient:
        if self._client is not None:
            return self._client
        if not self.settings.remote_index.is_configured:
            raise RemoteIndexError("Remote index is not properly configured")
        self._client = QdrantClient(
            url=self.settings.remote_index.url,
            api_key=self.settings.remote_index.api_key,
            timeout=self.settings.remote_index.timeout,
        )
        return self._client

    def ensure_collection(self, vector_size: int) -> None:
        """Create the collection with cosine distance if it does not exist."""
        if self._collection_ready:
            return
        client = self._get_client()
        try:
            if not client.collection_exists(self.collection):
                client.create_collection(
                    collection_name=self.collection,
                    vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
                )
                logger.info(f"Created remote collection {self.collection} (vector_size={vector_size})")
            self._collection_ready = True
        except Exception as e:
            raise RemoteIndexError(
                "Failed to ensure remote collection",
                details={"collection": self.collection, "error": str(e)},
            ) from e

    def upsert(self, entries: Sequence[VectorIndexEntry]) -> int:
        if not entries:
            return 0
        for entry in entries:
            if not entry.values:
                raise RemoteIndexError(
                    "Vector is missing values", details={"id": entry.id}
                )
        self.ensure_collection(len(entries[0].values))
        points = [
            PointStruct(id=_point_id(entry.id), vector=list(entry.values), payload=clean_metadata(entry.metadata))
            for entry in entries
        ]
        try:
            self._get_client().upsert(collection_name=self.collection, points=points, wait=True)
        except Exception as e:
            raise RemoteIndexError(
                "Failed to upsert vectors", details={"count": len(points), "error": str(e)}
            ) from e
        logger.debug(f"Remote upsert complete: collection={self.collection}, points={len(points)}")
        return len(points)

    def query(
        self,
        vector: Sequence[float],
        top_k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        include_values: bool = False,
    ) -> List[VectorMatch]:
        try:
            response = self._get_client().query_points(
                collection_name=self.collection,
                query=list(vector),
                limit=top_k,
                query_filter=_build_filter(filters),
                with_payload=True,
                with_vectors=include_values,
            )
        except UnexpectedResponse as e:
            if getattr(e, "status_code", None) == 404:
                return []
            raise RemoteIndexError("Remote query failed", details={"error": str(e)}) from e
        except Exception as e:
            raise RemoteIndexError("Remote query failed", details={"error": str(e)}) from e
        return [
            VectorMatch(
                id=str(point.id),
                score=float(point.score or 0.0),
                metadata=dict(point.payload or {}),
                values=list(point.vector) if include_values and point.vector else None,
            )
            for point in response.points
        ]

    def delete(self, ids: Sequence[Any]) -> int:
        if not ids:
            return 0
        try:
            self._get_client().delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[_point_id(i) for i in ids]),
                wait=True,
            )
        except Exception as e:
            raise RemoteIndexError("Failed to delete vectors", details={"error": str(e)}) from e
        return len(ids)

    def fetch(self, ids: Sequence[Any]) -> List[VectorMatch]:
        try:
            points = self._get_client().retrieve(
                collection_name=self.collection,
                ids=[_point_id(i) for i in ids],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise RemoteIndexError("Failed to fetch vectors", details={"error": str(e)}) from e
        return [
            VectorMatch(id=str(p.id), metadata=dict(p.payload or {}), values=list(p.vector or []))
            for p in points
        ]

    def scan(self, batch_size: int = 100, filters: Optional[Dict[str, Any]] = None) -> Iterator[List[VectorMatch]]:
        """Yield every stored vector, with values, one page at a time."""
        client = self._get_client()
        offset = None
        while True:
            try:
                points, offset = client.scroll(
                    collection_name=self.collection,
                    scroll_filter=_build_filter(filters),
                    limit=batch_size,
                    offset=offset,
                    with_payload=True,
                    with_vectors=True,
                )
            except Exception as e:
                raise RemoteIndexError("Failed to scan vectors", details={"error": str(e)}) from e
            if points:
                yield [
                    VectorMatch(id=str(p.id), metadata=dict(p.payload or {}), values=list(p.vector or []))
                    for p in points
                ]
            if offset is None:
                break

    def describe_stats(self) -> Dict[str, Any]:
        client = self._get_client()
        try:
            if not client.collection_exists(self.collection):
                return {"total_vector_count": 0, "collection": self.collection}
            info = client.get_collection(self.collection)
        except Exception as e:
            raise RemoteIndexError("Failed to describe remote index", details={"error": str(e)}) from e
        return {
            "total_vector_count": int(info.points_count or 0),
            "collection": self.collection,
            "status": str(info.status),
        }

    def delete_all(self) -> bool:
        """Drop every vector by recreating the collection lazily on the next upsert."""
        client = self._get_client()
        try:
            if client.collection_exists(self.collection):
                client.delete_collection(self.collection)
        except Exception as e:
            raise RemoteIndexError("Failed to delete all vectors", details={"error": str(e)}) from e
        self._collection_ready = False
        logger.info(f"Deleted all vectors in remote collection {self.collection}")
        return True
