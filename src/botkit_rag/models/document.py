"""Document models for loaded content."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SourceType(str, Enum):
    """Source types the loader knows how to fetch.

    Any other source type is treated as raw content supplied by the caller.
    """

    FILE = "file"
    URL = "url"
    POST = "post"


class DocumentStatus(str, Enum):
    """Processing states of a document."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LoadedDocument(BaseModel):
    """Normalized text plus the metadata extracted while loading it."""

    content: str = Field(..., description="Plain text content")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Source metadata")


class ProcessingResult(BaseModel):
    """Outcome of ingesting one document."""

    document_id: int
    chunk_count: int = 0
    embedding_count: int = 0
    stored_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_update: bool = False
    cleanup_result: Optional[Dict[str, Any]] = None
