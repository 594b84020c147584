"""Chunk models for document ingestion."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

_STRING_FIELDS = (
    "source_type",
    "source",
    "title",
    "url",
    "file_path",
    "post_type",
    "mime_type",
    "extension",
    "last_modified",
    "created_at",
)


class ChunkMetadata(BaseModel):
    """
    Metadata carried by every chunk.

    Fields every component depends on are named; anything else (provider
    specific values, migration tracking, custom ingestion options) lives in
    ``extras`` and is merged back when flattened.
    """

    document_id: Optional[int] = Field(default=None, description="Owning document id")
    chunk_index: int = Field(default=0, ge=0, description="0-based position within the document")
    total_chunks: int = Field(default=1, ge=0, description="Number of chunks in the document")
    has_previous: bool = False
    has_next: bool = False
    has_overlap_prev: bool = False
    has_overlap_next: bool = False
    size: int = Field(default=0, ge=0, description="Length of the chunk content incl. overlap")
    original_size: int = Field(default=0, ge=0, description="Length before overlap was added")

    source_type: Optional[str] = Field(default=None, description="file, url, post or a custom type")
    source: Optional[str] = Field(default=None, description="Path, URL or 'post'")
    title: Optional[str] = None
    url: Optional[str] = None
    file_path: Optional[str] = None
    post_id: Optional[int] = None
    post_type: Optional[str] = None
    mime_type: Optional[str] = None
    extension: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: Optional[str] = None

    extras: Dict[str, Any] = Field(default_factory=dict, description="Open extension map")

    @field_validator(*_STRING_FIELDS, mode="before")
    @classmethod
    def coerce_to_string(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @classmethod
    def named_fields(cls) -> set:
        return set(cls.model_fields) - {"extras"}

    @classmethod
    def from_flat_dict(cls, data: Optional[Dict[str, Any]]) -> "ChunkMetadata":
        """Build metadata from a flat key/value map, routing unknown keys to extras."""
        data = dict(data or {})
        named = cls.named_fields()
        known = {k: v for k, v in data.items() if k in named and v is not None and v != ""}
        extras = {k: v for k, v in data.items() if k not in named and k != "extras"}
        extras.update(data.get("extras") or {})
        return cls(**known, extras=extras)

    def to_flat_dict(self) -> Dict[str, Any]:
        """Flatten named fields and extras into one map (named fields win)."""
        named = {k: v for k, v in self.model_dump(exclude={"extras"}).items() if v is not None}
        return {**self.extras, **named}


class TextChunk(BaseModel):
    """A chunk of text produced by the chunker."""

    content: str = Field(..., description="Chunk text content (with overlap)")
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)

    @property
    def chunk_index(self) -> int:
        return self.metadata.chunk_index
