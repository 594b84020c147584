"""Embedding models."""

from typing import List

from pydantic import BaseModel, Field

from botkit_rag.models.chunk import ChunkMetadata


class ChunkEmbedding(BaseModel):
    """Embedding vector for a specific text chunk."""

    embedding: List[float] = Field(..., description="Embedding vector")
    model: str = Field(..., description="Embedding model used")
    content: str = Field(..., description="Text that was embedded")
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
