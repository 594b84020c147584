"""Retrieval result models."""

from typing import List

from pydantic import BaseModel, Field

from botkit_rag.models.chunk import ChunkMetadata


class SimilarChunk(BaseModel):
    """A nearest-neighbour match from the vector store."""

    chunk_id: int
    content: str
    similarity: float
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class NeighbourChunk(BaseModel):
    """A chunk adjacent to a match within the same document."""

    content: str
    chunk_index: int
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class SourceInfo(BaseModel):
    """Human readable origin of a chunk."""

    type: str = "unknown"
    title: str = ""
    url: str = ""


class ContextChunk(BaseModel):
    """A retrieved passage ready to be placed in a prompt."""

    content: str
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    relevance: float
    source: SourceInfo = Field(default_factory=SourceInfo)
    before: List[NeighbourChunk] = Field(default_factory=list)
    after: List[NeighbourChunk] = Field(default_factory=list)
