"""Pydantic models shared across services."""

from botkit_rag.models.chunk import ChunkMetadata, TextChunk
from botkit_rag.models.conversation import (
    Attachment,
    BotConfig,
    ChatResponse,
    ChatTurn,
    CompletionResult,
    RateLimitStatus,
    RemainingLimits,
    RequestIdentity,
    UsageStats,
)
from botkit_rag.models.document import DocumentStatus, LoadedDocument, ProcessingResult, SourceType
from botkit_rag.models.embedding import ChunkEmbedding
from botkit_rag.models.migration import (
    ClearResult,
    ClearTarget,
    MigrationDirection,
    MigrationLock,
    MigrationOptions,
    MigrationResult,
    MigrationScope,
)
from botkit_rag.models.retrieval import ContextChunk, NeighbourChunk, SimilarChunk, SourceInfo
from botkit_rag.models.vector import VectorIndexEntry, VectorMatch

__all__ = [
    "Attachment",
    "BotConfig",
    "ChatResponse",
    "ChatTurn",
    "ChunkEmbedding",
    "ChunkMetadata",
    "ClearResult",
    "ClearTarget",
    "CompletionResult",
    "ContextChunk",
    "DocumentStatus",
    "LoadedDocument",
    "MigrationDirection",
    "MigrationLock",
    "MigrationOptions",
    "MigrationResult",
    "MigrationScope",
    "NeighbourChunk",
    "ProcessingResult",
    "RateLimitStatus",
    "RemainingLimits",
    "RequestIdentity",
    "SimilarChunk",
    "SourceInfo",
    "SourceType",
    "TextChunk",
    "UsageStats",
    "VectorIndexEntry",
    "VectorMatch",
]
