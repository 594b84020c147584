"""Remote vector index wire models."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class VectorIndexEntry(BaseModel):
    """A vector as exchanged with the remote index (id is the string chunk id)."""

    id: str = Field(..., description="String form of the local chunk id")
    values: List[float] = Field(..., description="Embedding vector")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Flattened chunk metadata")


class VectorMatch(BaseModel):
    """A vector returned from a remote query, fetch or scan."""

    id: str
    score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    values: Optional[List[float]] = None
