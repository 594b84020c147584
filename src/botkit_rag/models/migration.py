"""Migration models."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class MigrationDirection(str, Enum):
    TO_REMOTE = "to_remote"
    TO_LOCAL = "to_local"


class MigrationScope(str, Enum):
    ALL = "all"
    SELECTED = "selected"
    BY_TYPE = "by_type"


class ClearTarget(str, Enum):
    LOCAL = "local"
    KNOWLEDGE_BASE = "knowledge_base"
    REMOTE = "remote"


class MigrationOptions(BaseModel):
    """Options accepted by start_migration."""

    direction: MigrationDirection
    scope: MigrationScope = MigrationScope.ALL
    content_types: List[str] = Field(default_factory=list, description="Source types for by_type scope")
    document_ids: List[int] = Field(default_factory=list, description="Documents for selected scope")


class MigrationLock(BaseModel):
    """The advisory in-progress flag."""

    started_at: datetime
    direction: MigrationDirection

    def age_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


class MigrationResult(BaseModel):
    """Summary of a migration run."""

    success: bool
    message: str
    migrated_count: int = 0
    error_count: int = 0
    duration: Optional[float] = None
    log_file: Optional[str] = None


class ClearResult(BaseModel):
    """Result of clearing a store."""

    success: bool
    message: str
    cleared_tables: Dict[str, int] = Field(default_factory=dict)
