"""Custom exception classes for the RAG pipeline."""

from typing import Any, Dict, Optional


class RAGException(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class NotFoundError(RAGException):
    """Exception raised when a resource is not found or not readable."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message += f": {resource_id}"
        error_details = details or {}
        error_details["resource"] = resource
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )


class DisallowedPathError(RAGException):
    """Exception raised when a file lies outside the allow-listed directories."""

    def __init__(self, path: str, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details["path"] = path
        super().__init__(
            message=f"File location not allowed: {path}",
            status_code=403,
            code="DISALLOWED_PATH",
            details=error_details,
        )


class UnsupportedFormatError(RAGException):
    """Exception raised for formats that have no text extractor."""

    def __init__(
        self,
        message: str = "Unsupported document format",
        extension: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if extension:
            error_details["extension"] = extension
        super().__init__(
            message=message,
            status_code=415,
            code="UNSUPPORTED_FORMAT",
            details=error_details,
        )


class FetchError(RAGException):
    """Exception raised when a URL cannot be fetched (network level)."""

    def __init__(
        self,
        message: str = "Failed to fetch document from URL",
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if url:
            error_details["url"] = url
        super().__init__(
            message=message,
            status_code=502,
            code="FETCH_ERROR",
            details=error_details,
        )


class HTTPStatusError(FetchError):
    """Exception raised when a URL responds with a non-200 status."""

    def __init__(
        self,
        http_status: int,
        message: Optional[str] = None,
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["http_status"] = http_status
        super().__init__(
            message=message or f"Failed to fetch document from URL: HTTP {http_status}",
            url=url,
            details=error_details,
        )
        self.code = "HTTP_STATUS_ERROR"
        self.http_status = http_status


class ParseError(RAGException):
    """Exception raised when content extraction fails."""

    def __init__(
        self,
        message: str = "Document parsing failed",
        file_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if file_type:
            error_details["file_type"] = file_type
        super().__init__(
            message=message,
            status_code=422,
            code="PARSE_ERROR",
            details=error_details,
        )


class ChunkingError(RAGException):
    """Exception raised for text chunking errors."""

    def __init__(self, message: str = "Text chunking failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="CHUNKING_ERROR", details=details)


class EmbeddingGenerationError(RAGException):
    """Exception raised for embedding generation errors."""

    def __init__(
        self,
        message: str = "Embedding generation failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            status_code=502,
            code="EMBEDDING_ERROR",
            details=error_details,
        )


class LLMProviderError(RAGException):
    """Exception raised when an LLM provider call fails."""

    def __init__(
        self,
        message: str = "LLM provider call failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            status_code=502,
            code="LLM_PROVIDER_ERROR",
            details=error_details,
        )


class StorageError(RAGException):
    """Exception raised when chunks or embeddings cannot be persisted."""

    def __init__(self, message: str = "Storage operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="STORAGE_ERROR", details=details)


class RemoteIndexError(RAGException):
    """Exception raised for remote vector index failures."""

    def __init__(
        self, message: str = "Remote index operation failed", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, status_code=502, code="REMOTE_INDEX_ERROR", details=details)


class RetrievalError(RAGException):
    """Exception raised when context retrieval fails."""

    def __init__(self, message: str = "Failed to find context", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="RETRIEVAL_ERROR", details=details)


class RateLimitedError(RAGException):
    """Exception raised when an identity exceeded its usage caps."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if reason:
            error_details["reason"] = reason
        super().__init__(message=message, status_code=429, code="RATE_LIMITED", details=error_details)
        self.reason = reason


class MigrationError(RAGException):
    """Exception raised when a migration cannot start or run."""

    def __init__(
        self,
        message: str = "Migration failed",
        migrated_count: int = 0,
        error_count: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["migrated_count"] = migrated_count
        error_details["error_count"] = error_count
        super().__init__(message=message, status_code=500, code="MIGRATION_ERROR", details=error_details)
        self.migrated_count = migrated_count
        self.error_count = error_count


class CacheError(RAGException):
    """Exception raised for cache backend failures."""

    def __init__(self, message: str = "Cache operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="CACHE_ERROR", details=details)


class DatabaseError(RAGException):
    """Exception raised for database errors."""

    def __init__(self, message: str = "Database operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="DATABASE_ERROR", details=details)


class RAGEngineError(RAGException):
    """Exception raised when ingestion or response generation fails."""

    def __init__(self, message: str = "RAG engine operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="RAG_ENGINE_ERROR", details=details)
