"""Database package: ORM models and session management."""

from botkit_rag.database.models import (
    AppOption,
    Base,
    Chatbot,
    Chunk,
    ContentRelationship,
    Conversation,
    Document,
    DocumentMeta,
    Embedding,
    Message,
)
from botkit_rag.database.session import (
    close_db,
    create_db_engine,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)

__all__ = [
    "AppOption",
    "Base",
    "Chatbot",
    "Chunk",
    "ContentRelationship",
    "Conversation",
    "Document",
    "DocumentMeta",
    "Embedding",
    "Message",
    "close_db",
    "create_db_engine",
    "get_engine",
    "get_session_context",
    "get_session_factory",
    "init_db",
]
