"""Data access layer."""

from botkit_rag.repositories.base import BaseRepository
from botkit_rag.repositories.chatbot_repository import ChatbotRepository, ContentRelationshipRepository
from botkit_rag.repositories.chunk_repository import ChunkRepository, EmbeddingRepository
from botkit_rag.repositories.conversation_repository import ConversationRepository
from botkit_rag.repositories.document_repository import DocumentRepository
from botkit_rag.repositories.options_repository import OptionsRepository

__all__ = [
    "BaseRepository",
    "ChatbotRepository",
    "ChunkRepository",
    "ContentRelationshipRepository",
    "ConversationRepository",
    "DocumentRepository",
    "EmbeddingRepository",
    "OptionsRepository",
]
