"""Repositories for chatbots and their knowledge-base links."""

import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botkit_rag.database.models import Chatbot, ContentRelationship
from botkit_rag.models.conversation import BotConfig
from botkit_rag.repositories.base import BaseRepository
from botkit_rag.utils.errors import DatabaseError

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE = "knowledge_base"


class ChatbotRepository(BaseRepository[Chatbot]):
    """Repository for chatbot configuration."""

    def __init__(self, session: Session):
        super().__init__(Chatbot, session)

    def get_config(self, bot_id: int) -> Optional[BotConfig]:
        """Resolve a chatbot row into its response configuration."""
        bot = self.get_by_id(bot_id)
        if bot is None:
            return None
        settings = bot.model_settings or {}
        templates = bot.messages_template or {}
        return BotConfig(
            bot_id=bot.id,
            name=bot.name,
            personality=settings.get("personality"),
            tone=settings.get("tone"),
            model=settings.get("model"),
            max_tokens=settings.get("max_tokens"),
            temperature=settings.get("temperature"),
            context_length=settings.get("context_length"),
            min_chunk_relevance=settings.get("min_chunk_relevance"),
            max_messages=settings.get("max_messages") or 10,
            fallback_message=templates.get("fallback"),
        )


class ContentRelationshipRepository(BaseRepository[ContentRelationship]):
    """Ownership links between chatbots and documents."""

    def __init__(self, session: Session):
        super().__init__(ContentRelationship, session)

    def link(self, bot_id: int, document_id: int) -> ContentRelationship:
        """Add a document to a chatbot's knowledge base (no-op if already linked)."""
        try:
            existing = self.session.execute(
                select(ContentRelationship).where(
                    ContentRelationship.source_type == "chatbot",
                    ContentRelationship.source_id == bot_id,
                    ContentRelationship.target_type == "document",
                    ContentRelationship.target_id == document_id,
                    ContentRelationship.relationship_type == KNOWLEDGE_BASE,
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error checking link {bot_id}->{document_id}: {e}")
            raise DatabaseError("Failed to check knowledge base link") from e
        if existing is not None:
            return existing
        return self.create(
            source_type="chatbot",
            source_id=bot_id,
            target_type="document",
            target_id=document_id,
            relationship_type=KNOWLEDGE_BASE,
        )

    def document_ids_for_bot(self, bot_id: int) -> List[int]:
        try:
            result = self.session.execute(
                select(ContentRelationship.target_id)
                .where(ContentRelationship.source_type == "chatbot")
                .where(ContentRelationship.source_id == bot_id)
                .where(ContentRelationship.relationship_type == KNOWLEDGE_BASE)
                .order_by(ContentRelationship.target_id)
            )
            return [row[0] for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing documents of chatbot {bot_id}: {e}")
            raise DatabaseError("Failed to list knowledge base documents") from e

    def delete_all(self) -> int:
        try:
            result = self.session.execute(
                delete(ContentRelationship).where(ContentRelationship.relationship_type == KNOWLEDGE_BASE)
            )
            self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error clearing knowledge base links: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to clear knowledge base links") from e
