"""Repository for conversations and messages."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botkit_rag.database.models import Conversation, Message, utcnow
from botkit_rag.models.conversation import RequestIdentity
from botkit_rag.repositories.base import BaseRepository
from botkit_rag.utils.errors import DatabaseError

logger = logging.getLogger(__name__)


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for conversation operations."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_by_session_id(self, session_id: str) -> Optional[Conversation]:
        try:
            return self.session.execute(
                select(Conversation).where(Conversation.session_id == session_id)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error getting conversation {session_id}: {e}")
            raise DatabaseError("Failed to retrieve conversation") from e

    def save(self, session_id: str, chatbot_id: int, identity: RequestIdentity) -> Conversation:
        """Create the conversation for a session id, or touch the existing one."""
        conversation = self.get_by_session_id(session_id)
        if conversation is not None:
            return self.update(conversation.id, updated_at=utcnow())
        return self.create(
            session_id=session_id,
            chatbot_id=chatbot_id,
            user_id=identity.user_id,
            guest_ip=identity.guest_ip_hash,
        )

    def add_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        try:
            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                message_metadata=metadata or {},
            )
            self.session.add(message)
            self.session.flush()
            return message
        except SQLAlchemyError as e:
            logger.error(f"Error adding message to conversation {conversation_id}: {e}")
            self.session.rollback()
            raise DatabaseError("Failed to store message") from e

    def get_messages(self, conversation_id: int, limit: Optional[int] = None) -> List[Message]:
        """Messages in insertion order; with a limit, only the most recent ones."""
        try:
            query = select(Message).where(Message.conversation_id == conversation_id)
            if limit:
                query = query.order_by(Message.id.desc()).limit(limit)
                messages = list(self.session.execute(query).scalars())
                messages.reverse()
                return messages
            return list(self.session.execute(query.order_by(Message.id)).scalars())
        except SQLAlchemyError as e:
            logger.error(f"Error listing messages of conversation {conversation_id}: {e}")
            raise DatabaseError("Failed to list messages") from e

    def usage_since(self, identity: RequestIdentity, since: datetime) -> Tuple[int, int]:
        """
        Usage of an identity after a point in time.

        Returns:
            (user message count, total tokens across all messages)
        """
        if identity.is_authenticated:
            owner = Conversation.user_id == identity.user_id
        else:
            owner = Conversation.guest_ip == identity.guest_ip_hash
        try:
            rows = self.session.execute(
                select(Message.role, Message.message_metadata)
                .join(Conversation, Message.conversation_id == Conversation.id)
                .where(owner)
                .where(Message.created_at >= since)
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Error computing usage: {e}")
            raise DatabaseError("Failed to compute usage") from e

        message_count = 0
        total_tokens = 0
        for role, metadata in rows:
            if role == "user":
                message_count += 1
            try:
                total_tokens += int((metadata or {}).get("tokens") or 0)
            except (TypeError, ValueError):
                continue
        return message_count, total_tokens
