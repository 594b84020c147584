"""Conversation history: cached sliding window over durable messages."""

from typing import Any, Dict, List, Optional

from botkit_rag.config import Settings, get_settings
from botkit_rag.database.session import get_session_context
from botkit_rag.models.conversation import ChatTurn, RequestIdentity
from botkit_rag.repositories.conversation_repository import ConversationRepository
from botkit_rag.services.cache_service import CacheService
from botkit_rag.services.vector_store import SessionScope
from botkit_rag.utils.logging import get_logger

logger = get_logger("conversation_service")

CACHE_GROUP = "conversations"


class ConversationHistory:
    """
    Short-term history of a chat session.

    The cached window is authoritative for prompt assembly; when it is empty
    (expired or never written) the persisted messages are used instead.
    The window keeps at most ``max_conversation_turns * 2`` messages.
    """

    def __init__(
        self,
        cache: CacheService,
        session_scope: SessionScope = get_session_context,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self._session_scope = session_scope
        self.max_turns = self.settings.chat.max_conversation_turns
        self.ttl = self.settings.cache.conversation_ttl

    @staticmethod
    def cache_key(session_id: str) -> str:
        return f"conversation_{session_id}"

    def get_history(self, session_id: str) -> List[ChatTurn]:
        cached = self.cache.get(self.cache_key(session_id), group=CACHE_GROUP)
        if cached:
            return [ChatTurn.model_validate(turn) for turn in cached]
        return self.get_messages(session_id, limit=self.max_turns * 2)

    def get_messages(self, session_id: str, limit: Optional[int] = None) -> List[ChatTurn]:
        """Persisted turns of a session, oldest first."""
        with self._session_scope() as session:
            repo = ConversationRepository(session)
            conversation = repo.get_by_session_id(session_id)
            if conversation is None:
                return []
            return [
                ChatTurn(role=m.role, content=m.content)
                for m in repo.get_messages(conversation.id, limit=limit)
            ]

    def save(self, session_id: str, chatbot_id: int, identity: Optional[RequestIdentity] = None) -> int:
        """Create or touch the conversation row. Returns its id."""
        with self._session_scope() as session:
            conversation = ConversationRepository(session).save(
                session_id, chatbot_id, identity or RequestIdentity()
            )
            return conversation.id

    def add_turn(
        self,
        session_id: str,
        conversation_id: int,
        turn: ChatTurn,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append a turn to the cached window and persist it as a message."""
        history = self.get_history(session_id)
        history.append(turn)
        window = self.max_turns * 2
        if len(history) > window:
            history = history[-window:]
        self.cache.set(
            self.cache_key(session_id),
            [t.model_dump() for t in history],
            group=CACHE_GROUP,
            ttl=self.ttl,
        )

        with self._session_scope() as session:
            ConversationRepository(session).add_message(
                conversation_id, turn.role, turn.content, metadata=metadata
            )
        logger.debug(f"Stored {turn.role} turn for conversation {session_id}")

    def clear(self, session_id: str) -> None:
        self.cache.delete(self.cache_key(session_id), group=CACHE_GROUP)
