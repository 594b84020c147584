"""Conversation, chat and rate-limit models."""

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from botkit_rag.models.retrieval import ContextChunk


class ChatTurn(BaseModel):
    """One message in the conversation history window."""

    role: Literal["system", "user", "assistant"]
    content: str


class CompletionResult(BaseModel):
    """Normalized output of an LLM completion."""

    response: str
    usage: Dict[str, int] = Field(default_factory=dict)
    model: str

    @property
    def total_tokens(self) -> int:
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"])
        return int(self.usage.get("prompt_tokens", 0)) + int(self.usage.get("completion_tokens", 0))


class Attachment(BaseModel):
    """A file or image the user attached to a message."""

    url: str
    type: str = "file"
    id: Optional[str] = None


class BotConfig(BaseModel):
    """Per-chatbot behaviour, loaded from the chatbots table."""

    bot_id: int
    name: str = "Website Chatbot"
    personality: Optional[str] = None
    tone: Optional[str] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    context_length: Optional[int] = None
    min_chunk_relevance: Optional[float] = None
    max_messages: int = 10
    fallback_message: Optional[str] = None


class ChatResponse(BaseModel):
    """Result of a chat turn."""

    response: str
    context: List[ContextChunk] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RequestIdentity(BaseModel):
    """Who is chatting: an authenticated user or an anonymous IP address."""

    user_id: Optional[int] = None
    ip_address: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def guest_ip_hash(self) -> Optional[str]:
        if self.is_authenticated:
            return None
        return hashlib.sha256((self.ip_address or "127.0.0.1").encode("utf-8")).hexdigest()


class UsageStats(BaseModel):
    """Usage of one identity within the trailing window."""

    message_count: int = 0
    total_tokens: int = 0
    time_window: datetime


class RateLimitStatus(BaseModel):
    """Structured description of a limit that was hit."""

    limited: bool = True
    reason: Literal["token_limit", "message_limit"]
    message: str
    usage: int
    limit: int
    reset_time: datetime


class RemainingLimits(BaseModel):
    remaining_tokens: int
    remaining_messages: int
    usage: UsageStats
