"""Per-identity usage caps over a trailing 24 hour window."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from botkit_rag.config import Settings, get_settings
from botkit_rag.database.models import utcnow
from botkit_rag.database.session import get_session_context
from botkit_rag.models.conversation import (
    RateLimitStatus,
    RemainingLimits,
    RequestIdentity,
    UsageStats,
)
from botkit_rag.repositories.conversation_repository import ConversationRepository
from botkit_rag.services.vector_store import SessionScope
from botkit_rag.utils.errors import RateLimitedError
from botkit_rag.utils.logging import get_logger

logger = get_logger("rate_limiter")

WINDOW = timedelta(hours=24)


def start_of_next_day(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


class RateLimiter:
    """
    Token and message caps per user id or hashed guest IP.

    Usage is computed from persisted messages: tokens are summed from every
    message's ``tokens`` metadata, while only user messages count toward the
    message cap.
    """

    def __init__(
        self,
        session_scope: SessionScope = get_session_context,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._session_scope = session_scope
        self._clock = clock

    @property
    def token_limit(self) -> int:
        return self.settings.rate_limit.token_limit

    @property
    def message_limit(self) -> int:
        return self.settings.rate_limit.message_limit

    def check_user_limits(self, identity: RequestIdentity) -> Optional[RateLimitStatus]:
        """
        Check an identity against both caps.

        Returns:
            None when the caller is allowed, otherwise a description of the
            limit that was hit (token limit is checked first)

        Raises:
            RateLimitedError: Only when usage cannot be computed and the
                fail-open policy is disabled
        """
        try:
            stats = self._usage(identity)
        except Exception as e:
            return self._on_failure(e)

        reset_time = start_of_next_day(self._clock())
        if stats.total_tokens >= self.token_limit:
            return RateLimitStatus(
                reason="token_limit",
                message=(
                    f"You have reached your token limit of {self.token_limit:,} for the day. "
                    "Please try again tomorrow."
                ),
                usage=stats.total_tokens,
                limit=self.token_limit,
                reset_time=reset_time,
            )
        if stats.message_count >= self.message_limit:
            return RateLimitStatus(
                reason="message_limit",
                message=(
                    f"You have reached your message limit of {self.message_limit} for the day. "
                    "Please try again tomorrow."
                ),
                usage=stats.message_count,
                limit=self.message_limit,
                reset_time=reset_time,
            )
        return None

    def _on_failure(self, error: Exception) -> None:
        if self.settings.rate_limit.fail_open:
            logger.warning(f"Rate limit check failed, allowing request: {error}")
            return None
        logger.error(f"Rate limit check failed, rejecting request: {error}")
        raise RateLimitedError(
            "Usage limits could not be verified. Please try again later.",
            details={"error": str(error)},
        ) from error

    def _usage(self, identity: RequestIdentity) -> UsageStats:
        since = self._clock() - WINDOW
        with self._session_scope() as session:
            message_count, total_tokens = ConversationRepository(session).usage_since(identity, since)
        return UsageStats(message_count=message_count, total_tokens=total_tokens, time_window=since)

    def get_user_usage_stats(self, identity: RequestIdentity) -> UsageStats:
        """Usage within the trailing window; zeros if it cannot be computed."""
        try:
            return self._usage(identity)
        except Exception as e:
            logger.warning(f"Could not compute usage stats: {e}")
            return UsageStats(time_window=self._clock() - WINDOW)

    def get_remaining_limits(self, identity: RequestIdentity) -> RemainingLimits:
        stats = self.get_user_usage_stats(identity)
        return RemainingLimits(
            remaining_tokens=max(0, self.token_limit - stats.total_tokens),
            remaining_messages=max(0, self.message_limit - stats.message_count),
            usage=stats,
        )
