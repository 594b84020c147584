"""Tests for per-identity usage caps."""

from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest

from botkit_rag.config import RateLimitSettings
from botkit_rag.database.models import utcnow
from botkit_rag.models.conversation import RequestIdentity
from botkit_rag.repositories.conversation_repository import ConversationRepository
from botkit_rag.services.rate_limiter import RateLimiter, start_of_next_day
from botkit_rag.utils.errors import RateLimitedError

USER = RequestIdentity(user_id=5)


@pytest.fixture
def limited_settings(settings):
    settings.rate_limit = RateLimitSettings(token_limit=100, message_limit=3)
    return settings


@pytest.fixture
def limiter(session_scope, limited_settings):
    return RateLimiter(session_scope=session_scope, settings=limited_settings)


@pytest.fixture
def record(session_scope, make_chatbot):
    bot_id = make_chatbot()

    def _record(identity, session_id, turns):
        with session_scope() as session:
            repo = ConversationRepository(session)
            conversation = repo.save(session_id, bot_id, identity)
            for role, tokens in turns:
                repo.add_message(conversation.id, role, "text", metadata={"tokens": tokens})

    return _record


def test_under_limits_is_allowed(limiter, record):
    record(USER, "s1", [("user", 10), ("assistant", 20)])
    assert limiter.check_user_limits(USER) is None


def test_token_limit(limiter, record):
    record(USER, "s1", [("user", 40), ("assistant", 60)])
    status = limiter.check_user_limits(USER)

    assert status.reason == "token_limit"
    assert status.usage == 100
    assert status.limit == 100
    assert status.message.startswith("You have reached your token limit of 100 for the day.")


def test_message_limit_counts_user_messages_only(limiter, record):
    record(USER, "s1", [("user", 1), ("assistant", 1), ("user", 1), ("assistant", 1)])
    assert limiter.check_user_limits(USER) is None

    record(USER, "s2", [("user", 1)])
    status = limiter.check_user_limits(USER)
    assert status.reason == "message_limit"
    assert status.usage == 3


def test_token_limit_is_reported_before_message_limit(limiter, record):
    record(USER, "s1", [("user", 50), ("user", 50), ("user", 0)])
    assert limiter.check_user_limits(USER).reason == "token_limit"


def test_usage_outside_window_is_ignored(session_scope, limited_settings, record):
    record(USER, "s1", [("user", 100)])
    tomorrow = RateLimiter(
        session_scope=session_scope,
        settings=limited_settings,
        clock=lambda: utcnow() + timedelta(hours=25),
    )
    assert tomorrow.check_user_limits(USER) is None


def test_guests_are_tracked_by_ip(limiter, record):
    guest = RequestIdentity(ip_address="203.0.113.7")
    record(guest, "g1", [("user", 100)])

    assert limiter.check_user_limits(guest).reason == "token_limit"
    assert limiter.check_user_limits(RequestIdentity(ip_address="203.0.113.8")) is None
    assert limiter.check_user_limits(USER) is None


@contextmanager
def _broken_scope():
    raise RuntimeError("database unavailable")
    yield


def test_failure_allows_request_when_failing_open(limited_settings):
    limiter = RateLimiter(session_scope=_broken_scope, settings=limited_settings)
    assert limiter.check_user_limits(USER) is None


def test_failure_rejects_request_when_failing_closed(limited_settings):
    limited_settings.rate_limit.fail_open = False
    limiter = RateLimiter(session_scope=_broken_scope, settings=limited_settings)
    with pytest.raises(RateLimitedError):
        limiter.check_user_limits(USER)


def test_remaining_limits(limiter, record):
    record(USER, "s1", [("user", 30), ("assistant", 10)])
    remaining = limiter.get_remaining_limits(USER)

    assert remaining.remaining_tokens == 60
    assert remaining.remaining_messages == 2
    assert remaining.usage.message_count == 1


def test_remaining_limits_never_negative(limiter, record):
    record(USER, "s1", [("user", 500)] * 4)
    remaining = limiter.get_remaining_limits(USER)
    assert (remaining.remaining_tokens, remaining.remaining_messages) == (0, 0)


def test_usage_stats_are_zero_on_failure(limited_settings):
    limiter = RateLimiter(session_scope=_broken_scope, settings=limited_settings)
    stats = limiter.get_user_usage_stats(USER)
    assert (stats.message_count, stats.total_tokens) == (0, 0)


def test_start_of_next_day():
    assert start_of_next_day(datetime(2024, 3, 5, 14, 7, 9)) == datetime(2024, 3, 6)
    assert start_of_next_day(datetime(2024, 12, 31, 23, 59)) == datetime(2025, 1, 1)
