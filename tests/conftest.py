"""Pytest configuration and fixtures."""

import fnmatch
import json
import re
from contextlib import contextmanager
from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from botkit_rag.config import (
    ChatSettings,
    DatabaseSettings,
    EmbeddingSettings,
    LLMSettings,
    LoaderSettings,
    MigrationSettings,
    Settings,
)
from botkit_rag.database.models import Base, Chatbot, Document
from botkit_rag.database.session import _enable_sqlite_foreign_keys
from botkit_rag.models.conversation import CompletionResult
from botkit_rag.services.llm_providers import LLMProvider

VOCAB_SIZE = 32


def bag_of_words(text: str) -> List[float]:
    """Deterministic word-bucket vector so related texts score higher."""
    vector = [0.0] * VOCAB_SIZE
    for word in re.findall(r"[a-z]+", text.lower()):
        vector[sum(map(ord, word)) % VOCAB_SIZE] += 1.0
    return vector


class DictCache:
    """In-memory stand-in for CacheService with the same grouping and JSON semantics."""

    def __init__(self):
        self.store: Dict[tuple, str] = {}

    def get(self, key: str, group: str = "default", default: Any = None) -> Any:
        raw = self.store.get((group, key))
        return default if raw is None else json.loads(raw)

    def set(self, key: str, value: Any, group: str = "default", ttl=None) -> bool:
        self.store[(group, key)] = json.dumps(value, default=str)
        return True

    def delete(self, key: str, group: str = "default") -> bool:
        return self.store.pop((group, key), None) is not None

    def delete_pattern(self, pattern: str, group: str = "default") -> int:
        doomed = [k for k in self.store if k[0] == group and fnmatch.fnmatchcase(k[1], pattern)]
        for k in doomed:
            del self.store[k]
        return len(doomed)

    def flush_group(self, group: str) -> int:
        return self.delete_pattern("*", group)

    def keys(self, group: str) -> List[str]:
        return sorted(k[1] for k in self.store if k[0] == group)


class FakeProvider(LLMProvider):
    """Provider with canned completions and bag-of-words embeddings."""

    name = "fake"

    def __init__(self, settings, reply: str = "Answer from context"):
        super().__init__(settings)
        self.reply = reply
        self.usage = {"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42}
        self.completions: List[Dict[str, Any]] = []
        self.embed_calls: List[List[str]] = []

    def _complete(self, messages, **params):
        self.completions.append({"messages": messages, **params})
        return CompletionResult(response=self.reply, usage=dict(self.usage), model=params["model"])

    def _stream(self, messages, callback, **params):
        self.completions.append({"messages": messages, "stream": True, **params})
        words = self.reply.split(" ")
        for i, word in enumerate(words):
            callback(word if i == 0 else " " + word)
        return CompletionResult(response=self.reply, usage=dict(self.usage), model=params["model"])

    def _embed(self, texts, model):
        self.embed_calls.append(list(texts))
        return [bag_of_words(t) for t in texts]


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every filesystem path into tmp_path."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    return Settings(
        database=DatabaseSettings(url="sqlite://"),
        embedding=EmbeddingSettings(embedding_batch_pause=0.0, embedding_max_retries=1),
        llm=LLMSettings(max_retries=1),
        chat=ChatSettings(banned_keywords_str="spam, scam", site_name="Example Store"),
        loader=LoaderSettings(allowed_dirs_str=str(upload_dir), temp_dir=str(tmp_path / "temp")),
        migration=MigrationSettings(log_dir=str(tmp_path / "logs")),
    )


@pytest.fixture
def upload_dir(settings):
    return settings.loader.allowed_dirs[0]


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    """Committing session scope bound to the test engine."""
    factory = sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False)

    @contextmanager
    def scope():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@pytest.fixture
def cache():
    return DictCache()


@pytest.fixture
def provider(settings):
    return FakeProvider(settings)


@pytest.fixture
def make_document(session_scope):
    def _make(source_type: str = "custom", **fields) -> int:
        with session_scope() as session:
            document = Document(source_type=source_type, **fields)
            session.add(document)
            session.flush()
            return document.id

    return _make


@pytest.fixture
def make_chatbot(session_scope):
    def _make(name: str = "Support Bot", model_settings=None, messages_template=None) -> int:
        with session_scope() as session:
            bot = Chatbot(
                name=name,
                model_settings=model_settings or {},
                messages_template=messages_template or {},
            )
            session.add(bot)
            session.flush()
            return bot.id

    return _make
