"""End-to-end tests for ingestion and chat responses."""

import os

import pytest

from botkit_rag.database.models import Chunk, Document, Embedding
from botkit_rag.models.conversation import Attachment, BotConfig, ChatTurn, RequestIdentity
from botkit_rag.models.retrieval import ContextChunk, SourceInfo
from botkit_rag.repositories.chatbot_repository import ContentRelationshipRepository
from botkit_rag.repositories.conversation_repository import ConversationRepository
from botkit_rag.repositories.document_repository import DocumentRepository
from botkit_rag.services.chunking_service import TextChunker
from botkit_rag.services.conversation_service import ConversationHistory
from botkit_rag.services.document_loader import DocumentLoader
from botkit_rag.services.embedding_service import EmbeddingsGenerator
from botkit_rag.services.rag_engine import RAGEngine, find_banned_keyword, format_context_for_prompt
from botkit_rag.services.rate_limiter import RateLimiter
from botkit_rag.services.retriever import Retriever
from botkit_rag.services.vector_store import VectorStore
from botkit_rag.utils.errors import RAGEngineError, RateLimitedError

POLICY = "Our refund policy allows returns within 30 days of purchase."


@pytest.fixture
def rag(settings, cache, provider, session_scope):
    embeddings = EmbeddingsGenerator(provider, cache, settings=settings, sleep=lambda seconds: None)
    vector_store = VectorStore(cache, session_scope=session_scope, settings=settings)
    return RAGEngine(
        loader=DocumentLoader(settings=settings),
        chunker=TextChunker(settings=settings),
        embeddings=embeddings,
        vector_store=vector_store,
        retriever=Retriever(vector_store, embeddings, cache, settings=settings),
        llm=provider,
        history=ConversationHistory(cache, session_scope=session_scope, settings=settings),
        rate_limiter=RateLimiter(session_scope=session_scope, settings=settings),
        session_scope=session_scope,
        settings=settings,
    )


@pytest.fixture
def bot(make_chatbot):
    return make_chatbot(model_settings={"min_chunk_relevance": 0.0, "personality": "Shop Assistant"})


def _chunk_count(session_scope, document_id):
    with session_scope() as session:
        return session.query(Chunk).filter(Chunk.document_id == document_id).count()


class TestProcessDocument:
    def test_raw_content_is_chunked_embedded_and_linked(self, rag, session_scope, bot):
        result = rag.process_document(POLICY, "custom", options={"title": "Policies", "bot_id": bot})

        assert result.chunk_count == 1
        assert result.embedding_count == 1
        assert result.stored_count == 1
        assert result.is_update is False
        with session_scope() as session:
            document = session.get(Document, result.document_id)
            assert document.status == "completed"
            assert document.title == "Policies"
            assert ContentRelationshipRepository(session).document_ids_for_bot(bot) == [result.document_id]

    def test_reingestion_replaces_previous_chunks(self, rag, session_scope):
        first = rag.process_document(POLICY, "custom")
        second = rag.process_document(POLICY, "custom", document_id=first.document_id)

        assert second.is_update is True
        assert second.cleanup_result["deleted_chunks"] == 1
        assert _chunk_count(session_scope, first.document_id) == 1

    def test_source_id_resolves_existing_document(self, rag):
        first = rag.process_document(POLICY, "product", options={"source_id": 77})
        second = rag.process_document(POLICY, "product", options={"source_id": 77})
        assert first.document_id == second.document_id

    def test_file_source(self, rag, upload_dir):
        path = os.path.join(upload_dir, "faq.txt")
        with open(path, "w") as f:
            f.write(POLICY)

        result = rag.process_document(path, "file")
        assert result.metadata["file_path"] == path
        assert result.chunk_count == 1

    def test_failure_marks_document_failed(self, rag, session_scope, make_document, tmp_path):
        document_id = make_document(source_type="file")

        with pytest.raises(RAGEngineError) as exc_info:
            rag.process_document(str(tmp_path / "outside.txt"), "file", document_id=document_id)

        assert "File location not allowed" in exc_info.value.message
        assert exc_info.value.details["document_id"] == document_id
        with session_scope() as session:
            assert session.get(Document, document_id).status == "failed"
            assert "File location not allowed" in DocumentRepository(session).get_meta(document_id)["error"]


def test_process_queue(rag, session_scope, make_document, upload_dir):
    path = os.path.join(upload_dir, "queued.txt")
    with open(path, "w") as f:
        f.write(POLICY)
    good = make_document(source_type="file", file_path=path)
    bad = make_document(source_type="file")

    assert rag.process_queue(limit=5) == {"processed": 1, "failed": 1}

    with session_scope() as session:
        repo = DocumentRepository(session)
        assert session.get(Document, good).status == "completed"
        assert session.get(Document, good).mime_type == "text/plain"
        assert repo.get_meta(good)["chunk_count"] == 1
        assert session.get(Document, bad).status == "failed"
        assert repo.get_meta(bad)["error"] == "No valid source found for document"

    assert rag.process_queue() == {"processed": 0, "failed": 0}


class TestGenerateResponse:
    def test_answers_from_context_and_records_turns(self, rag, provider, session_scope, bot):
        rag.process_document(POLICY, "custom", options={"title": "Policies", "bot_id": bot})

        response = rag.generate_response("What is the refund policy?", "session-1", bot)

        assert response.response == "Answer from context"
        assert response.context[0].content == POLICY
        assert response.metadata["tokens"]["total_tokens"] == 42
        assert response.metadata["context_chunks"] == 1

        system_prompt = provider.completions[-1]["messages"][0]["content"]
        assert "Shop Assistant for Example Store" in system_prompt
        assert POLICY in system_prompt

        with session_scope() as session:
            repo = ConversationRepository(session)
            conversation = repo.get_by_session_id("session-1")
            messages = repo.get_messages(conversation.id)
            assert [(m.role, m.message_metadata["tokens"]) for m in messages] == [("user", 30), ("assistant", 12)]

    def test_history_is_sent_on_the_next_turn(self, rag, provider, bot):
        rag.process_document(POLICY, "custom", options={"bot_id": bot})
        rag.generate_response("What is the refund policy?", "session-1", bot)
        rag.generate_response("And for sale items?", "session-1", bot)

        messages = provider.completions[-1]["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[1]["content"] == "What is the refund policy?"

    def test_greeting_skips_retrieval(self, rag, provider, bot, settings):
        response = rag.generate_response("Hello", "s", bot)
        assert response.response == settings.chat.greeting_reply
        assert provider.completions == []
        assert provider.embed_calls == []

    def test_banned_keyword_short_circuits(self, rag, provider, bot):
        response = rag.generate_response("Is this a SCAM?", "s", bot)
        assert response.response == '⚠️ The word "scam" is not allowed in this chat.'
        assert provider.completions == []

    def test_fallback_when_no_context(self, rag, provider, make_chatbot):
        bot = make_chatbot(messages_template={"fallback": "Please ask our staff."})
        response = rag.generate_response("What is the refund policy?", "s", bot)
        assert response.response == "Please ask our staff."
        assert provider.completions == []

    def test_rate_limited_caller(self, rag, bot, settings):
        settings.rate_limit.message_limit = 0
        with pytest.raises(RateLimitedError) as exc_info:
            rag.generate_response("What is the refund policy?", "s", bot, identity=RequestIdentity(user_id=1))
        assert exc_info.value.reason == "message_limit"

    def test_unknown_chatbot(self, rag):
        with pytest.raises(RAGEngineError) as exc_info:
            rag.generate_response("What is the refund policy?", "s", 999)
        assert exc_info.value.message == "Failed to generate response: Chatbot not found"


class TestStreamResponse:
    def test_deltas_reach_callback(self, rag, provider, bot):
        rag.process_document(POLICY, "custom", options={"bot_id": bot})
        received = []

        response = rag.stream_response("What is the refund policy?", "s", bot, received.append)

        assert "".join(received) == "Answer from context"
        assert response.response == "Answer from context"
        assert provider.completions[-1]["stream"] is True

    def test_short_circuit_is_sent_through_callback(self, rag, bot, settings):
        received = []
        rag.stream_response("hi", "s", bot, received.append)
        assert received == [settings.chat.greeting_reply]


def test_build_conversation_messages(rag):
    bot = BotConfig(bot_id=1, personality="Shop Assistant", tone="calm", max_messages=2)
    history = [
        ChatTurn(role="user", content="first"),
        ChatTurn(role="assistant", content="second"),
        ChatTurn(role="user", content="third"),
    ]
    context = [
        ContextChunk(content="Returns take 30 days.", relevance=0.9, source=SourceInfo(type="url", title="FAQ", url="https://example.com/faq"))
    ]

    messages = rag.build_conversation_messages(
        "Can I return it?", history, context, bot, [Attachment(url="https://example.com/a.png", type="image")]
    )

    assert messages[0]["role"] == "system"
    assert "Shop Assistant for Example Store" in messages[0]["content"]
    assert "calm tone" in messages[0]["content"]
    assert "Source: FAQ (https://example.com/faq)\nReturns take 30 days." in messages[0]["content"]
    assert [m["content"] for m in messages[1:3]] == ["second", "third"]
    assert messages[-1]["content"].startswith("Can I return it?\n\nThe user has attached the following files.")
    assert messages[-1]["content"].endswith("[image](https://example.com/a.png)")


def test_format_context_labels_sources():
    chunk = ContextChunk(content="body", relevance=0.5, source=SourceInfo(type="post", url="https://e.com/?p=1"))
    assert format_context_for_prompt([chunk]) == "Source: https://e.com/?p=1 (https://e.com/?p=1)\nbody"


def test_find_banned_keyword_matches_whole_words():
    assert find_banned_keyword("no spam please", ["spam"]) == "spam"
    assert find_banned_keyword("spammy offer", ["spam"]) is None
    assert find_banned_keyword("anything", []) is None


PARAGRAPHS = [
    "Our store opens at nine every morning and closes at six in the evening on weekdays.",
    "Refunds are issued within thirty days when the product arrives damaged or defective.",
    "Shipping abroad takes between two and three weeks depending on customs inspections.",
]


class TestMultiChunkDocument:
    @pytest.fixture
    def paragraph_rag(self, rag, settings):
        rag.chunker = TextChunker(chunk_size=200, chunk_overlap=30, min_chunk_size=20, settings=settings)
        return rag

    @staticmethod
    def _stored(session_scope, document_id):
        with session_scope() as session:
            chunks = (
                session.query(Chunk).filter(Chunk.document_id == document_id).order_by(Chunk.chunk_index).all()
            )
            embeddings = session.query(Embedding).join(Chunk).filter(Chunk.document_id == document_id).count()
            return [(c.chunk_index, dict(c.chunk_metadata)) for c in chunks], embeddings

    def test_chunks_are_stored_in_document_order(self, paragraph_rag, session_scope):
        result = paragraph_rag.process_document("\n\n".join(PARAGRAPHS), "custom")

        chunks, embeddings = self._stored(session_scope, result.document_id)
        assert [index for index, _ in chunks] == [0, 1, 2]
        assert embeddings == 3
        assert [meta["total_chunks"] for _, meta in chunks] == [3, 3, 3]
        assert [meta["has_previous"] for _, meta in chunks] == [False, True, True]
        assert [meta["has_next"] for _, meta in chunks] == [True, True, False]
        assert [meta["has_overlap_prev"] for _, meta in chunks] == [False, True, True]
        assert [meta["has_overlap_next"] for _, meta in chunks] == [True, True, False]

    def test_reingestion_is_idempotent(self, paragraph_rag, session_scope):
        text = "\n\n".join(PARAGRAPHS)
        first = paragraph_rag.process_document(text, "custom")
        before = self._stored(session_scope, first.document_id)

        second = paragraph_rag.process_document(text, "custom", document_id=first.document_id)

        assert second.is_update is True
        assert second.cleanup_result["deleted_chunks"] == 3
        after = self._stored(session_scope, first.document_id)
        assert [index for index, _ in after[0]] == [index for index, _ in before[0]]
        assert after[1] == before[1] == 3
        with session_scope() as session:
            assert session.query(Chunk).count() == 3

    def test_verbatim_paragraph_query_ranks_its_chunk_first(self, paragraph_rag):
        paragraph_rag.process_document("\n\n".join(PARAGRAPHS), "custom")

        context = paragraph_rag.retriever.find_context(
            PARAGRAPHS[1], None, {"max_results": 3, "context_window": 0, "min_similarity": 0.0}
        )

        assert len(context) == 3
        assert context[0].metadata.chunk_index == 1
        assert PARAGRAPHS[1] in context[0].content
        assert context[0].relevance > context[1].relevance

    def test_duplicate_content_is_collapsed_in_context(self, paragraph_rag):
        paragraph_rag.process_document(PARAGRAPHS[1], "custom")
        paragraph_rag.process_document(PARAGRAPHS[1], "custom")

        deduplicated = paragraph_rag.retriever.find_context(PARAGRAPHS[1], None, {"context_window": 0})
        assert [c.content for c in deduplicated] == [PARAGRAPHS[1]]

        kept = paragraph_rag.retriever.find_context(
            PARAGRAPHS[1], None, {"context_window": 0, "deduplication_threshold": 1.01}
        )
        assert len(kept) == 2
