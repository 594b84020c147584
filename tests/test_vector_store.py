"""Tests for chunk and vector persistence and similarity search."""

from unittest.mock import MagicMock

import pytest

from botkit_rag.database.models import Chunk, Embedding
from botkit_rag.models.chunk import ChunkMetadata
from botkit_rag.models.embedding import ChunkEmbedding
from botkit_rag.models.vector import VectorMatch
from botkit_rag.repositories.chatbot_repository import ContentRelationshipRepository
from botkit_rag.services.vector_store import CACHE_GROUP, VectorStore
from botkit_rag.utils.errors import RemoteIndexError, StorageError
from botkit_rag.utils.vectors import serialize_vector


def _embedding(document_id, index, vector, content=None, **meta):
    return ChunkEmbedding(
        embedding=vector,
        model="test-model",
        content=content or f"doc {document_id} chunk {index}",
        metadata=ChunkMetadata(document_id=document_id, chunk_index=index, **meta),
    )


@pytest.fixture
def store(cache, session_scope, settings):
    return VectorStore(cache, session_scope=session_scope, settings=settings)


@pytest.fixture
def link(session_scope):
    def _link(bot_id, document_id):
        with session_scope() as session:
            ContentRelationshipRepository(session).link(bot_id, document_id)

    return _link


class TestLocalStore:
    def test_store_assigns_ids_and_persists_vectors(self, store, make_document, session_scope):
        doc = make_document()
        ids = store.store_embeddings([_embedding(doc, 0, [1.0, 0.0]), _embedding(doc, 1, [0.0, 1.0])])

        assert len(ids) == 2
        with session_scope() as session:
            chunk = session.get(Chunk, ids[0])
            assert chunk.content == f"doc {doc} chunk 0"
            assert "content" not in chunk.chunk_metadata
            assert session.query(Embedding).count() == 2

    def test_missing_document_id_raises(self, store):
        bad = ChunkEmbedding(embedding=[1.0], model="m", content="x", metadata=ChunkMetadata())
        with pytest.raises(StorageError):
            store.store_embeddings([bad])

    def test_find_similar_orders_by_similarity(self, store, make_document):
        doc = make_document()
        store.store_embeddings(
            [
                _embedding(doc, 0, [0.0, 1.0, 0.0]),
                _embedding(doc, 1, [1.0, 0.0, 0.0]),
                _embedding(doc, 2, [0.9, 0.1, 0.0]),
            ]
        )
        results = store.find_similar(None, [1.0, 0.0, 0.0], limit=2)

        assert [r.metadata.chunk_index for r in results] == [1, 2]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[0].similarity >= results[1].similarity

    def test_min_similarity_drops_weak_matches(self, store, make_document):
        doc = make_document()
        store.store_embeddings([_embedding(doc, 0, [0.0, 1.0]), _embedding(doc, 1, [1.0, 0.0])])
        results = store.find_similar(None, [1.0, 0.0], limit=5, min_similarity=0.5)
        assert [r.metadata.chunk_index for r in results] == [1]

    def test_owner_scopes_search_to_linked_documents(self, store, make_document, link):
        mine = make_document()
        other = make_document()
        store.store_embeddings([_embedding(mine, 0, [1.0, 0.0]), _embedding(other, 0, [1.0, 0.0])])
        link(1, mine)

        results = store.find_similar(1, [1.0, 0.0], limit=5)
        assert [r.metadata.document_id for r in results] == [mine]

    def test_owner_without_links_falls_back_to_all_chunks(self, store, make_document, link):
        first = make_document()
        second = make_document()
        store.store_embeddings([_embedding(first, 0, [1.0, 0.0]), _embedding(second, 0, [0.8, 0.2])])

        results = store.find_similar(42, [1.0, 0.0], limit=5)
        assert {r.metadata.document_id for r in results} == {first, second}

    def test_metadata_filters(self, store, make_document):
        doc = make_document()
        store.store_embeddings(
            [
                _embedding(doc, 0, [1.0, 0.0], source_type="url"),
                _embedding(doc, 1, [1.0, 0.0], source_type="file"),
            ]
        )
        results = store.find_similar(None, [1.0, 0.0], filters={"source_type": "url"})
        assert [r.metadata.source_type for r in results] == ["url"]

        results = store.find_similar(None, [1.0, 0.0], filters={"source_type": ["url", "file"]})
        assert len(results) == 2

    def test_chunk_with_vectors_from_several_models(self, store, make_document, session_scope):
        doc = make_document()
        legacy = ChunkEmbedding(
            embedding=[0.0, 0.0, 1.0],
            model="legacy-model",
            content="refunds within 30 days",
            metadata=ChunkMetadata(document_id=doc, chunk_index=0),
        )
        [chunk_id] = store.store_embeddings([legacy])
        with session_scope() as session:
            session.add(Embedding(chunk_id=chunk_id, model="test-model", embedding=serialize_vector([1.0, 0.0])))

        [unscoped] = store.find_similar(None, [1.0, 0.0], min_similarity=0.0)
        assert unscoped.chunk_id == chunk_id
        assert unscoped.similarity == pytest.approx(1.0)

        [scoped] = store.find_similar(None, [1.0, 0.0], model="test-model")
        assert scoped.similarity == pytest.approx(1.0)
        assert store.find_similar(None, [1.0, 0.0], model="legacy-model") == []

    def test_results_are_cached(self, store, make_document, cache):
        doc = make_document()
        store.store_embeddings([_embedding(doc, 0, [1.0, 0.0])])
        first = store.find_similar(None, [1.0, 0.0])
        assert any(key.startswith("similar_") for key in cache.keys(CACHE_GROUP))

        second = store.find_similar(None, [1.0, 0.0])
        assert [r.chunk_id for r in second] == [r.chunk_id for r in first]

    def test_storing_invalidates_cached_searches(self, store, make_document, cache):
        doc = make_document()
        store.store_embeddings([_embedding(doc, 0, [1.0, 0.0])])
        store.find_similar(None, [1.0, 0.0])
        store.store_embeddings([_embedding(doc, 1, [1.0, 0.0])])

        assert not any(key.startswith("similar_") for key in cache.keys(CACHE_GROUP))
        assert len(store.find_similar(None, [1.0, 0.0])) == 2

    def test_get_adjacent_chunks(self, store, make_document):
        doc = make_document()
        store.store_embeddings([_embedding(doc, i, [1.0, float(i)]) for i in range(6)])

        before, after = store.get_adjacent_chunks(doc, 2, window=2)
        assert [c.chunk_index for c in before] == [0, 1]
        assert [c.chunk_index for c in after] == [3, 4]
        assert after[0].metadata.document_id == doc

    def test_delete_document_embeddings(self, store, make_document, session_scope):
        doc = make_document()
        keep = make_document()
        store.store_embeddings([_embedding(doc, 0, [1.0, 0.0]), _embedding(doc, 1, [0.0, 1.0])])
        store.store_embeddings([_embedding(keep, 0, [1.0, 0.0])])

        result = store.delete_document_embeddings(doc)

        assert result == {"deleted_chunks": 2, "deleted_embeddings": 2, "success": True}
        with session_scope() as session:
            assert session.query(Chunk).filter(Chunk.document_id == doc).count() == 0
            assert session.query(Chunk).count() == 1
        assert [r.metadata.document_id for r in store.find_similar(None, [1.0, 0.0])] == [keep]

    def test_get_stats(self, store, make_document):
        doc = make_document()
        store.store_embeddings([_embedding(doc, 0, [1.0], content="abcd"), _embedding(doc, 1, [1.0], content="ab")])
        stats = store.get_stats()
        assert stats["total_chunks"] == 2
        assert stats["total_documents"] == 1
        assert stats["total_embeddings"] == 2
        assert stats["average_chunk_size"] == pytest.approx(3.0)


class TestRemoteStore:
    @pytest.fixture
    def remote(self):
        remote = MagicMock()
        remote.is_configured.return_value = True
        remote.upsert.return_value = 1
        return remote

    @pytest.fixture
    def remote_store(self, cache, session_scope, settings, remote):
        return VectorStore(cache, remote_index=remote, session_scope=session_scope, settings=settings)

    def test_vectors_go_to_remote_and_chunks_stay_local(self, remote_store, remote, make_document, session_scope):
        doc = make_document()
        ids = remote_store.store_embeddings([_embedding(doc, 0, [0.5, 0.5], content="hello")])

        entry = remote.upsert.call_args.args[0][0]
        assert entry.id == str(ids[0])
        assert entry.values == [0.5, 0.5]
        assert entry.metadata["content"] == "hello"
        assert entry.metadata["document_id"] == doc
        with session_scope() as session:
            assert session.query(Chunk).count() == 1
            assert session.query(Embedding).count() == 0

    def test_remote_failure_is_storage_error(self, remote_store, remote, make_document):
        remote.upsert.side_effect = RemoteIndexError("unreachable")
        with pytest.raises(StorageError):
            remote_store.store_embeddings([_embedding(make_document(), 0, [1.0])])

    def test_find_similar_delegates_to_remote(self, remote_store, remote):
        remote.query.return_value = [
            VectorMatch(id="3", score=0.8, metadata={"content": "relevant", "document_id": 1, "chunk_index": 0}),
            VectorMatch(id="4", score=0.1, metadata={"content": "weak", "document_id": 1, "chunk_index": 1}),
        ]
        results = remote_store.find_similar(None, [1.0, 0.0], limit=5, min_similarity=0.5)

        assert [(r.chunk_id, r.content) for r in results] == [(3, "relevant")]
        assert results[0].metadata.document_id == 1
        assert remote.query.call_args.kwargs["top_k"] == 5

    def test_owner_filter_uses_linked_document_ids(self, remote_store, remote, make_document, link):
        doc = make_document()
        link(7, doc)
        remote.query.return_value = []
        remote_store.find_similar(7, [1.0])
        assert remote.query.call_args.kwargs["filters"] == {"document_id": [doc]}

    def test_owner_without_documents_returns_nothing(self, remote_store, remote):
        assert remote_store.find_similar(8, [1.0]) == []
        remote.query.assert_not_called()

    def test_delete_removes_remote_vectors(self, remote_store, remote, make_document):
        doc = make_document()
        ids = remote_store.store_embeddings([_embedding(doc, 0, [1.0]), _embedding(doc, 1, [1.0])])
        remote.delete.return_value = 2

        result = remote_store.delete_document_embeddings(doc)

        assert sorted(remote.delete.call_args.args[0]) == sorted(ids)
        assert result["deleted_chunks"] == 2

    def test_stats_count_remote_vectors(self, remote_store, remote):
        remote.describe_stats.return_value = {"total_vector_count": 12}
        assert remote_store.get_stats()["total_embeddings"] == 12
