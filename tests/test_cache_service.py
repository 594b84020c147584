"""Tests for the Redis-backed cache."""

from unittest.mock import MagicMock

import pytest
import redis

from botkit_rag.services.cache_service import CacheService, make_cache_key


@pytest.fixture
def redis_client():
    return MagicMock()


@pytest.fixture
def cache_service(redis_client, settings):
    return CacheService(client=redis_client, settings=settings)


class TestMakeCacheKey:
    def test_dict_order_does_not_matter(self):
        assert make_cache_key("similar_", {"b": 1, "a": 2}) == make_cache_key("similar_", {"a": 2, "b": 1})

    def test_prefix_is_kept(self):
        assert make_cache_key("context_", "query", 3).startswith("context_")

    def test_different_parts_differ(self):
        assert make_cache_key("similar_", 1, [0.1]) != make_cache_key("similar_", 2, [0.1])


class TestCacheService:
    def test_get_decodes_json_and_namespaces_key(self, cache_service, redis_client):
        redis_client.get.return_value = '{"a": 1}'
        assert cache_service.get("k", group="search") == {"a": 1}
        redis_client.get.assert_called_once_with("botkit:search:k")

    def test_get_miss_returns_default(self, cache_service, redis_client):
        redis_client.get.return_value = None
        assert cache_service.get("k", default="fallback") == "fallback"

    def test_get_backend_error_returns_default(self, cache_service, redis_client):
        redis_client.get.side_effect = redis.ConnectionError("down")
        assert cache_service.get("k", group="search", default=[]) == []

    def test_get_undecodable_value_returns_default(self, cache_service, redis_client):
        redis_client.get.return_value = "{not json"
        assert cache_service.get("k") is None

    def test_set_with_ttl_uses_setex(self, cache_service, redis_client):
        assert cache_service.set("k", {"a": 1}, group="embeddings", ttl=60) is True
        redis_client.setex.assert_called_once_with("botkit:embeddings:k", 60, '{"a": 1}')

    def test_set_without_ttl(self, cache_service, redis_client):
        cache_service.set("k", [1, 2])
        redis_client.set.assert_called_once_with("botkit:default:k", "[1, 2]")

    def test_set_backend_error_returns_false(self, cache_service, redis_client):
        redis_client.setex.side_effect = redis.TimeoutError("slow")
        assert cache_service.set("k", 1, ttl=5) is False

    def test_delete_pattern_removes_matching_keys(self, cache_service, redis_client):
        redis_client.scan_iter.return_value = iter(["botkit:search:similar_1", "botkit:search:similar_2"])
        redis_client.delete.return_value = 2
        assert cache_service.delete_pattern("similar_*", group="search") == 2
        redis_client.scan_iter.assert_called_once_with(match="botkit:search:similar_*", count=500)
        redis_client.delete.assert_called_once_with("botkit:search:similar_1", "botkit:search:similar_2")

    def test_flush_group_deletes_everything_in_group(self, cache_service, redis_client):
        redis_client.scan_iter.return_value = iter([])
        assert cache_service.flush_group("conversations") == 0
        redis_client.scan_iter.assert_called_once_with(match="botkit:conversations:*", count=500)

    def test_delete_pattern_backend_error_is_swallowed(self, cache_service, redis_client):
        redis_client.scan_iter.side_effect = redis.ConnectionError("down")
        assert cache_service.delete_pattern("*", group="search") == 0

    def test_ping(self, cache_service, redis_client):
        redis_client.ping.return_value = True
        assert cache_service.ping() is True
        redis_client.ping.side_effect = redis.ConnectionError("down")
        assert cache_service.ping() is False
