"""Unit tests for the Redis backend against a mocked async client."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authedge.storage.errors import StoreUnavailable
from authedge.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    client = MagicMock()
    client.register_script.side_effect = lambda script: AsyncMock(name="script")
    with patch("authedge.storage.redis_cache.aioredis.from_url", return_value=client):
        cache = RedisCache("redis://localhost:6379/0")
    for name in ("get", "mget", "set", "exists", "delete", "srem", "smembers", "aclose"):
        setattr(client, name, AsyncMock())
    return cache


class TestTtl:
    def test_ttl_from_absolute_expiry(self):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=120)
        assert RedisCache._ttl_seconds(expires_at) in (119, 120)

    def test_ttl_never_below_one_second(self):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        assert RedisCache._ttl_seconds(past) == 1

    def test_naive_timestamps_are_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=60)
        assert RedisCache._ttl_seconds(naive) in (59, 60)


class TestCommands:
    async def test_set_uses_expiry_seconds(self, cache):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=300)
        await cache.set("k", "v", expires_at=expires_at)

        args, kwargs = cache.client.set.call_args
        assert args == ("k", "v")
        assert kwargs["ex"] in (299, 300)

    async def test_replace_only_overwrites_existing_keys(self, cache):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=300)
        cache.client.set.return_value = None
        assert await cache.replace("k", "v", expires_at=expires_at) is False

        args, kwargs = cache.client.set.call_args
        assert args == ("k", "v")
        assert kwargs["xx"] is True

        cache.client.set.return_value = True
        assert await cache.replace("k", "v", expires_at=expires_at) is True

    async def test_incr_runs_script_with_window(self, cache):
        cache._incr.return_value = 3
        assert await cache.incr("counter", ttl_seconds=60) == 3
        cache._incr.assert_awaited_once_with(keys=["counter"], args=[60])

    async def test_add_member_runs_script(self, cache):
        expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        await cache.add_member("idx", "h1", expires_at=expires_at)

        kwargs = cache._add_member.call_args.kwargs
        assert kwargs["keys"] == ["idx"]
        assert kwargs["args"][0] == "h1"

    async def test_get_many_skips_empty_batches(self, cache):
        assert await cache.get_many([]) == []
        cache.client.mget.assert_not_called()

        cache.client.mget.return_value = ["a", None]
        assert await cache.get_many(["k1", "k2"]) == ["a", None]

    async def test_members_returns_set(self, cache):
        cache.client.smembers.return_value = {"a", "b"}
        assert await cache.members("idx") == {"a", "b"}

    async def test_delete_counts(self, cache):
        cache.client.delete.return_value = 2
        assert await cache.delete("a", "b") == 2
        assert await cache.delete() == 0


class TestFailures:
    async def test_redis_errors_become_store_unavailable(self, cache):
        cache.client.get.side_effect = RedisConnectionError("connection refused")

        with patch("authedge.storage.redis_cache.logger") as mock_logger:
            with pytest.raises(StoreUnavailable) as excinfo:
                await cache.get("k")

        assert excinfo.value.detail == {"op": "get"}
        assert mock_logger.error.call_args[0][0] == "redis_operation_failed"

    async def test_script_errors_become_store_unavailable(self, cache):
        cache._incr.side_effect = RedisConnectionError("timeout")
        with pytest.raises(StoreUnavailable):
            await cache.incr("counter", ttl_seconds=60)
