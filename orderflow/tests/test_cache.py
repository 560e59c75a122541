import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from redis.exceptions import ConnectionError as RedisConnectionError

from orderflow.services.cache import CACHE_MISS, PRIVATE_TTL_CEILING, CacheStats, TwoTierCache
from orderflow.services.cache_backends import (
    DELETE_SCRIPT,
    INVALIDATE_SCRIPT,
    SET_SCRIPT,
    MemorySharedCache,
    RedisSharedCache,
)
from orderflow.services.metrics import CACHE_REQUESTS_TOTAL, MetricStore

KEYS = st.sampled_from([f"k{i}" for i in range(5)])
TAGS = st.sampled_from(["t0", "t1", "none"])


@pytest.fixture
def shared(clock):
    return MemorySharedCache(clock=clock)


@pytest.fixture
def two_tier(shared, clock):
    return TwoTierCache(shared, default_ttl=300, local_ttl_ceiling=30, clock=clock)


class TestCacheStats:
    @pytest.mark.asyncio
    async def test_only_get_moves_counters(self, two_tier):
        await two_tier.set("a", 1)
        await two_tier.set("b", 2)
        assert two_tier.stats.total_requests == 0

        await two_tier.get("a")
        await two_tier.get("missing")

        assert two_tier.stats.snapshot() == {
            "hits": 1,
            "misses": 1,
            "evictions": 0,
            "total_requests": 2,
            "hit_rate": 0.5,
        }

    @settings(max_examples=150, deadline=None)
    @given(
        st.lists(
            st.one_of(
                st.tuples(st.just("set"), KEYS, st.integers(0, 100), st.sampled_from([1, 5, 60])),
                st.tuples(st.just("get"), KEYS),
                st.tuples(st.just("advance"), st.sampled_from([0.5, 3, 10, 31])),
                st.tuples(st.just("invalidate"), TAGS),
            ),
            max_size=60,
        )
    )
    def test_hits_plus_misses_equals_total_for_any_sequence(self, operations):
        async def run():
            now = [1_700_000_000.0]

            def clock():
                return now[0]

            cache = TwoTierCache(
                MemorySharedCache(clock=clock), default_ttl=300, local_ttl_ceiling=30, clock=clock
            )
            gets = 0
            for op in operations:
                if op[0] == "set":
                    _, key, value, ttl = op
                    await cache.set(key, value, ttl=ttl, tags=(f"t{int(key[1:]) % 2}",))
                elif op[0] == "get":
                    await cache.get(op[1])
                    gets += 1
                elif op[0] == "advance":
                    now[0] += op[1]
                else:
                    await cache.invalidate_tag(op[1])
                stats = cache.stats
                assert stats.hits + stats.misses == stats.total_requests
            assert cache.stats.total_requests == gets
            assert 0.0 <= cache.stats.hit_rate <= 1.0

        asyncio.run(run())

    def test_empty_hit_rate(self):
        assert CacheStats().hit_rate == 0.0


class TestExpiry:
    @pytest.mark.asyncio
    async def test_entry_expires(self, two_tier, clock):
        await two_tier.set("k", {"v": 1}, ttl=10)

        clock.advance(9)
        assert await two_tier.get("k") == {"v": 1}

        clock.advance(2)
        assert await two_tier.get("k") is CACHE_MISS
        assert two_tier.stats.evictions == 1

    @pytest.mark.asyncio
    async def test_local_backfill_never_outlives_shared(self, two_tier, shared, clock):
        await two_tier.set("k", "v", ttl=100)
        two_tier.local.clear()

        # Read from shared, backfilled locally for at most the ceiling
        assert await two_tier.get("k") == "v"
        clock.advance(31)
        assert await two_tier.get("k") == "v"

        # Shared entry gone, local copy must not keep it alive past its expiry
        await shared.delete("k")
        clock.advance(31)
        assert await two_tier.get("k") is CACHE_MISS

    @pytest.mark.asyncio
    async def test_rejects_non_positive_ttl(self, two_tier):
        with pytest.raises(ValueError):
            await two_tier.set("k", 1, ttl=0)

    @pytest.mark.asyncio
    async def test_identity_scoped_entries(self, two_tier, clock):
        await two_tier.set("profile", {"name": "a"}, ttl=3600, identity="alice")

        assert await two_tier.get("profile") is CACHE_MISS
        assert await two_tier.get("profile", identity="bob") is CACHE_MISS
        assert await two_tier.get("profile", identity="alice") == {"name": "a"}

        clock.advance(PRIVATE_TTL_CEILING + 1)
        assert await two_tier.get("profile", identity="alice") is CACHE_MISS


class TestTagInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_removes_tagged_entries_only(self, two_tier):
        await two_tier.set("product:P1", {"stock": 1}, tags=("product:P1",))
        await two_tier.set("catalog:all", [1], tags=("catalog",))
        await two_tier.set("product:P2", {"stock": 2}, tags=("product:P2",))

        removed = await two_tier.invalidate_tag("product:P1")

        assert removed == 1
        assert await two_tier.get("product:P1") is CACHE_MISS
        # Disjoint tags survive in the shared tier even though local was flushed
        assert await two_tier.get("catalog:all") == [1]
        assert await two_tier.get("product:P2") == {"stock": 2}

    @pytest.mark.asyncio
    async def test_unknown_tag(self, two_tier):
        assert await two_tier.invalidate_tag("nothing") == 0

    @pytest.mark.asyncio
    async def test_get_or_load(self, two_tier):
        loader = AsyncMock(return_value={"id": 1})

        first = await two_tier.get_or_load("k", loader, tags=("t",))
        second = await two_tier.get_or_load("k", loader, tags=("t",))
        await two_tier.invalidate_tag("t")
        third = await two_tier.get_or_load("k", loader, tags=("t",))

        assert first == second == third == {"id": 1}
        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_delete(self, two_tier):
        await two_tier.set("k", 1)
        await two_tier.delete("k")
        assert await two_tier.get("k") is CACHE_MISS


def scripted_redis(error=None):
    """MagicMock client whose registered Lua scripts are AsyncMocks keyed by source."""
    client = MagicMock()
    client.scripts = {}

    def register(source):
        script = AsyncMock(side_effect=error) if error else AsyncMock(return_value=0)
        client.scripts[source] = script
        return script

    client.register_script = MagicMock(side_effect=register)
    return client


def failing_redis():
    client = scripted_redis(error=RedisConnectionError("Connection refused"))
    client.get = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    return client


class TestSharedTierFailure:
    @pytest.mark.asyncio
    async def test_unreachable_redis_degrades_to_miss(self, clock):
        metrics = MetricStore(clock=clock)
        cache = TwoTierCache(RedisSharedCache(failing_redis()), metrics=metrics, clock=clock)

        assert await cache.get("k") is CACHE_MISS
        await cache.set("k", "v")
        # The local tier still serves the write
        assert await cache.get("k") == "v"
        assert await cache.invalidate_tag("t") == 0

        assert cache.stats.misses == 1
        assert cache.stats.hits == 1
        assert metrics.query(CACHE_REQUESTS_TOTAL, {"result": "miss"}).count == 1

    @pytest.mark.asyncio
    async def test_get_or_load_falls_back_to_loader(self, clock):
        cache = TwoTierCache(RedisSharedCache(failing_redis()), clock=clock)
        loader = AsyncMock(return_value=[1, 2])

        assert await cache.get_or_load("k", loader) == [1, 2]
        loader.assert_awaited_once()


class TestRedisSharedCache:
    @pytest.mark.asyncio
    async def test_round_trip_through_client(self):
        stored = {}
        client = scripted_redis()

        async def fake_get(key):
            return stored.get(key)

        client.get = AsyncMock(side_effect=fake_get)
        backend = RedisSharedCache(client, prefix="test:")
        stored["test:k"] = b'{"payload": "[1, 2]", "expires_at": 123.5, "tags": ["t"]}'

        entry = await backend.get("k")

        assert entry.payload == "[1, 2]"
        assert entry.expires_at == 123.5
        client.get.assert_awaited_once_with("test:k")

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_dropped(self):
        client = scripted_redis()
        client.get = AsyncMock(return_value=b"not json")
        backend = RedisSharedCache(client, prefix="test:")

        assert await backend.get("k") is None
        client.scripts[DELETE_SCRIPT].assert_awaited_once_with(keys=["test:k"], args=["k", "test:tag:"])

    @pytest.mark.asyncio
    async def test_set_indexes_tags_by_expiry(self):
        client = scripted_redis()
        backend = RedisSharedCache(client, prefix="test:")

        await backend.set(
            "product:P1", '{"stock": 1}', expires_at=1060.0, ttl=60, tags=["product:P1", "catalog", "catalog"]
        )

        call = client.scripts[SET_SCRIPT].await_args
        assert call.kwargs["keys"] == ["test:product:P1", "test:tag:catalog", "test:tag:product:P1"]
        body, ttl_ms, score, written_at, member, tag_prefix = call.kwargs["args"]
        assert json.loads(body) == {
            "payload": '{"stock": 1}',
            "expires_at": 1060.0,
            "tags": ["catalog", "product:P1"],
        }
        assert ttl_ms == 60_000
        # Members scored by expiry; anything that expired before this write is pruned
        assert float(score) == 1060.0
        assert float(written_at) == 1000.0
        assert (member, tag_prefix) == ("product:P1", "test:tag:")

    def test_tag_sets_shrink_and_expire(self):
        # Rewrites drop old memberships, expired members are pruned, tags carry a TTL
        assert "ZREM" in SET_SCRIPT and "body['tags']" in SET_SCRIPT
        assert "ZREMRANGEBYSCORE" in SET_SCRIPT
        assert "PEXPIRE" in SET_SCRIPT
        assert "ZREM" in DELETE_SCRIPT

    @pytest.mark.asyncio
    async def test_invalidate_tag_returns_removed_count(self):
        client = scripted_redis()
        backend = RedisSharedCache(client, prefix="test:")
        client.scripts[INVALIDATE_SCRIPT].return_value = 3

        assert await backend.invalidate_tag("catalog") == 3
        client.scripts[INVALIDATE_SCRIPT].assert_awaited_once_with(keys=["test:tag:catalog"], args=["test:"])
