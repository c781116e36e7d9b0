"""Tests for the TTL cache."""

from __future__ import annotations

import shutil

import anyio
import pytest

from rdapx.services.cache_service import CacheRecord, TTLCache

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock) -> TTLCache:
    return TTLCache(directory=tmp_path / "cache", clock=clock)


# ============================================================================
# get / put / invalidate
# ============================================================================


class TestCacheRoundTrip:
    async def test_put_then_get(self, cache: TTLCache, clock: FakeClock):
        await cache.put("ip:1.1.1.1", b'{"handle": "X"}', ttl=60)

        record = await cache.get("ip:1.1.1.1")

        assert record is not None
        assert record.payload == b'{"handle": "X"}'
        assert record.fetched_at == clock.now
        assert record.ttl == 60

    async def test_record_expires_at_ttl_boundary(self, cache: TTLCache, clock: FakeClock):
        await cache.put("ip:1.1.1.1", b"{}", ttl=60)

        clock.now += 59.9
        assert await cache.get("ip:1.1.1.1") is not None

        clock.now += 0.1
        assert await cache.get("ip:1.1.1.1") is None

    async def test_missing_key(self, cache: TTLCache):
        assert await cache.get("asn:13335") is None
        assert cache.misses == 1

    async def test_last_writer_wins(self, cache: TTLCache):
        await cache.put("k", b"first", ttl=60)
        await cache.put("k", b"second", ttl=60)

        record = await cache.get("k")

        assert record is not None
        assert record.payload == b"second"

    async def test_put_replaces_expired_record(self, cache: TTLCache, clock: FakeClock):
        await cache.put("k", b"old", ttl=10)
        clock.now += 20
        assert await cache.get("k") is None

        await cache.put("k", b"new", ttl=10)

        record = await cache.get("k")
        assert record is not None
        assert record.payload == b"new"

    async def test_zero_ttl_is_not_stored(self, cache: TTLCache):
        await cache.put("k", b"value", ttl=60)
        await cache.put("k", b"value", ttl=0)

        assert await cache.get("k") is None

    async def test_invalidate(self, cache: TTLCache, tmp_path):
        await cache.put("k", b"value", ttl=60)

        await cache.invalidate("k")

        assert await cache.get("k") is None
        assert list((tmp_path / "cache").glob("*.json")) == []

    async def test_invalidate_missing_key(self, cache: TTLCache):
        await cache.invalidate("never-stored")

    async def test_negative_record(self, cache: TTLCache):
        await cache.put("domain:nx.com", b"not found", ttl=30, error_kind="ClientRejected")

        record = await cache.get("domain:nx.com")

        assert record is not None
        assert record.error_kind == "ClientRejected"


# ============================================================================
# Disk persistence
# ============================================================================


class TestDiskPersistence:
    async def test_records_survive_new_instance(self, tmp_path, clock: FakeClock):
        first = TTLCache(directory=tmp_path / "cache", clock=clock)
        await first.put("asn:13335", b'{"objectClassName": "autnum"}', ttl=60)

        second = TTLCache(directory=tmp_path / "cache", clock=clock)
        record = await second.get("asn:13335")

        assert record is not None
        assert record.payload == b'{"objectClassName": "autnum"}'

    async def test_expired_disk_record_is_absent(self, tmp_path, clock: FakeClock):
        first = TTLCache(directory=tmp_path / "cache", clock=clock)
        await first.put("k", b"value", ttl=60)

        clock.now += 61
        second = TTLCache(directory=tmp_path / "cache", clock=clock)

        assert await second.get("k") is None

    async def test_directory_deleted_externally(self, tmp_path, clock: FakeClock):
        await TTLCache(directory=tmp_path / "cache", clock=clock).put("k", b"v", ttl=60)
        shutil.rmtree(tmp_path / "cache")

        cache = TTLCache(directory=tmp_path / "cache", clock=clock)
        assert await cache.get("k") is None

        await cache.put("k", b"again", ttl=60)
        assert (await TTLCache(directory=tmp_path / "cache", clock=clock).get("k")).payload == b"again"

    async def test_corrupt_file_is_a_miss(self, tmp_path, clock: FakeClock):
        cache = TTLCache(directory=tmp_path / "cache", clock=clock)
        await cache.put("k", b"v", ttl=60)
        for path in (tmp_path / "cache").glob("*.json"):
            path.write_text("{not json")

        fresh = TTLCache(directory=tmp_path / "cache", clock=clock)

        assert await fresh.get("k") is None

    async def test_memory_only_cache(self, clock: FakeClock):
        cache = TTLCache(directory=None, clock=clock)

        await cache.put("k", b"v", ttl=60)

        assert (await cache.get("k")).payload == b"v"

    async def test_memory_bound_evicts_oldest(self, clock: FakeClock):
        cache = TTLCache(directory=None, max_size=2, clock=clock)

        await cache.put("a", b"1", ttl=60)
        await cache.put("b", b"2", ttl=60)
        await cache.put("c", b"3", ttl=60)

        assert await cache.get("a") is None
        assert await cache.get("b") is not None
        assert await cache.get("c") is not None

    async def test_purge_expired(self, cache: TTLCache, clock: FakeClock, tmp_path):
        await cache.put("old", b"1", ttl=10)
        await cache.put("fresh", b"2", ttl=100)
        clock.now += 50

        removed = await cache.purge_expired()

        # memory and disk copies of "old"
        assert removed == 2
        assert len(list((tmp_path / "cache").glob("*.json"))) == 1
        assert await cache.get("fresh") is not None

    def test_record_json_round_trip(self):
        record = CacheRecord(key="k", payload=b"\x00\xffbytes", fetched_at=5.0, ttl=3.0)

        assert CacheRecord.from_json(record.to_json()) == record

    async def test_server_and_hops_survive_reload(self, tmp_path, clock: FakeClock):
        first = TTLCache(directory=tmp_path / "cache", clock=clock)
        await first.put("ip:1.2.3.4", b"{}", ttl=60, url="https://rdap.registrar.example/ip/1.2.3.4", hops=2)

        record = await TTLCache(directory=tmp_path / "cache", clock=clock).get("ip:1.2.3.4")

        assert record is not None
        assert record.url == "https://rdap.registrar.example/ip/1.2.3.4"
        assert record.hops == 2

    async def test_cancelled_write_leaves_no_temporary_file(self, cache: TTLCache, tmp_path, monkeypatch):
        async def cancelled_replace(self, target):
            raise anyio.get_cancelled_exc_class()()

        monkeypatch.setattr(anyio.Path, "replace", cancelled_replace)

        with pytest.raises(anyio.get_cancelled_exc_class()):
            await cache.put("k", b"v", ttl=60)

        assert list((tmp_path / "cache").iterdir()) == []


# ============================================================================
# Singleflight
# ============================================================================


class TestSingleflight:
    async def test_concurrent_callers_share_one_call(self, cache: TTLCache):
        calls = 0
        results: list[str] = []

        async def fetch() -> str:
            nonlocal calls
            calls += 1
            await anyio.sleep(0.05)
            return "payload"

        async def caller() -> None:
            results.append(await cache.singleflight("ip:1.1.1.1", fetch))

        async with anyio.create_task_group() as tg:
            for _ in range(5):
                tg.start_soon(caller)

        assert calls == 1
        assert results == ["payload"] * 5
        assert cache.coalesced == 4

    async def test_waiters_receive_leader_exception(self, cache: TTLCache):
        calls = 0
        errors: list[Exception] = []

        async def fetch() -> str:
            nonlocal calls
            calls += 1
            await anyio.sleep(0.05)
            raise RuntimeError("boom")

        async def caller() -> None:
            try:
                await cache.singleflight("k", fetch)
            except RuntimeError as e:
                errors.append(e)

        async with anyio.create_task_group() as tg:
            for _ in range(3):
                tg.start_soon(caller)

        assert calls == 1
        assert len(errors) == 3

    async def test_different_keys_run_independently(self, cache: TTLCache):
        calls: list[str] = []

        async def fetch_for(key: str):
            async def fetch() -> str:
                calls.append(key)
                await anyio.sleep(0.01)
                return key

            return await cache.singleflight(key, fetch)

        async with anyio.create_task_group() as tg:
            tg.start_soon(fetch_for, "a")
            tg.start_soon(fetch_for, "b")

        assert sorted(calls) == ["a", "b"]

    async def test_sequential_calls_are_not_coalesced(self, cache: TTLCache):
        calls = 0

        async def fetch() -> int:
            nonlocal calls
            calls += 1
            return calls

        assert await cache.singleflight("k", fetch) == 1
        assert await cache.singleflight("k", fetch) == 2

    async def test_waiter_takes_over_after_leader_cancelled(self, cache: TTLCache):
        started = anyio.Event()
        results: list[str] = []

        async def slow() -> str:
            started.set()
            await anyio.sleep(10)
            return "never"

        async def fast() -> str:
            return "recovered"

        leader_scope = anyio.CancelScope()

        async def leader() -> None:
            with leader_scope:
                await cache.singleflight("k", slow)

        async def waiter() -> None:
            await started.wait()
            results.append(await cache.singleflight("k", fast))

        async with anyio.create_task_group() as tg:
            tg.start_soon(leader)
            tg.start_soon(waiter)
            await started.wait()
            await anyio.sleep(0.01)
            leader_scope.cancel()

        assert results == ["recovered"]
