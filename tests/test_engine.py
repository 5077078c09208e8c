import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from airender import engine
from airender.errors import GenerationFailed, InvalidIntent, StoreUnavailable
from airender.store import MemoryMemoStore

from conftest import FakeBackend, SlowReserveStore


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    monkeypatch.setattr(engine, "PENDING_POLL_SECS", 0.01)
    monkeypatch.setattr(engine, "PENDING_WAIT_SECS", 2.0)


@pytest.mark.asyncio
async def test_miss_generates_and_finalizes(memory_store, backend):
    out = await engine.complete({"prompt": "Weather in Paris?", "seed": 7}, store=memory_store, backend=backend)
    assert out.cache_hit is False
    assert out.content == "Paris is sunny."
    assert out.seed == 7
    assert len(backend.calls) == 1
    assert backend.calls[0]["seed"] == 7

    record = out.record
    assert record.is_complete
    assert record.hash == out.fingerprint.request_hash
    assert record.prompt_hash == out.fingerprint.prompt_hash
    assert record.is_random_seed is False
    assert record.content == "Paris is sunny."
    assert record.parse_error
    assert record.cost == pytest.approx(10 * 0.003 + 5 * 0.006)
    assert record.props["prompt"] == "Weather in Paris?"
    assert record.input["messages"][0]["content"] == "Weather in Paris?"
    assert record.requested_at <= record.read_completed_at <= record.updated_at
    assert record.total_latency >= record.completion_latency


@pytest.mark.asyncio
async def test_second_call_is_a_cache_hit(memory_store, backend):
    first = await engine.complete({"prompt": "Weather in Paris?"}, store=memory_store, backend=backend)
    second = await engine.complete({"prompt": "Weather in Paris?"}, store=memory_store, backend=backend)
    assert second.cache_hit is True
    assert len(backend.calls) == 1
    assert second.data is None and second.content is None
    assert second.record.content == "Paris is sunny."
    assert second.fingerprint.request_hash == first.fingerprint.request_hash


@pytest.mark.asyncio
async def test_structured_result_is_recorded(memory_store):
    backend = FakeBackend(content='{"colors": ["red", "green", "blue"]}')
    out = await engine.complete({"json": "list 3 colors", "keys": "snake_case"}, store=memory_store, backend=backend)
    assert out.data == {"colors": ["red", "green", "blue"]}
    stored = await memory_store.get(out.fingerprint.request_hash)
    assert stored["data"] == {"colors": ["red", "green", "blue"]}
    assert stored["parseError"] is None


@pytest.mark.asyncio
async def test_headers_are_kept_on_the_reservation(memory_store, backend):
    out = await engine.complete(
        {"prompt": "hi"}, store=memory_store, backend=backend, headers={"user-agent": "pytest"}
    )
    assert out.record.headers == {"user-agent": "pytest"}


@pytest.mark.asyncio
async def test_variations_use_seeded_buckets(memory_store, backend):
    rng = random.Random(7)
    seeds = set()
    for _ in range(12):
        out = await engine.complete({"prompt": "a slogan", "variations": 2}, store=memory_store, backend=backend, rng=rng)
        assert out.fingerprint.is_random_seed is True
        assert 0 <= out.seed <= 2
        seeds.add(out.seed)
    group = await engine.variations(out.fingerprint.prompt_hash, store=memory_store)
    assert sorted(r.seed for r in group) == sorted(seeds)
    assert len(backend.calls) == len(seeds)


@pytest.mark.asyncio
async def test_invalid_intent_never_touches_the_store(backend):
    class ExplodingStore(MemoryMemoStore):
        async def reserve(self, *args, **kwargs):
            raise AssertionError("store should not be called")

    with pytest.raises(InvalidIntent):
        await engine.complete({"expert": "chef"}, store=ExplodingStore(), backend=backend)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_store_failure_is_not_a_cache_miss(backend):
    class DownStore(MemoryMemoStore):
        async def reserve(self, *args, **kwargs):
            raise StoreUnavailable("redis down")

    with pytest.raises(StoreUnavailable):
        await engine.complete({"prompt": "hi"}, store=DownStore(), backend=backend)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_backend_failure_leaves_pending_reservation(memory_store):
    backend = FakeBackend(error=GenerationFailed("rate limited", backend_status=429))
    with pytest.raises(GenerationFailed):
        await engine.complete({"prompt": "hi", "seed": 1}, store=memory_store, backend=backend)
    records = list(memory_store._records.values())
    assert len(records) == 1
    assert records[0]["status"] == "pending"


@pytest.mark.asyncio
async def test_race_with_visible_reservation_calls_backend_once():
    # Second caller reserves after the first one's insert and waits for it
    store = SlowReserveStore(delays=[0.0, 0.05])
    backend = FakeBackend(delay=0.1)
    props = {"prompt": "Weather in Paris?", "seed": 7}
    first, second = await asyncio.gather(
        engine.complete(props, store=store, backend=backend),
        engine.complete(props, store=store, backend=backend),
    )
    assert store.reserve_calls == 2
    assert first.fingerprint.request_hash == second.fingerprint.request_hash
    assert len(backend.calls) == 1
    assert sorted([first.cache_hit, second.cache_hit]) == [False, True]
    assert second.record.content == "Paris is sunny."


@pytest.mark.asyncio
async def test_race_where_both_see_no_record_calls_backend_twice():
    class BlindStore(MemoryMemoStore):
        # Both reservations observe the empty pre-image
        async def reserve(self, request_hash, fields, on_insert=None):
            await asyncio.sleep(0.01)
            await super().reserve(request_hash, fields, on_insert)
            return None

    store = BlindStore()
    backend = FakeBackend(delay=0.01)
    props = {"prompt": "Weather in Paris?", "seed": 7}
    results = await asyncio.gather(
        engine.complete(props, store=store, backend=backend),
        engine.complete(props, store=store, backend=backend),
    )
    assert len(backend.calls) == 2
    assert all(not r.cache_hit for r in results)
    assert len(store._records) == 1


@pytest.mark.asyncio
async def test_stale_pending_reservation_is_regenerated(memory_store, backend):
    out = await engine.complete({"prompt": "hi", "seed": 3}, store=memory_store, backend=backend)
    h = out.fingerprint.request_hash
    old = (datetime.now(timezone.utc) - timedelta(minutes=10)).isoformat()
    # A later caller refreshed requestedAt; the original reservation is old
    memory_store._records[h].update({"status": "pending", "reservedAt": old})

    again = await engine.complete({"prompt": "hi", "seed": 3}, store=memory_store, backend=backend)
    assert again.cache_hit is False
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_lookup_returns_record_or_none(memory_store, backend):
    out = await engine.complete({"prompt": "hi"}, store=memory_store, backend=backend)
    found = await engine.lookup(out.fingerprint.request_hash, store=memory_store)
    assert found.content == "Paris is sunny."
    assert await engine.lookup("nope", store=memory_store) is None


@pytest.mark.asyncio
async def test_reserved_at_keeps_the_first_reservation_time(monkeypatch, memory_store):
    backend = FakeBackend(error=GenerationFailed("rate limited"))
    with pytest.raises(GenerationFailed):
        await engine.complete({"prompt": "hi", "seed": 4}, store=memory_store, backend=backend)
    h, first = next(iter(memory_store._records.items()))
    reserved_at = first["reservedAt"]

    monkeypatch.setattr(engine, "PENDING_WAIT_SECS", 0.0)
    with pytest.raises(GenerationFailed):
        await engine.complete({"prompt": "hi", "seed": 4}, store=memory_store, backend=backend)
    record = await memory_store.get(h)
    assert record["reservedAt"] == reserved_at
    assert record["requestedAt"] >= reserved_at
    assert len(backend.calls) == 2
