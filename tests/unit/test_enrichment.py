import asyncio
import random

import pytest

from apps.extractor.enrichment import EnrichmentCache
from utils.schemas import ENRICHED_KEY


def records_for(*user_ids):
    return [{"user_id": uid, "date": "2024-01-01"} for uid in user_ids]


class Lookup:
    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)

    async def __call__(self, entity_id):
        self.calls.append(entity_id)
        if entity_id in self.failing:
            raise RuntimeError("user_not_found")
        return {"ok": True, "user": {"id": entity_id}}


def make_cache(lookup, max_enrichment=10, seed=1):
    return EnrichmentCache(
        lookup,
        id_field="user_id",
        max_enrichment=max_enrichment,
        delay=(0, 0),
        rng=random.Random(seed),
    )


@pytest.mark.asyncio
async def test_attaches_detail_to_every_record():
    lookup = Lookup()
    cache = make_cache(lookup)

    enriched = await cache.enrich(records_for("U1", "U2", "U1"))

    assert [r["user_id"] for r in enriched] == ["U1", "U2", "U1"]
    assert enriched[0][ENRICHED_KEY] == {"ok": True, "user": {"id": "U1"}}
    assert sorted(lookup.calls) == ["U1", "U2"]


@pytest.mark.asyncio
async def test_does_not_mutate_input():
    cache = make_cache(Lookup())
    records = records_for("U1")

    await cache.enrich(records)

    assert ENRICHED_KEY not in records[0]


@pytest.mark.asyncio
async def test_cache_shared_across_days():
    lookup = Lookup()
    cache = make_cache(lookup)

    await cache.enrich(records_for("U1", "U2"))
    await cache.enrich(records_for("U2", "U3"))

    assert sorted(lookup.calls) == ["U1", "U2", "U3"]
    assert cache.lookups == 3


@pytest.mark.asyncio
async def test_hard_cap_across_calls():
    lookup = Lookup()
    cache = make_cache(lookup, max_enrichment=3)

    first = await cache.enrich(records_for("U1", "U2", "U3", "U4", "U5"))
    second = await cache.enrich(records_for("U6", "U7"))

    assert len(lookup.calls) == 3
    assert sum(1 for r in first if r[ENRICHED_KEY] is not None) == 3
    assert all(r[ENRICHED_KEY] is None for r in second)


@pytest.mark.asyncio
async def test_cap_selection_is_shuffled():
    picks = set()
    ids = [f"U{i}" for i in range(20)]

    for seed in range(10):
        lookup = Lookup()
        await make_cache(lookup, max_enrichment=2, seed=seed).enrich(records_for(*ids))
        picks.add(tuple(lookup.calls))

    assert len(picks) > 1


@pytest.mark.asyncio
async def test_failed_lookup_cached_as_error():
    lookup = Lookup(failing={"U2"})
    cache = make_cache(lookup)

    first = await cache.enrich(records_for("U1", "U2"))
    second = await cache.enrich(records_for("U2"))

    failed = next(r for r in first if r["user_id"] == "U2")
    assert failed[ENRICHED_KEY] == {"error": "user_not_found"}
    assert second[0][ENRICHED_KEY] == {"error": "user_not_found"}
    assert lookup.calls.count("U2") == 1


@pytest.mark.asyncio
async def test_zero_cap_never_looks_up():
    lookup = Lookup()
    cache = make_cache(lookup, max_enrichment=0)

    enriched = await cache.enrich(records_for("U1"))

    assert lookup.calls == []
    assert enriched[0][ENRICHED_KEY] is None


@pytest.mark.asyncio
async def test_empty_input():
    assert await make_cache(Lookup()).enrich([]) == []


@pytest.mark.asyncio
async def test_lookups_run_one_at_a_time():
    in_flight = 0
    peak = 0

    async def fetch_detail(entity_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return {"ok": True, "user": {"id": entity_id}}

    cache = make_cache(fetch_detail)

    enriched = await cache.enrich(records_for("U1", "U2", "U3", "U4", "U5"))

    assert peak == 1
    assert cache.lookups == 5
    assert all(r[ENRICHED_KEY] is not None for r in enriched)
