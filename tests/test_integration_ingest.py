import asyncio
from contextlib import suppress

import httpx
import pytest
import respx
from httpx import Response

from quakeapi.bmkg import FEEDS, FeedError, fetch_feed_entries
from quakeapi.ingest import IngestReport, IngestScheduler, run_ingestion_cycle
from quake_samples import make_entry

M5_ENTRIES = [
    make_entry(),
    make_entry(DateTime="2024-01-14T22:05:00+00:00", Coordinates="-8.5,115.2", Magnitude="6.1"),
    make_entry(DateTime="2024-01-13T01:00:00+00:00", Magnitude="big"),
]
# same event as the first M5 entry, described differently
LATEST_ENTRY = make_entry(Wilayah="20 km BaratDaya PANDEGLANG-BANTEN")


def _cycle(store):
    async def go():
        async with httpx.AsyncClient() as client:
            return await run_ingestion_cycle(client, store)
    return asyncio.run(go())


def _fetch(feed):
    async def go():
        async with httpx.AsyncClient() as client:
            return await fetch_feed_entries(client, feed)
    return asyncio.run(go())


@respx.mock
def test_cycle_isolates_failures_and_dedupes_across_feeds(store):
    respx.get(FEEDS["latest"].url()).mock(
        return_value=Response(200, json={"Infogempa": {"gempa": LATEST_ENTRY}}))
    respx.get(FEEDS["m5"].url()).mock(
        return_value=Response(200, json={"Infogempa": {"gempa": M5_ENTRIES}}))
    respx.get(FEEDS["felt"].url()).mock(side_effect=httpx.ConnectTimeout("timed out"))

    report = _cycle(store)
    by_feed = {f.feed: f for f in report.feeds}

    assert by_feed["latest"].ok and by_feed["latest"].stored == 1
    assert by_feed["m5"].ok
    assert (by_feed["m5"].fetched, by_feed["m5"].rejected, by_feed["m5"].stored) == (3, 1, 2)
    assert not by_feed["felt"].ok
    assert "ConnectTimeout" in by_feed["felt"].error

    # the latest-feed event collapses onto the matching M5 record
    assert store.count_quakes() == 2
    logs = {l["fetch_type"]: l["status"] for l in store.list_fetch_logs()}
    assert logs == {"latest": "success", "m5": "success", "felt": "error"}


@respx.mock
def test_second_cycle_is_idempotent(store):
    respx.get(FEEDS["latest"].url()).mock(
        return_value=Response(200, json={"Infogempa": {"gempa": LATEST_ENTRY}}))
    respx.get(FEEDS["m5"].url()).mock(
        return_value=Response(200, json={"Infogempa": {"gempa": M5_ENTRIES}}))
    respx.get(FEEDS["felt"].url()).mock(
        return_value=Response(200, json={"Infogempa": {"gempa": []}}))

    _cycle(store)
    first = {q["id"]: q for q in store.all_quakes()}
    _cycle(store)
    second = {q["id"]: q for q in store.all_quakes()}
    assert first.keys() == second.keys()
    assert all(first[k]["created_at"] == second[k]["created_at"] for k in first)


@respx.mock
def test_malformed_json_is_a_feed_error():
    respx.get(FEEDS["felt"].url()).mock(return_value=Response(200, content=b"<html>oops</html>"))
    with pytest.raises(FeedError):
        _fetch(FEEDS["felt"])


@respx.mock
def test_http_error_status_is_a_feed_error():
    respx.get(FEEDS["m5"].url()).mock(return_value=Response(502))
    with pytest.raises(FeedError):
        _fetch(FEEDS["m5"])


def test_overlapping_trigger_is_skipped():
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def slow_cycle():
            calls.append(1)
            await release.wait()
            return IngestReport()

        scheduler = IngestScheduler(slow_cycle, interval_s=300)
        first = asyncio.create_task(scheduler.trigger())
        await asyncio.sleep(0)
        assert scheduler.running
        skipped = await scheduler.trigger()
        release.set()
        return skipped, await first

    skipped, done = asyncio.run(scenario())
    assert skipped is None
    assert isinstance(done, IngestReport)
    assert len(calls) == 1


def test_scheduler_fires_immediately_on_start():
    async def scenario():
        fired = asyncio.Event()

        async def cycle():
            fired.set()
            return IngestReport()

        scheduler = IngestScheduler(cycle, interval_s=3600)
        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.wait_for(fired.wait(), timeout=1)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return fired.is_set()

    assert asyncio.run(scenario())


def test_stopping_scheduler_waits_for_in_flight_cycle():
    async def scenario():
        started = asyncio.Event()
        unwound = []

        async def cycle():
            started.set()
            try:
                await asyncio.sleep(3600)
            finally:
                await asyncio.sleep(0)
                unwound.append(True)
            return IngestReport()

        scheduler = IngestScheduler(cycle, interval_s=3600)
        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.wait_for(started.wait(), timeout=1)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return unwound

    assert asyncio.run(scenario()) == [True]
