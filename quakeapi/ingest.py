# quakeapi/ingest.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional, Set

import httpx
from prometheus_client import Counter, Gauge, Histogram

from quakeapi.bmkg import (
    BMKG_BASE_URL, DEFAULT_TIMEOUT, FEEDS, Feed, FeedError,
    fetch_feed_entries, normalize_entries,
)
from quakeapi.db import QuakeStore

logger = logging.getLogger(__name__)

# ---------- metrics ----------
INGEST_COUNT     = Counter("quakes_ingested_total", "Total quake records written")
REJECTED_COUNT   = Counter("quake_entries_rejected_total", "Feed entries dropped by normalization")
FEED_FAILURES    = Counter("feed_fetch_failures_total", "Failed feed fetches", ["feed"])
SKIPPED_CYCLES   = Counter("ingest_cycles_skipped_total", "Cycles skipped because one was running")
LAST_INGEST_TS   = Gauge("last_ingest_timestamp", "Last completed ingest cycle, epoch millis")
INGEST_LATENCY   = Histogram("ingest_duration_seconds", "Ingest cycle duration")


@dataclass
class FeedReport:
    feed: str
    ok: bool
    fetched: int = 0
    normalized: int = 0
    rejected: int = 0
    stored: int = 0
    error: Optional[str] = None


@dataclass
class IngestReport:
    feeds: List[FeedReport] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def stored(self) -> int:
        return sum(f.stored for f in self.feeds)


async def ingest_feed(client: httpx.AsyncClient, store: QuakeStore, feed: Feed, *,
                      base_url: str = BMKG_BASE_URL,
                      timeout: float = DEFAULT_TIMEOUT) -> FeedReport:
    """One fan-out branch: fetch -> normalize -> upsert -> fetch log. Never raises FeedError."""
    try:
        entries = await fetch_feed_entries(client, feed, base_url=base_url, timeout=timeout)
    except FeedError as exc:
        logger.warning("Fetching %s feed failed: %s", feed.name, exc)
        FEED_FAILURES.labels(feed=feed.name).inc()
        await asyncio.to_thread(store.record_fetch, feed.name, "error", str(exc))
        return FeedReport(feed=feed.name, ok=False, error=str(exc))

    records, rejected = normalize_entries(entries, base_url=base_url)
    stored = await asyncio.to_thread(store.bulk_upsert_quakes, records)

    INGEST_COUNT.inc(stored)
    REJECTED_COUNT.inc(rejected)
    message = f"fetched {len(entries)}, rejected {rejected}, stored {stored}"
    await asyncio.to_thread(store.record_fetch, feed.name, "success", message)
    logger.info("%s feed: %s", feed.name, message)
    return FeedReport(feed=feed.name, ok=True, fetched=len(entries),
                      normalized=len(records), rejected=rejected, stored=stored)


async def run_ingestion_cycle(client: httpx.AsyncClient, store: QuakeStore, *,
                              feeds: Optional[Iterable[Feed]] = None,
                              base_url: str = BMKG_BASE_URL,
                              timeout: float = DEFAULT_TIMEOUT) -> IngestReport:
    """Fetches every feed concurrently and returns once all of them resolved."""
    start = time.time()
    feeds = list(feeds) if feeds is not None else list(FEEDS.values())
    logger.info("Fetching earthquake data from BMKG (%s)", ", ".join(f.name for f in feeds))

    reports = await asyncio.gather(
        *(ingest_feed(client, store, f, base_url=base_url, timeout=timeout) for f in feeds)
    )
    report = IngestReport(feeds=list(reports), duration_s=round(time.time() - start, 3))

    LAST_INGEST_TS.set(int(time.time() * 1000))
    INGEST_LATENCY.observe(report.duration_s)
    logger.info("Ingestion cycle finished: %d records stored in %.2fs",
                report.stored, report.duration_s)
    return report


class IngestScheduler:
    """
    Fires `run_cycle` once at start and then every `interval_s` seconds.
    Each firing runs as its own task; a firing that lands while a cycle is
    still in flight is skipped, not queued.
    """

    def __init__(self, run_cycle: Callable[[], Awaitable[IngestReport]], interval_s: float):
        self._run_cycle = run_cycle
        self.interval_s = interval_s
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def trigger(self) -> Optional[IngestReport]:
        if self._lock.locked():
            SKIPPED_CYCLES.inc()
            logger.warning("Previous ingestion cycle still running; skipping this one")
            return None
        async with self._lock:
            return await self._run_cycle()

    def fire(self) -> asyncio.Task:
        task = asyncio.create_task(self.trigger())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Ingestion cycle failed", exc_info=task.exception())

    async def run_forever(self) -> None:
        logger.info("Scheduled ingestion every %.0f seconds", self.interval_s)
        try:
            while True:
                self.fire()
                await asyncio.sleep(self.interval_s)
        finally:
            pending = list(self._tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
