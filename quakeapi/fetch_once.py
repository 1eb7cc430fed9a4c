# quakeapi/fetch_once.py
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

import httpx

from quakeapi.bmkg import FEEDS
from quakeapi.db import QuakeStore, Ready, open_store
from quakeapi.ingest import IngestReport, run_ingestion_cycle
from quakeapi.settings import Settings, configure_logging


async def _run(store: QuakeStore, settings: Settings, feed_names: List[str]) -> IngestReport:
    async with httpx.AsyncClient(headers={"User-Agent": settings.user_agent}) as client:
        return await run_ingestion_cycle(
            client, store,
            feeds=[FEEDS[name] for name in feed_names],
            base_url=settings.bmkg_base_url,
            timeout=settings.fetch_timeout_seconds,
        )


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Run one BMKG ingestion cycle and exit")
    ap.add_argument("--feed", action="append", choices=sorted(FEEDS),
                    help="Feed to fetch (repeatable; default: all feeds)")
    ap.add_argument("--show", type=int, default=3, help="Print this many of the newest stored quakes")
    args = ap.parse_args(argv)

    settings = Settings()
    configure_logging(settings.log_level)
    state = open_store(settings)
    if not isinstance(state, Ready):
        print(f"Storage unavailable: {state.reason}", file=sys.stderr)
        return 1

    feed_names = args.feed or list(FEEDS)
    for name in feed_names:
        print(f"Using BMKG feed: {name} -> {FEEDS[name].url(settings.bmkg_base_url)}")

    report = asyncio.run(_run(state.store, settings, feed_names))
    for f in report.feeds:
        status = "ok" if f.ok else f"FAILED ({f.error})"
        print(f"{f.feed:>6}: {status}; fetched {f.fetched}, rejected {f.rejected}, stored {f.stored}")
    print(f"Stored {report.stored} quakes in {report.duration_s:.2f}s.")

    rows, _ = state.store.list_quakes(limit=args.show)
    for q in rows:
        print(json.dumps(q, indent=2))
    return 0 if any(f.ok for f in report.feeds) else 2


if __name__ == "__main__":
    sys.exit(main())
