# quakeapi/stats.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

MAGNITUDE_BUCKETS = ("<5", "5-6", "6-7", "7+")


def magnitude_bucket(magnitude: float) -> str:
    if magnitude < 5:
        return "<5"
    if magnitude < 6:
        return "5-6"
    if magnitude < 7:
        return "6-7"
    return "7+"


def bucket_magnitudes(magnitudes: Iterable[float]) -> List[Dict]:
    counts = dict.fromkeys(MAGNITUDE_BUCKETS, 0)
    for m in magnitudes:
        counts[magnitude_bucket(float(m))] += 1
    return [{"range": r, "count": counts[r]} for r in MAGNITUDE_BUCKETS]


def start_of_local_day_ms(now: Optional[datetime] = None) -> int:
    """Epoch millis of today's local midnight."""
    now = (now or datetime.now()).astimezone()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)
