# quakeapi/bmkg.py
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

BMKG_BASE_URL = "https://data.bmkg.go.id"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class Feed:
    name: str
    path: str
    single: bool  # the feed publishes one event object instead of a list

    def url(self, base_url: str = BMKG_BASE_URL) -> str:
        return f"{base_url.rstrip('/')}/{self.path}"


FEEDS = {
    "latest": Feed("latest", "DataMKG/TEWS/autogempa.json", single=True),
    "m5":     Feed("m5",     "DataMKG/TEWS/gempaterkini.json", single=False),
    "felt":   Feed("felt",   "DataMKG/TEWS/gempadirasakan.json", single=False),
}


class FeedError(Exception):
    """A feed could not be fetched or decoded; it contributes nothing this cycle."""


class NormalizationError(ValueError):
    """One raw entry could not be turned into an EarthquakeRecord."""


@dataclass(frozen=True)
class EarthquakeRecord:
    id: str
    datetime: str
    timestamp: int
    magnitude: float
    depth: float
    latitude: float
    longitude: float
    region: str
    tsunami_potential: Optional[str]
    felt_status: Optional[str]
    shakemap_url: Optional[str]
    created_at: int

    def to_dict(self) -> dict:
        return asdict(self)


_UNSAFE_ID_CHARS = re.compile(r"[:\s]")


def _parse_float(raw: Any, field: str) -> float:
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise NormalizationError(f"{field} is not a number: {raw!r}") from None
    if not math.isfinite(value):
        raise NormalizationError(f"{field} is not finite: {raw!r}")
    return value


def parse_coordinates(raw: str) -> Tuple[float, float]:
    parts = str(raw).split(",")
    if len(parts) != 2:
        raise NormalizationError(f"expected 'lat,lon' coordinates, got {raw!r}")
    return _parse_float(parts[0], "latitude"), _parse_float(parts[1], "longitude")


def parse_depth(raw: str) -> float:
    return _parse_float(str(raw).replace(" km", ""), "depth")


def parse_event_time(raw: str) -> int:
    """ISO datetime -> epoch millis. Values without an offset are read as UTC."""
    try:
        dt = datetime.fromisoformat(str(raw).strip())
    except ValueError:
        raise NormalizationError(f"unparseable DateTime: {raw!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


_EXPONENT_PADDING = re.compile(r"e([+-])0+(\d)")


def _format_number(value: float) -> str:
    """
    Shortest round-trip text for a coordinate, in the form the ids have always
    used: no "-0", no trailing ".0", plain decimals from 1e-7 up to 1e21.
    """
    if value == 0:
        return "0"
    text = repr(value)
    if "e" in text and 1e-7 <= abs(value) < 1e21:
        text = format(Decimal(text), "f")
    text = _EXPONENT_PADDING.sub(r"e\1\2", text)
    return text[:-2] if text.endswith(".0") else text


def make_quake_id(event_datetime: str, latitude: float, longitude: float) -> str:
    raw = f"{event_datetime}_{_format_number(latitude)}_{_format_number(longitude)}"
    return _UNSAFE_ID_CHARS.sub("_", raw)


def _optional(entry: Mapping[str, Any], key: str) -> Optional[str]:
    value = entry.get(key)
    return str(value) if value else None


def normalize_entry(entry: Mapping[str, Any],
                    base_url: str = BMKG_BASE_URL,
                    now_ms: Optional[int] = None) -> EarthquakeRecord:
    """
    Raw BMKG entry -> EarthquakeRecord.
    Raises NormalizationError when any required field is missing or malformed.
    """
    try:
        event_datetime = str(entry["DateTime"])
        latitude, longitude = parse_coordinates(entry["Coordinates"])
        magnitude = _parse_float(entry["Magnitude"], "magnitude")
        depth = parse_depth(entry["Kedalaman"])
        date, clock, region = entry["Tanggal"], entry["Jam"], entry["Wilayah"]
    except KeyError as exc:
        raise NormalizationError(f"missing field {exc.args[0]!r}") from None
    except (TypeError, AttributeError) as exc:
        raise NormalizationError(f"malformed entry: {exc}") from None

    if magnitude < 0:
        raise NormalizationError(f"negative magnitude: {magnitude}")

    shakemap = _optional(entry, "Shakemap")
    return EarthquakeRecord(
        id=make_quake_id(event_datetime, latitude, longitude),
        datetime=f"{date} {clock}",
        timestamp=parse_event_time(event_datetime),
        magnitude=magnitude,
        depth=depth,
        latitude=latitude,
        longitude=longitude,
        region=str(region),
        tsunami_potential=_optional(entry, "Potensi"),
        felt_status=_optional(entry, "Dirasakan"),
        shakemap_url=f"{base_url.rstrip('/')}/{shakemap.lstrip('/')}" if shakemap else None,
        created_at=now_ms if now_ms is not None else int(time.time() * 1000),
    )


def normalize_entries(entries: Iterable[Mapping[str, Any]],
                      base_url: str = BMKG_BASE_URL,
                      now_ms: Optional[int] = None) -> Tuple[List[EarthquakeRecord], int]:
    """Returns (records, rejected). A bad entry is logged and skipped."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    records: List[EarthquakeRecord] = []
    rejected = 0
    for entry in entries:
        try:
            records.append(normalize_entry(entry, base_url=base_url, now_ms=now_ms))
        except NormalizationError as exc:
            rejected += 1
            logger.warning("Dropping BMKG entry %r: %s", _describe(entry), exc)
    return records, rejected


def _describe(entry: Any) -> str:
    if isinstance(entry, Mapping):
        return f"{entry.get('DateTime')} {entry.get('Wilayah')}"
    return repr(entry)


def extract_entries(payload: Any, feed: Feed) -> List[Mapping[str, Any]]:
    try:
        gempa = payload["Infogempa"]["gempa"]
    except (KeyError, TypeError):
        raise FeedError(f"{feed.name}: document has no Infogempa.gempa") from None

    if gempa is None:
        return []
    entries = [gempa] if isinstance(gempa, Mapping) else gempa
    if not isinstance(entries, list):
        raise FeedError(f"{feed.name}: unexpected gempa payload {type(gempa).__name__}")
    return entries[:1] if feed.single else entries


async def fetch_feed_entries(client: httpx.AsyncClient,
                             feed: Feed,
                             base_url: str = BMKG_BASE_URL,
                             timeout: float = DEFAULT_TIMEOUT) -> List[Mapping[str, Any]]:
    url = feed.url(base_url)
    try:
        resp = await client.get(url, timeout=timeout)
        resp.raise_for_status()
        payload = resp.json()
    except httpx.HTTPError as exc:
        raise FeedError(f"{feed.name}: {type(exc).__name__}: {exc}") from exc
    except ValueError as exc:
        raise FeedError(f"{feed.name}: invalid JSON: {exc}") from exc
    return extract_entries(payload, feed)
