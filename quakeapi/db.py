# quakeapi/db.py
from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from quakeapi.bmkg import EarthquakeRecord
from quakeapi.settings import Settings

logger = logging.getLogger(__name__)

COLUMNS = (
    "id", "datetime", "timestamp", "magnitude", "depth", "latitude", "longitude",
    "region", "tsunami_potential", "felt_status", "shakemap_url", "created_at",
)
_SELECT = f"SELECT {', '.join(COLUMNS)} FROM earthquakes"

# full replace on conflict, except created_at which keeps the first ingestion time
UPSERT_SQL = f"""
    INSERT INTO earthquakes({', '.join(COLUMNS)})
    VALUES ({', '.join(':' + c for c in COLUMNS)})
    ON CONFLICT(id) DO UPDATE SET
        {', '.join(f'{c} = excluded.{c}' for c in COLUMNS if c not in ('id', 'created_at'))}
"""

SCHEMA = """
    PRAGMA journal_mode=WAL;

    CREATE TABLE IF NOT EXISTS earthquakes (
        id                TEXT PRIMARY KEY,
        datetime          TEXT    NOT NULL,
        timestamp         INTEGER NOT NULL,
        magnitude         REAL    NOT NULL CHECK (magnitude >= 0),
        depth             REAL    NOT NULL,
        latitude          REAL    NOT NULL,
        longitude         REAL    NOT NULL,
        region            TEXT    NOT NULL,
        tsunami_potential TEXT,
        felt_status       TEXT,
        shakemap_url      TEXT,
        created_at        INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_earthquakes_timestamp ON earthquakes(timestamp DESC);
    CREATE INDEX IF NOT EXISTS idx_earthquakes_magnitude ON earthquakes(magnitude);
    CREATE INDEX IF NOT EXISTS idx_earthquakes_coords    ON earthquakes(latitude, longitude);

    CREATE TABLE IF NOT EXISTS fetch_logs (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        fetch_type TEXT    NOT NULL,
        status     TEXT    NOT NULL,
        message    TEXT,
        created_at INTEGER NOT NULL
    );
"""


class QuakeStore:
    """SQLite-backed earthquake store. Opens one connection per operation."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path.as_posix(), timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self.get_conn()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    # ---------- writes ----------
    def upsert_quake(self, quake: EarthquakeRecord) -> bool:
        try:
            with closing(self.get_conn()) as conn, conn:
                conn.execute(UPSERT_SQL, quake.to_dict())
            return True
        except sqlite3.Error as exc:
            logger.warning("Upsert of quake %s failed: %s", quake.id, exc)
            return False

    def bulk_upsert_quakes(self, quakes: Sequence[EarthquakeRecord]) -> int:
        """
        Writes all quakes in one transaction and returns how many were stored.
        If the transaction fails, falls back to one upsert per quake so a
        single bad row only costs itself.
        """
        if not quakes:
            return 0
        try:
            with closing(self.get_conn()) as conn, conn:
                conn.executemany(UPSERT_SQL, [q.to_dict() for q in quakes])
            return len(quakes)
        except sqlite3.Error as exc:
            logger.warning("Batch upsert of %d quakes failed (%s); retrying one by one",
                           len(quakes), exc)
        return sum(1 for q in quakes if self.upsert_quake(q))

    def record_fetch(self, fetch_type: str, status: str, message: Optional[str] = None) -> bool:
        try:
            with closing(self.get_conn()) as conn, conn:
                conn.execute(
                    "INSERT INTO fetch_logs(fetch_type, status, message, created_at) VALUES (?,?,?,?)",
                    (fetch_type, status, message, int(time.time() * 1000)),
                )
            return True
        except sqlite3.Error as exc:
            logger.warning("Could not record %s fetch outcome: %s", fetch_type, exc)
            return False

    # ---------- reads ----------
    def _all(self, sql: str, params: Any = ()) -> List[Dict]:
        with closing(self.get_conn()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def _scalar(self, sql: str, params: Any = ()) -> Any:
        with closing(self.get_conn()) as conn:
            return conn.execute(sql, params).fetchone()[0]

    def list_quakes(self, limit: int = 50, offset: int = 0,
                    min_magnitude: Optional[float] = None,
                    max_magnitude: Optional[float] = None) -> Tuple[List[Dict], int]:
        """Returns (page newest first, total matching the magnitude filter)."""
        where, params = [], {"limit": limit, "offset": offset}
        if min_magnitude is not None:
            where.append("magnitude >= :min_mag")
            params["min_mag"] = min_magnitude
        if max_magnitude is not None:
            where.append("magnitude <= :max_mag")
            params["max_mag"] = max_magnitude
        clause = f" WHERE {' AND '.join(where)}" if where else ""

        total = self._scalar(f"SELECT COUNT(*) FROM earthquakes{clause}", params)
        rows = self._all(
            f"{_SELECT}{clause} ORDER BY timestamp DESC, id LIMIT :limit OFFSET :offset",
            params,
        )
        return rows, int(total)

    def all_quakes(self) -> List[Dict]:
        return self._all(f"{_SELECT} ORDER BY timestamp DESC, id")

    def latest_quake(self) -> Optional[Dict]:
        rows = self._all(f"{_SELECT} ORDER BY timestamp DESC, id LIMIT 1")
        return rows[0] if rows else None

    def strongest_quake(self) -> Optional[Dict]:
        rows = self._all(f"{_SELECT} ORDER BY magnitude DESC, timestamp DESC LIMIT 1")
        return rows[0] if rows else None

    def get_quake(self, quake_id: str) -> Optional[Dict]:
        rows = self._all(f"{_SELECT} WHERE id = ?", (quake_id,))
        return rows[0] if rows else None

    def count_quakes(self, since_ms: Optional[int] = None) -> int:
        if since_ms is None:
            return int(self._scalar("SELECT COUNT(*) FROM earthquakes"))
        return int(self._scalar("SELECT COUNT(*) FROM earthquakes WHERE timestamp >= ?", (since_ms,)))

    def list_magnitudes(self) -> List[float]:
        with closing(self.get_conn()) as conn:
            return [r[0] for r in conn.execute("SELECT magnitude FROM earthquakes")]

    def list_fetch_logs(self, limit: int = 20) -> List[Dict]:
        return self._all(
            "SELECT id, fetch_type, status, message, created_at FROM fetch_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )


# ---------- availability ----------
@dataclass(frozen=True)
class Unconfigured:
    reason: str


@dataclass(frozen=True)
class Ready:
    store: QuakeStore


StoreState = Union[Unconfigured, Ready]


def open_store(settings: Settings) -> StoreState:
    if settings.database_path is None:
        return Unconfigured("DATABASE_PATH is not set")
    store = QuakeStore(settings.database_path)
    try:
        store.init_db()
    except (sqlite3.Error, OSError) as exc:
        logger.error("Cannot open database at %s: %s", store.path, exc)
        return Unconfigured(f"cannot open database at {store.path}: {exc}")
    logger.info("Using SQLite database at %s", store.path)
    return Ready(store)
