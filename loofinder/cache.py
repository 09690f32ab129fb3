"""SQLite-backed cache of recently discovered places."""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from . import config
from .classify import is_free_access
from .models import SOURCE_CACHE, CacheEntry, Coordinate, PointOfInterest, utc_now
from .storage import SqliteStore, from_iso, to_iso

logger = logging.getLogger(__name__)


class ResultCache(SqliteStore):
    schema = (
        """
        CREATE TABLE IF NOT EXISTS cached_pois (
            position INTEGER PRIMARY KEY,
            name TEXT,
            lat REAL,
            lon REAL,
            address TEXT,
            category TEXT,
            category_hint TEXT,
            captured_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS cache_meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """,
    )

    def __init__(
        self,
        db_path: str = ":memory:",
        max_entries: Optional[int] = None,
        expiry_seconds: Optional[float] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.max_entries = int(max_entries if max_entries is not None else config.CACHE_MAX_ENTRIES)
        self.expiry_seconds = float(
            expiry_seconds if expiry_seconds is not None else config.CACHE_EXPIRY_SECONDS
        )
        self.now = now or utc_now
        self._entries: List[CacheEntry] = []
        self.last_known_location: Optional[Coordinate] = None
        super().__init__(db_path)
        self._load()

    def put(self, pois: Iterable[PointOfInterest], anchor: Coordinate) -> None:
        now = self.now()
        with self.lock:
            entries = [e for e in self._entries if not self._is_expired(e, now)]
            for poi in pois:
                fresh = CacheEntry(poi=poi.with_source(SOURCE_CACHE), captured_at=now)
                clashes = _find_duplicates(entries, poi)
                if not clashes:
                    entries.append(fresh)
                    continue
                if is_free_access(poi) and not any(is_free_access(entries[idx].poi) for idx in clashes):
                    for idx in reversed(clashes):
                        del entries[idx]
                    entries.append(fresh)
                else:
                    existing = entries.pop(clashes[0])
                    entries.append(CacheEntry(poi=existing.poi, captured_at=now))
            if len(entries) > self.max_entries:
                entries = entries[-self.max_entries:]
            self._entries = entries
            self.last_known_location = anchor
            self._persist()

    def freshest(
        self,
        anchor: Coordinate,
        radius_m: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
        accept: Optional[Callable[[PointOfInterest], bool]] = None,
    ) -> Optional[CacheEntry]:
        radius = config.FRESH_CACHE_RADIUS_M if radius_m is None else radius_m
        max_age = config.CACHE_FRESHNESS_SECONDS if max_age_seconds is None else max_age_seconds
        now = self.now()
        with self.lock:
            candidates = [
                e
                for e in self._entries
                if e.age_seconds(now) < max_age and e.poi.distance_to(anchor) <= radius
            ]
        if accept is not None:
            candidates = [e for e in candidates if accept(e.poi)]
        return _closest(candidates, anchor)

    def nearest(
        self,
        anchor: Coordinate,
        accept: Optional[Callable[[PointOfInterest], bool]] = None,
    ) -> Optional[CacheEntry]:
        """Closest entry of any age; only meant as a last resort."""
        with self.lock:
            candidates = list(self._entries)
        if accept is not None:
            candidates = [e for e in candidates if accept(e.poi)]
        return _closest(candidates, anchor)

    def within(self, anchor: Coordinate, radius_m: float) -> List[CacheEntry]:
        now = self.now()
        with self.lock:
            candidates = [
                e
                for e in self._entries
                if not self._is_expired(e, now) and e.poi.distance_to(anchor) <= radius_m
            ]
        return sorted(candidates, key=lambda e: (e.poi.distance_to(anchor), e.poi.name, e.poi.lat, e.poi.lon))

    def entries(self) -> List[CacheEntry]:
        with self.lock:
            return list(self._entries)

    def clear(self) -> None:
        with self.lock:
            self._entries = []
            self.last_known_location = None
            self._persist()

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return entry.age_seconds(now) > self.expiry_seconds

    def _load(self) -> None:
        if self.conn is None:
            return
        now = self.now()
        loaded: List[CacheEntry] = []
        try:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM cached_pois ORDER BY position")
            for row in cur.fetchall():
                captured_at = from_iso(row["captured_at"])
                if captured_at is None or row["lat"] is None or row["lon"] is None:
                    continue
                poi = PointOfInterest(
                    name=row["name"] or "",
                    lat=float(row["lat"]),
                    lon=float(row["lon"]),
                    address=row["address"],
                    category=row["category"] or "unknown",
                    source=SOURCE_CACHE,
                    category_hint=row["category_hint"],
                )
                loaded.append(CacheEntry(poi=poi, captured_at=captured_at))
            cur.execute("SELECT value FROM cache_meta WHERE key = 'last_known_location'")
            row = cur.fetchone()
            if row and row["value"]:
                lat_str, lon_str = row["value"].split(",", 1)
                self.last_known_location = Coordinate(float(lat_str), float(lon_str))
        except (sqlite3.Error, ValueError):
            logger.warning("Failed to load cached places from %s", self.db_path, exc_info=True)
        kept = [e for e in loaded if not self._is_expired(e, now)]
        self._entries = kept[-self.max_entries:] if len(kept) > self.max_entries else kept
        if len(self._entries) != len(loaded):
            logger.debug("Purged %s expired cache entries", len(loaded) - len(self._entries))
            self._persist()

    def _persist(self) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            cur.execute("DELETE FROM cached_pois")
            cur.executemany(
                """
                INSERT INTO cached_pois (
                    position, name, lat, lon, address, category, category_hint, captured_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        idx,
                        e.poi.name,
                        e.poi.lat,
                        e.poi.lon,
                        e.poi.address,
                        e.poi.category,
                        e.poi.category_hint,
                        to_iso(e.captured_at),
                    )
                    for idx, e in enumerate(self._entries)
                ],
            )
            if self.last_known_location is not None:
                cur.execute(
                    "INSERT OR REPLACE INTO cache_meta (key, value) VALUES ('last_known_location', ?)",
                    (f"{self.last_known_location.lat},{self.last_known_location.lon}",),
                )
            else:
                cur.execute("DELETE FROM cache_meta WHERE key = 'last_known_location'")
            self.conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to persist result cache to %s", self.db_path, exc_info=True)


def _find_duplicates(entries: List[CacheEntry], poi: PointOfInterest) -> List[int]:
    return [
        idx
        for idx, entry in enumerate(entries)
        if entry.poi.distance_to(poi.coordinate) <= config.DEDUPE_RADIUS_M
    ]


def _closest(entries: List[CacheEntry], anchor: Coordinate) -> Optional[CacheEntry]:
    if not entries:
        return None
    return min(entries, key=lambda e: (e.poi.distance_to(anchor), e.poi.name, e.poi.lat, e.poi.lon))
