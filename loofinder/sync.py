"""Best-effort synchronisation with the crowd ratings service."""
from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from . import config
from .http import HttpClient, SearchMetrics
from .models import (
    Coordinate,
    FeatureFlags,
    PointOfInterest,
    RawPlace,
    ReliabilityScore,
    poi_id_for,
)
from .reliability import ReliabilityStore
from .storage import SqliteStore, utc_now_iso

logger = logging.getLogger(__name__)


class FlagCache(SqliteStore):
    """Last known feature flags, so a failed fetch falls back to them."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS feature_flags (
            name TEXT PRIMARY KEY,
            enabled INTEGER,
            updated_at TEXT
        )
        """,
    )

    def __init__(self, db_path: str = ":memory:") -> None:
        self._flags = FeatureFlags()
        super().__init__(db_path)
        self._load()

    @property
    def flags(self) -> FeatureFlags:
        with self.lock:
            return self._flags

    def save(self, flags: FeatureFlags) -> None:
        with self.lock:
            self._flags = flags
            if self.conn is None:
                return
            try:
                cur = self.conn.cursor()
                cur.executemany(
                    "INSERT OR REPLACE INTO feature_flags (name, enabled, updated_at) VALUES (?, ?, ?)",
                    [(name, int(bool(v)), utc_now_iso()) for name, v in flags.values.items()],
                )
                self.conn.commit()
            except sqlite3.Error:
                logger.warning("Failed to cache feature flags", exc_info=True)

    def _load(self) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            cur.execute("SELECT name, enabled FROM feature_flags")
            values = {row["name"]: bool(row["enabled"]) for row in cur.fetchall()}
        except sqlite3.Error:
            logger.warning("Failed to load cached feature flags", exc_info=True)
            return
        self._flags = FeatureFlags(values=values)


class RemoteSyncClient:
    """Fire-and-forget client for ratings, discoveries, search logs and flags.

    The ``push_*``/``fetch_*`` methods perform one HTTP call and raise on
    failure. The remaining public methods schedule work on a small background
    pool and return a future that never raises; failures are logged once and
    counted, never retried.
    """

    def __init__(
        self,
        settings: config.SyncSettings,
        flag_cache: Optional[FlagCache] = None,
        http_client: Optional[HttpClient] = None,
        metrics: Optional[SearchMetrics] = None,
        max_workers: int = config.SYNC_MAX_WORKERS,
    ) -> None:
        self.settings = settings
        self.flag_cache = flag_cache or FlagCache()
        self.metrics = metrics
        self._http_client = http_client
        self._local = threading.local()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()
        self._max_workers = max(1, int(max_workers))

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # --- Feature flags ---

    def cached_flags(self) -> FeatureFlags:
        return self.flag_cache.flags

    def refresh_flags(self) -> FeatureFlags:
        """Fetch flags now; on any failure keep the cached snapshot."""
        if not self.enabled:
            return self.cached_flags()
        try:
            fetched = self.fetch_flags()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Feature flag refresh failed: %s", exc)
            self._count("sync_failed")
            return self.cached_flags()
        self._count("sync_sent")
        flags = self.cached_flags().merged(fetched)
        self.flag_cache.save(flags)
        return flags

    # --- Fire-and-forget operations ---

    def record_rating(self, score: ReliabilityScore, positive: bool, not_a_place: bool = False) -> Optional[Future]:
        return self._submit("rating", self.push_rating, score, positive, not_a_place)

    def report_discovered(self, pois: Iterable[PointOfInterest]) -> Optional[Future]:
        return self._submit("discovered", self.push_discovered, list(pois))

    def log_search(
        self,
        anchor: Coordinate,
        raw_places: Iterable[RawPlace],
        flags: FeatureFlags,
    ) -> Optional[Future]:
        if not flags.enabled(config.FLAG_SAVE_SEARCH_REQUESTS, default=False):
            return None
        return self._submit("search log", self.push_search_log, anchor, list(raw_places))

    def pull_ratings(self, anchor: Coordinate, store: ReliabilityStore) -> Optional[Future]:
        def pull() -> int:
            records = self.fetch_ratings_near(anchor)
            return sum(1 for record in records if store.merge_remote(record))

        return self._submit("nearby ratings", pull)

    def pull_blacklist(self, store: ReliabilityStore) -> Optional[Future]:
        def pull() -> int:
            records = self.fetch_blacklisted()
            for record in records:
                store.mark_blacklisted(record.poi_id, record.not_a_place_reports)
            if records:
                logger.info("Synced %s blacklisted places", len(records))
            return len(records)

        return self._submit("blacklist", pull)

    # --- Single HTTP calls ---

    def push_rating(self, score: ReliabilityScore, positive: bool, not_a_place: bool = False) -> None:
        body = {
            "poi_id": score.poi_id,
            "lat": score.lat,
            "lon": score.lon,
            "name": score.name,
            "delta_upvote": 1 if positive else 0,
            "delta_downvote": 0 if positive else 1,
            "not_a_place_report": bool(not_a_place),
        }
        self._http().post_json(self._url("/ratings"), body, extra_headers={"Prefer": "return=minimal"})

    def push_discovered(self, pois: List[PointOfInterest]) -> None:
        for poi in pois:
            body = {
                "poi_id": poi.poi_id,
                "lat": poi.lat,
                "lon": poi.lon,
                "name": poi.name,
                "address": poi.address,
                "source": "place_search",
                "discovery_increment": 1,
            }
            self._http().post_json(
                self._url("/discovered-pois"), body, extra_headers={"Prefer": "return=minimal"}
            )

    def push_search_log(self, anchor: Coordinate, raw_places: List[RawPlace]) -> None:
        locations = [
            {"name": p.name or "Unknown", "lat": p.lat, "lon": p.lon, "address": p.address}
            for p in raw_places
        ]
        body = {
            "user_id": self.settings.user_id or "anonymous",
            "search_lat": anchor.lat,
            "search_lon": anchor.lon,
            "locations": locations,
            "locations_count": len(locations),
        }
        self._http().post_json(self._url("/search-log"), body, extra_headers={"Prefer": "return=minimal"})

    def fetch_ratings_near(self, anchor: Coordinate) -> List[ReliabilityScore]:
        payload = self._http().get_json(
            self._url("/ratings"), params={"near": f"{anchor.lat},{anchor.lon}"}
        )
        return parse_ratings(payload)

    def fetch_blacklisted(self) -> List[ReliabilityScore]:
        payload = self._http().get_json(self._url("/ratings"), params={"blacklisted": "true"})
        return [r for r in parse_ratings(payload) if r.is_blacklisted]

    def fetch_flags(self) -> Dict[str, bool]:
        return parse_flags(self._http().get_json(self._url("/feature-flags")))

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False)
                self._pool = None

    # --- Internals ---

    def _submit(self, label: str, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        if not self.enabled:
            return None

        def run() -> Any:
            try:
                result = fn(*args)
            except Exception as exc:
                logger.warning("Remote sync (%s) failed: %s", label, exc)
                self._count("sync_failed")
                return None
            self._count("sync_sent")
            return result

        return self._pool_submit(run)

    def _pool_submit(self, fn: Callable[[], Any]) -> Optional[Future]:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="sync")
            try:
                return self._pool.submit(fn)
            except RuntimeError:
                logger.warning("Remote sync pool is shut down; dropping work")
                return None

    def _http(self) -> HttpClient:
        if self._http_client is not None:
            return self._http_client
        # requests.Session is not thread-safe; one client per worker thread.
        client = getattr(self._local, "client", None)
        if client is None:
            headers = {}
            if self.settings.api_key:
                headers["apikey"] = self.settings.api_key
                headers["Authorization"] = f"Bearer {self.settings.api_key}"
            client = HttpClient(headers=headers, timeout=config.SYNC_TIMEOUT_SECONDS, retry_max=1)
            self._local.client = client
        return client

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url}{path}"

    def _count(self, counter: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(counter)


def parse_ratings(payload: Any) -> List[ReliabilityScore]:
    if isinstance(payload, dict):
        payload = payload.get("ratings") or []
    records: List[ReliabilityScore] = []
    for item in payload or []:
        try:
            lat = float(item["lat"] if "lat" in item else item["latitude"])
            lon = float(item["lon"] if "lon" in item else item["longitude"])
        except (KeyError, TypeError, ValueError):
            continue
        poi_id = item.get("poi_id") or item.get("toilet_id") or poi_id_for(lat, lon)
        records.append(
            ReliabilityScore(
                poi_id=str(poi_id),
                lat=lat,
                lon=lon,
                name=item.get("name") or item.get("toilet_name") or "",
                total_positive=int(item.get("upvotes") or 0),
                total_negative=int(item.get("downvotes") or 0),
                cumulative_score=float(item.get("cumulative_score", 50.0)),
                not_a_place_reports=int(item.get("not_a_place_count") or item.get("not_toilet_count") or 0),
                is_blacklisted=bool(item.get("is_blacklisted")),
            )
        )
    return records


def parse_flags(payload: Any) -> Dict[str, bool]:
    if isinstance(payload, dict):
        return {str(k): bool(v) for k, v in payload.items()}
    flags: Dict[str, bool] = {}
    for item in payload or []:
        name = item.get("flag_name") or item.get("name")
        if name:
            flags[str(name)] = bool(item.get("is_enabled", item.get("enabled", False)))
    return flags
