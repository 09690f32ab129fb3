"""Search orchestration: consistency shortcut, cache, tiered live search, fallback."""
from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from . import config
from .cache import ResultCache
from .fanout import QueryFanout
from .http import SearchMetrics
from .location import Fix, LocationProvider, LocationUnavailable, acquire_fix
from .models import (
    SOURCE_CACHE,
    SOURCE_LIVE,
    Circle,
    Coordinate,
    FeatureFlags,
    PointOfInterest,
    RawPlace,
    SearchResult,
)
from .ranking import dedupe, filter_candidates, rank, reputation_adjustment
from .reliability import ReliabilityStore
from .sync import RemoteSyncClient

logger = logging.getLogger(__name__)


class NoResultsFound(RuntimeError):
    pass


class SearchState(str, enum.Enum):
    IDLE = "idle"
    CONSISTENCY_CHECK = "consistency_check"
    CACHE_CHECK = "cache_check"
    SEARCHING_TIER = "searching_tier"
    FOUND = "found"
    FAILED = "failed"


@dataclass
class TierOutcome:
    tier: int
    ranked: List[PointOfInterest]
    unique: List[PointOfInterest]
    raw_places: List[RawPlace]


class SearchOrchestrator:
    """Finds the nearest usable place for one logical session.

    Only one search runs at a time; a call made while another is in flight
    returns None. Stores and the sync client are injected and may be shared
    with other sessions.
    """

    def __init__(
        self,
        fanout: QueryFanout,
        reliability: ReliabilityStore,
        cache: ResultCache,
        sync: Optional[RemoteSyncClient] = None,
        location_provider: Optional[LocationProvider] = None,
        tiers: Optional[List[config.SearchTier]] = None,
        flags: Optional[FeatureFlags] = None,
        metrics: Optional[SearchMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_distance_m: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
    ) -> None:
        self.fanout = fanout
        self.reliability = reliability
        self.cache = cache
        self.sync = sync
        self.location_provider = location_provider
        self.tiers = list(tiers) if tiers is not None else list(config.SEARCH_TIERS)
        config.validate_tiers(self.tiers)
        self.flags = flags
        self.metrics = metrics or SearchMetrics()
        self.sleep = sleep
        self.max_distance_m = (
            config.MAX_ACCEPTABLE_DISTANCE_M if max_distance_m is None else float(max_distance_m)
        )
        self.retries = config.SEARCH_SEQUENCE_RETRIES if retries is None else max(0, int(retries))
        self.retry_delay_seconds = (
            config.SEARCH_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )

        self._busy = threading.Lock()
        self._state_lock = threading.RLock()
        self._state = SearchState.IDLE
        self._generation = 0
        self._anchor: Optional[SearchResult] = None
        self._last_result: Optional[SearchResult] = None
        self._last_live_origin: Optional[Coordinate] = None
        self._skip_ids: Set[str] = set()
        self._background: Optional[ThreadPoolExecutor] = None
        self.pending_refresh: Optional[Future] = None

    # --- Public surface ---

    @property
    def state(self) -> SearchState:
        with self._state_lock:
            return self._state

    @property
    def last_result(self) -> Optional[SearchResult]:
        with self._state_lock:
            return self._last_result

    def find_nearest(
        self,
        fix: Optional[Fix] = None,
        flags: Optional[FeatureFlags] = None,
    ) -> Optional[SearchResult]:
        """Return the best destination for the caller's location.

        Raises LocationUnavailable or NoResultsFound. Returns None when a
        search is already running for this session.
        """
        if not self._busy.acquire(blocking=False):
            logger.info("Search already in progress; ignoring request")
            return None
        try:
            with self._state_lock:
                self._generation += 1
                generation = self._generation
            try:
                result = self._search(fix, flags, generation)
            except (LocationUnavailable, NoResultsFound):
                self._set_state(SearchState.FAILED)
                raise
            self._set_state(SearchState.FOUND)
            return result
        finally:
            self._busy.release()

    def find_another(
        self,
        fix: Optional[Fix] = None,
        flags: Optional[FeatureFlags] = None,
    ) -> Optional[SearchResult]:
        """Skip the current destination for this session and search again."""
        with self._state_lock:
            if self._last_result is not None:
                skipped = self._last_result.destination
                self._skip_ids.add(skipped.poi_id)
                logger.info("Skipping %s for this session", skipped.name)
            self._clear_anchor_locked()
        return self.find_nearest(fix, flags)

    def reset(self) -> None:
        with self._state_lock:
            self._clear_anchor_locked()
            self._skip_ids.clear()
            self._last_result = None
            self._state = SearchState.IDLE

    def close(self) -> None:
        if self._background is not None:
            self._background.shutdown(wait=False)
            self._background = None

    # --- Search flow ---

    def _search(
        self,
        fix: Optional[Fix],
        flags: Optional[FeatureFlags],
        generation: int,
    ) -> SearchResult:
        if fix is None:
            if self.location_provider is None:
                raise LocationUnavailable("No location provider configured")
            fix = acquire_fix(self.location_provider, sleep=self.sleep)
        origin = fix.coordinate
        flags = self._resolve_flags(flags)

        self._set_state(SearchState.CONSISTENCY_CHECK)
        with self._state_lock:
            anchor = self._anchor
        if anchor is not None and anchor.origin.distance_to(origin) <= config.CONSISTENCY_RADIUS_M:
            self.metrics.inc("consistency_hits")
            logger.info("Within %.0fm of the last search; returning the same place", config.CONSISTENCY_RADIUS_M)
            return self._make_result(anchor.destination, origin, anchor.source, anchor.tier)

        self._set_state(SearchState.CACHE_CHECK)
        entry = self.cache.freshest(origin, accept=self._acceptable)
        if entry is not None:
            self.metrics.inc("fresh_cache_hits")
            logger.info("Using fresh cached place %s", entry.poi.name)
            self._maybe_refresh_in_background(origin)
            result = self._make_result(entry.poi, origin, SOURCE_CACHE, None)
            self._publish(result, generation)
            return result

        if self.sync is not None:
            self.sync.pull_ratings(origin, self.reliability)

        outcome = None
        for attempt in range(self.retries + 1):
            if attempt:
                logger.info(
                    "All tiers empty; retrying sequence (%s/%s) in %.1fs",
                    attempt,
                    self.retries,
                    self.retry_delay_seconds,
                )
                self.sleep(self.retry_delay_seconds)
            outcome = self._run_tiers(origin, self.tiers)
            if outcome is not None:
                break

        if outcome is not None:
            return self._accept_live(outcome, origin, flags, generation)
        return self._fallback(origin, generation)

    def _run_tiers(self, origin: Coordinate, tiers: List[config.SearchTier]) -> Optional[TierOutcome]:
        with self._state_lock:
            skip_ids = set(self._skip_ids)
        adjustment = reputation_adjustment(self.reliability)
        for idx, tier in enumerate(tiers, start=1):
            self._set_state(SearchState.SEARCHING_TIER)
            logger.info("Tier %s: %s queries within %.0fm", idx, len(tier.queries), tier.radius_m)
            candidates, raw_places = self.fanout.search(list(tier.queries), Circle(origin, tier.radius_m))
            unique = dedupe(candidates, origin)
            survivors, rejected = filter_candidates(
                unique,
                origin,
                max_distance_m=self.max_distance_m,
                reliability=self.reliability,
                skip_ids=skip_ids,
            )
            if rejected:
                logger.debug("Tier %s rejections: %s", idx, rejected)
            if not survivors:
                logger.info("Tier %s: no usable places (%s raw)", idx, len(raw_places))
                continue
            ranked = rank(survivors, origin, adjustment=adjustment)
            logger.info("Tier %s: %s usable places", idx, len(ranked))
            return TierOutcome(tier=idx, ranked=ranked, unique=unique, raw_places=raw_places)
        return None

    def _accept_live(
        self,
        outcome: TierOutcome,
        origin: Coordinate,
        flags: FeatureFlags,
        generation: int,
    ) -> SearchResult:
        result = self._make_result(outcome.ranked[0], origin, SOURCE_LIVE, outcome.tier)
        self.cache.put(outcome.unique, origin)
        with self._state_lock:
            self._last_live_origin = origin
        if self.sync is not None:
            self.sync.report_discovered(outcome.unique)
            self.sync.log_search(origin, outcome.raw_places, flags)
        self._publish(result, generation)
        return result

    def _fallback(self, origin: Coordinate, generation: int) -> SearchResult:
        self._set_state(SearchState.CACHE_CHECK)
        entry = self.cache.freshest(origin, radius_m=self.max_distance_m, accept=self._acceptable)
        if entry is None:
            entry = self.cache.nearest(origin, accept=self._acceptable)
            if entry is not None:
                self.metrics.inc("stale_cache_fallbacks")
                logger.warning("Live search exhausted; using stale cached place %s", entry.poi.name)
        else:
            logger.warning("Live search exhausted; using cached place %s", entry.poi.name)
        if entry is None:
            raise NoResultsFound(
                f"No places found within {self.max_distance_m:.0f}m of {origin.lat:.5f},{origin.lon:.5f}"
            )
        result = self._make_result(entry.poi, origin, SOURCE_CACHE, None)
        self._publish(result, generation)
        return result

    # --- Background refresh ---

    def _maybe_refresh_in_background(self, origin: Coordinate) -> None:
        with self._state_lock:
            reference = self._last_live_origin or self.cache.last_known_location
            if reference is not None and reference.distance_to(origin) < config.REFRESH_MOVEMENT_THRESHOLD_M:
                return
            if self.pending_refresh is not None and not self.pending_refresh.done():
                return
            if self._background is None:
                self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refresh")
            self.pending_refresh = self._background.submit(self._refresh_cache, origin)

    def _refresh_cache(self, origin: Coordinate) -> None:
        # First tier only; the caller already has an answer.
        tier = self.tiers[0]
        try:
            candidates, _ = self.fanout.search(list(tier.queries), Circle(origin, tier.radius_m))
            unique = dedupe(candidates, origin)
            survivors, _ = filter_candidates(unique, origin, max_distance_m=self.max_distance_m)
            if survivors:
                self.cache.put(survivors, origin)
            with self._state_lock:
                self._last_live_origin = origin
            logger.info("Background refresh cached %s places", len(survivors))
        except Exception:
            logger.warning("Background cache refresh failed", exc_info=True)

    # --- Helpers ---

    def _acceptable(self, poi: PointOfInterest) -> bool:
        with self._state_lock:
            skipped = poi.poi_id in self._skip_ids
        return not skipped and not self.reliability.should_hide(poi.poi_id)

    def _resolve_flags(self, flags: Optional[FeatureFlags]) -> FeatureFlags:
        if flags is not None:
            return flags
        if self.flags is not None:
            return self.flags
        if self.sync is not None:
            return self.sync.cached_flags()
        return FeatureFlags()

    def _make_result(
        self,
        poi: PointOfInterest,
        origin: Coordinate,
        source: str,
        tier: Optional[int],
    ) -> SearchResult:
        return SearchResult(
            destination=poi,
            origin=origin,
            source=source,
            tier=tier,
            distance_m=poi.distance_to(origin),
        )

    def _publish(self, result: SearchResult, generation: int) -> None:
        with self._state_lock:
            if generation != self._generation:
                logger.info("Discarding result of a superseded search")
                return
            self._anchor = result
            self._last_result = result

    def _clear_anchor_locked(self) -> None:
        self._anchor = None
        self._generation += 1

    def _set_state(self, state: SearchState) -> None:
        with self._state_lock:
            self._state = state
