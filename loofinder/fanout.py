"""Concurrent execution of one tier's provider queries."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from . import config
from .http import SearchMetrics
from .models import Circle, PointOfInterest, RawPlace
from .places_client import PlaceSearchProvider, poi_from_raw

logger = logging.getLogger(__name__)


class QueryFanout:
    """Runs one provider call per query and merges whatever came back.

    A failing or empty query contributes nothing. The merged list is only
    returned once every query has settled or the batch timeout elapsed;
    queries still running at that point are abandoned. No retries here.
    """

    def __init__(
        self,
        provider: PlaceSearchProvider,
        max_workers: int = config.FANOUT_MAX_WORKERS,
        metrics: Optional[SearchMetrics] = None,
    ) -> None:
        self.provider = provider
        self.max_workers = max(1, int(max_workers))
        self.metrics = metrics

    def search(
        self,
        queries: List[str],
        region: Circle,
        timeout: Optional[float] = None,
    ) -> Tuple[List[PointOfInterest], List[RawPlace]]:
        """Return (candidates, raw places) for the batch."""
        timeout = config.FANOUT_TIMEOUT_SECONDS if timeout is None else timeout
        queries = list(dict.fromkeys(q for q in queries if q))
        if not queries:
            return [], []

        pool = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(queries)),
            thread_name_prefix="fanout",
        )
        try:
            futures = {
                pool.submit(
                    self.provider.query,
                    query,
                    region.center.lat,
                    region.center.lon,
                    region.radius_m,
                ): query
                for query in queries
            }
            done, not_done = wait(futures, timeout=timeout)
        finally:
            # Do not block on stragglers; their results are dropped.
            pool.shutdown(wait=False, cancel_futures=True)

        counts: Dict[str, int] = {}
        raw_places: List[RawPlace] = []
        for future in futures:
            query = futures[future]
            self._count("provider_queries")
            if future not in done:
                logger.warning("Query %r timed out after %.1fs", query, timeout)
                self._count("provider_failures")
                counts[query] = -1
                continue
            try:
                results = future.result()
            except Exception as exc:
                logger.warning("Query %r failed: %s", query, exc)
                self._count("provider_failures")
                counts[query] = -1
                continue
            results = list(results or [])
            if not results:
                self._count("provider_empty")
            counts[query] = len(results)
            raw_places.extend(results)

        if not_done:
            logger.info("%s of %s queries abandoned", len(not_done), len(futures))
        summary = ", ".join(f"{q}: {n}" for q, n in counts.items())
        logger.debug("Query results: %s", summary)
        return [poi_from_raw(raw) for raw in raw_places], raw_places

    def _count(self, counter: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(counter)
