"""Duplicate merging, candidate filtering and deterministic ordering."""
from __future__ import annotations

import functools
import logging
from typing import Callable, Collection, Dict, List, Optional, Tuple

from . import config
from .classify import is_dedicated_facility, is_free_access, is_fuel_kiosk
from .models import Coordinate, PointOfInterest
from .reliability import ReliabilityStore

logger = logging.getLogger(__name__)


def dedupe(
    pois: List[PointOfInterest],
    anchor: Coordinate,
    radius_m: Optional[float] = None,
) -> List[PointOfInterest]:
    """Collapse places closer than ``radius_m`` into one, preferring free access.

    Candidates are walked closest first; when a later candidate duplicates one
    already kept, it only replaces it if it is free and every kept place within
    ``radius_m`` of it is paid. All of those paid places are dropped.
    """
    radius = config.DEDUPE_RADIUS_M if radius_m is None else radius_m
    ordered = sorted(pois, key=lambda p: (p.distance_to(anchor), p.name or "", p.lat, p.lon))

    unique: List[PointOfInterest] = []
    for poi in ordered:
        clashes = [idx for idx, kept in enumerate(unique) if kept.distance_to(poi.coordinate) <= radius]
        if not clashes:
            unique.append(poi)
            continue
        if is_free_access(poi) and not any(is_free_access(unique[idx]) for idx in clashes):
            # The free place takes the first slot and every paid place it covers goes.
            logger.debug("Replacing %s paid place(s) with free alternative %s", len(clashes), poi.name)
            unique[clashes[0]] = poi
            for idx in reversed(clashes[1:]):
                del unique[idx]
    return unique


def filter_candidates(
    pois: List[PointOfInterest],
    anchor: Coordinate,
    max_distance_m: Optional[float] = None,
    reliability: Optional[ReliabilityStore] = None,
    skip_ids: Collection[str] = (),
) -> Tuple[List[PointOfInterest], Dict[str, int]]:
    """Drop unusable candidates. Returns the survivors and rejection counts."""
    max_distance = config.MAX_ACCEPTABLE_DISTANCE_M if max_distance_m is None else max_distance_m
    rejection_counts: Dict[str, int] = {}
    survivors: List[PointOfInterest] = []

    for poi in pois:
        reason = None
        if poi.distance_to(anchor) > max_distance:
            reason = "too_far"
        elif is_fuel_kiosk(poi):
            reason = "fuel_kiosk"
        elif poi.poi_id in skip_ids:
            reason = "skipped"
        if reason:
            rejection_counts[reason] = rejection_counts.get(reason, 0) + 1
        else:
            survivors.append(poi)

    if reliability is None:
        return survivors, rejection_counts

    reputable = [p for p in survivors if not reliability.should_hide(p.poi_id)]
    hidden = len(survivors) - len(reputable)
    if hidden and len(reputable) > config.REPUTATION_FILTER_MIN_REMAINING:
        rejection_counts["poor_reputation"] = hidden
        return reputable, rejection_counts
    if hidden:
        logger.info("Keeping %s poorly rated places; too few alternatives", hidden)
    return survivors, rejection_counts


def rank(
    pois: List[PointOfInterest],
    anchor: Coordinate,
    adjustment: Optional[Callable[[str], float]] = None,
    band_m: Optional[float] = None,
) -> List[PointOfInterest]:
    """Order candidates deterministically.

    Keys: distance (minus any reputation adjustment) with an indifference band,
    dedicated facility first, name, then latitude and longitude.
    """
    band = config.RANK_INDIFFERENCE_M if band_m is None else band_m
    effective: Dict[int, float] = {}
    dedicated: Dict[int, bool] = {}
    for poi in pois:
        distance = poi.distance_to(anchor)
        if adjustment is not None:
            distance -= adjustment(poi.poi_id)
        effective[id(poi)] = distance
        dedicated[id(poi)] = is_dedicated_facility(poi)

    def compare(a: PointOfInterest, b: PointOfInterest) -> int:
        da = effective[id(a)]
        db = effective[id(b)]
        if abs(da - db) > band:
            return -1 if da < db else 1
        if dedicated[id(a)] != dedicated[id(b)]:
            return -1 if dedicated[id(a)] else 1
        if (a.name or "") != (b.name or ""):
            return -1 if (a.name or "") < (b.name or "") else 1
        if a.lat != b.lat:
            return -1 if a.lat < b.lat else 1
        if a.lon != b.lon:
            return -1 if a.lon < b.lon else 1
        return 0

    # The banded comparison is not transitive, so start from a canonical order
    # to make the result independent of the order results arrived in.
    canonical = sorted(pois, key=lambda p: (effective[id(p)], p.name or "", p.lat, p.lon))
    return sorted(canonical, key=functools.cmp_to_key(compare))


def reputation_adjustment(reliability: Optional[ReliabilityStore]) -> Optional[Callable[[str], float]]:
    if reliability is None:
        return None
    return reliability.ranking_adjustment
