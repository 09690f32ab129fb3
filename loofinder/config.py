"""Project configuration.

Loads user-defined search parameters from search_config.json when available,
falling back to sensible defaults. Keep API request shapes and tuning
constants centralized here.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"

# --- Field masks ---

PLACES_FIELD_MASK = (
    "places.id,places.displayName,places.location,places.types,places.primaryType,"
    "places.formattedAddress,places.addressComponents"
)


# --- Search tiers ---

@dataclass(frozen=True)
class SearchTier:
    radius_m: float
    queries: Tuple[str, ...]


_DEFAULT_TIERS: List[SearchTier] = [
    # Dedicated facilities only
    SearchTier(
        radius_m=500,
        queries=("public toilet", "restroom", "WC", "toilettes", "トイレ", "화장실"),
    ),
    # Transit and retail
    SearchTier(
        radius_m=1000,
        queries=(
            "public toilet restroom WC",
            "train station",
            "railway station",
            "bus station",
            "shopping centre mall",
            "supermarket Tesco Sainsbury Asda",
            "library",
            "hospital",
        ),
    ),
    # Food and hospitality
    SearchTier(
        radius_m=2000,
        queries=(
            "public toilet",
            "station",
            "shopping centre",
            "supermarket",
            "McDonald's KFC Burger King",
            "Starbucks Costa Coffee",
            "park",
            "library",
            "hospital",
            "hotel",
        ),
    ),
]

SEARCH_TIERS: List[SearchTier] = list(_DEFAULT_TIERS)

# --- Search behaviour ---

MAX_ACCEPTABLE_DISTANCE_M = 5000.0
CONSISTENCY_RADIUS_M = 50.0
FRESH_CACHE_RADIUS_M = 500.0
REFRESH_MOVEMENT_THRESHOLD_M = 100.0
SEARCH_SEQUENCE_RETRIES = 2
SEARCH_RETRY_DELAY_SECONDS = 1.0
FANOUT_TIMEOUT_SECONDS = 10.0
FANOUT_MAX_WORKERS = 10

# --- Dedupe and ranking ---

DEDUPE_RADIUS_M = 50.0
RANK_INDIFFERENCE_M = 10.0
REPUTATION_FILTER_MIN_REMAINING = 3

# --- Reputation ---

SCORE_RETENTION = 0.95
SCORE_UPVOTE_DELTA = 10.0
SCORE_DOWNVOTE_DELTA = -20.0
RECENT_WINDOW_DAYS = 7
DOWNVOTE_SPIKE_THRESHOLD = 3
UNCERTAIN_CLEAR_RATIO = 2
NOT_A_PLACE_REASONS = ("not a place", "not a toilet")
NOT_A_PLACE_BLACKLIST_THRESHOLD = 2
HIDE_SCORE_THRESHOLD = -20.0
HIDE_MIN_FEEDBACK = 5
RANKING_ADJUSTMENT_MAX_M = 50.0
UNCERTAIN_PENALTY_M = -50.0
FEEDBACK_LOG_MAX_RECORDS = 1000
FEEDBACK_LOG_MAX_AGE_DAYS = 90

# --- Result cache ---

CACHE_MAX_ENTRIES = 50
CACHE_FRESHNESS_SECONDS = 30 * 60
CACHE_EXPIRY_SECONDS = 24 * 60 * 60

# --- Location ---

LOCATION_POLL_INTERVAL_SECONDS = 0.5
LOCATION_POLL_MAX_ATTEMPTS = 10
LOCATION_GOOD_ACCURACY_M = 50.0
LOCATION_COARSE_ACCURACY_M = 150.0
LOCATION_MAX_AGE_SECONDS = 10.0
LOCATION_COLD_TIMEOUT_SECONDS = 15.0
LOCATION_WARM_TIMEOUT_SECONDS = 8.0
LOCATION_WARM_AGE_SECONDS = 30.0

# --- Remote sync ---

SYNC_TIMEOUT_SECONDS = 10
SYNC_MAX_WORKERS = 2
FLAG_SAVE_SEARCH_REQUESTS = "save_search_requests"

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

# --- Storage ---

DB_PATH = "loofinder.db"


@dataclass(frozen=True)
class SyncSettings:
    base_url: Optional[str]
    api_key: Optional[str]
    user_id: Optional[str]

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


def sync_settings_from_env() -> SyncSettings:
    base_url = (os.environ.get("LOOFINDER_SYNC_URL") or "").strip() or None
    api_key = (os.environ.get("LOOFINDER_SYNC_KEY") or "").strip() or None
    user_id = (os.environ.get("LOOFINDER_USER_ID") or "").strip() or None
    return SyncSettings(base_url=base_url.rstrip("/") if base_url else None, api_key=api_key, user_id=user_id)


def validate_tiers(tiers: List[SearchTier]) -> None:
    if not tiers:
        raise ValueError("At least one search tier is required")
    for idx, tier in enumerate(tiers):
        if tier.radius_m <= 0:
            raise ValueError(f"Tier {idx + 1} radius must be positive")
        if not tier.queries:
            raise ValueError(f"Tier {idx + 1} has no queries")


def _parse_tiers(raw: List[Dict[str, Any]]) -> List[SearchTier]:
    tiers = []
    for item in raw:
        queries = tuple(str(q) for q in item.get("queries", []) if str(q).strip())
        tiers.append(SearchTier(radius_m=float(item.get("radius_m", 0)), queries=queries))
    return tiers


def load_search_config(path: Optional[str] = None) -> bool:
    """Load search configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "search_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    tiers = data.get("tiers")
    if tiers:
        parsed = _parse_tiers(tiers)
        validate_tiers(parsed)
        globals_ref["SEARCH_TIERS"] = parsed

    max_dist = data.get("max_distance_m")
    if max_dist is not None:
        globals_ref["MAX_ACCEPTABLE_DISTANCE_M"] = float(max_dist)

    radii = data.get("radii", {})
    if "consistency_m" in radii:
        globals_ref["CONSISTENCY_RADIUS_M"] = float(radii["consistency_m"])
    if "fresh_cache_m" in radii:
        globals_ref["FRESH_CACHE_RADIUS_M"] = float(radii["fresh_cache_m"])
    if "refresh_movement_m" in radii:
        globals_ref["REFRESH_MOVEMENT_THRESHOLD_M"] = float(radii["refresh_movement_m"])

    cache = data.get("cache", {})
    if "freshness_minutes" in cache:
        globals_ref["CACHE_FRESHNESS_SECONDS"] = float(cache["freshness_minutes"]) * 60
    if "max_entries" in cache:
        globals_ref["CACHE_MAX_ENTRIES"] = int(cache["max_entries"])

    retries = data.get("retries")
    if retries is not None:
        globals_ref["SEARCH_SEQUENCE_RETRIES"] = max(0, int(retries))

    return True
