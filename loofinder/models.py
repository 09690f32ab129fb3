"""Core records shared by the search, cache and reputation layers."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .geo import haversine_m, round_coordinate

CATEGORY_FREE = "free"
CATEGORY_PAID = "paid"
CATEGORY_UNKNOWN = "unknown"

SOURCE_LIVE = "live"
SOURCE_CACHE = "cache"
SOURCE_CROWD = "crowd"

# Neutral starting point of the decayed reputation score.
NEUTRAL_SCORE = 50.0
SCORE_DISPLAY_MIN = -100.0
SCORE_DISPLAY_MAX = 150.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def poi_id_for(lat: float, lon: float) -> str:
    """Identity key for a physical place.

    Coordinates are rounded to ~10m so re-detections of the same place collide.
    Distinct places that round to the same key are merged as well.
    """
    return f"{round_coordinate(lat)},{round_coordinate(lon)}"


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def distance_to(self, other: "Coordinate") -> float:
        return haversine_m(self.lat, self.lon, other.lat, other.lon)


@dataclass(frozen=True)
class Circle:
    center: Coordinate
    radius_m: float


@dataclass(frozen=True)
class RawPlace:
    """A single record as returned by the place search provider."""

    name: Optional[str]
    lat: float
    lon: float
    category: Optional[str] = None
    address: Optional[str] = None
    types: tuple = ()
    provider_id: Optional[str] = None


@dataclass(frozen=True)
class PointOfInterest:
    name: str
    lat: float
    lon: float
    address: Optional[str] = None
    category: str = CATEGORY_UNKNOWN
    source: str = SOURCE_LIVE
    category_hint: Optional[str] = None

    @property
    def poi_id(self) -> str:
        return poi_id_for(self.lat, self.lon)

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)

    def distance_to(self, anchor: Coordinate) -> float:
        return haversine_m(self.lat, self.lon, anchor.lat, anchor.lon)

    def with_source(self, source: str) -> "PointOfInterest":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poi_id": self.poi_id,
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "address": self.address,
            "category": self.category,
            "source": self.source,
            "category_hint": self.category_hint,
        }


@dataclass(frozen=True)
class CacheEntry:
    poi: PointOfInterest
    captured_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.captured_at).total_seconds()


@dataclass
class ReliabilityScore:
    poi_id: str
    lat: float
    lon: float
    name: str = ""
    total_positive: int = 0
    total_negative: int = 0
    recent_positive: int = 0
    recent_negative: int = 0
    cumulative_score: float = NEUTRAL_SCORE
    is_uncertain: bool = False
    not_a_place_reports: int = 0
    is_blacklisted: bool = False
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def total_feedback(self) -> int:
        return self.total_positive + self.total_negative

    @property
    def clamped_score(self) -> float:
        return max(SCORE_DISPLAY_MIN, min(SCORE_DISPLAY_MAX, self.cumulative_score))

    @property
    def normalized(self) -> float:
        # -100 -> 0.0, 100 -> 1.0
        return max(0.0, min(1.0, (self.cumulative_score + 100.0) / 200.0))

    @property
    def status(self) -> str:
        if self.is_uncertain:
            return "uncertain"
        if self.cumulative_score >= 70:
            return "reliable"
        if self.cumulative_score >= 30:
            return "mixed"
        return "unreliable"


@dataclass(frozen=True)
class FeedbackRecord:
    poi_id: str
    lat: float
    lon: float
    name: str
    positive: bool
    reason: Optional[str]
    timestamp: datetime
    record_id: Optional[str] = None


@dataclass(frozen=True)
class FeatureFlags:
    """Immutable snapshot of remotely configured switches."""

    values: Mapping[str, bool] = field(default_factory=dict)

    def enabled(self, name: str, default: bool = False) -> bool:
        value = self.values.get(name)
        if value is None:
            return default
        return bool(value)

    def merged(self, updates: Mapping[str, bool]) -> "FeatureFlags":
        values = dict(self.values)
        values.update({str(k): bool(v) for k, v in updates.items()})
        return FeatureFlags(values=values)


@dataclass(frozen=True)
class SearchResult:
    destination: PointOfInterest
    origin: Coordinate
    source: str
    tier: Optional[int] = None
    distance_m: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination.to_dict(),
            "origin": {"lat": self.origin.lat, "lon": self.origin.lon},
            "source": self.source,
            "tier": self.tier,
            "distance_m": round(self.distance_m, 1),
        }
