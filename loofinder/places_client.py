"""Place search provider interface and the Google Places implementation."""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Protocol

from . import config
from .classify import category_for
from .http import HttpClient
from .models import SOURCE_LIVE, PointOfInterest, RawPlace


class PlaceSearchProvider(Protocol):
    def query(
        self, text: str, center_lat: float, center_lon: float, radius_m: float
    ) -> List[RawPlace]:
        ...


class GooglePlacesProvider:
    """Text search against the Places API (New).

    Identical requests within one provider's lifetime are answered from memory.
    Empty responses are not remembered so a cold first call can be retried.
    """

    def __init__(
        self,
        http_client: HttpClient,
        field_mask: str = config.PLACES_FIELD_MASK,
    ) -> None:
        self.http = http_client
        self.field_mask = field_mask
        self._memory_cache: Dict[str, List[RawPlace]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_api_key(cls, api_key: str) -> "GooglePlacesProvider":
        http_client = HttpClient(
            headers={"X-Goog-Api-Key": api_key},
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
        )
        return cls(http_client)

    def query(
        self, text: str, center_lat: float, center_lon: float, radius_m: float
    ) -> List[RawPlace]:
        body = build_text_search_body(text, center_lat, center_lon, radius_m)
        key = f"{text}|{center_lat:.5f}|{center_lon:.5f}|{int(radius_m)}"
        with self._lock:
            cached = self._memory_cache.get(key)
        if cached is not None:
            return list(cached)
        response = self.http.post_json(
            config.PLACES_TEXT_SEARCH_URL,
            body,
            extra_headers={"X-Goog-FieldMask": self.field_mask},
        )
        places = parse_places_response(response or {})
        if places:
            with self._lock:
                self._memory_cache[key] = places
        return places


def build_text_search_body(
    query: str,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> Dict[str, Any]:
    return {
        "textQuery": query,
        "locationBias": {
            "circle": {
                "center": {"latitude": center_lat, "longitude": center_lon},
                # The API caps circle radii at 50 km
                "radius": float(min(max(radius_m, 1.0), 50000.0)),
            }
        },
    }


# Adapter/mapper for Places response fields

def parse_places_response(response: Dict[str, Any]) -> List[RawPlace]:
    places = response.get("places") or []
    parsed: List[RawPlace] = []
    for p in places:
        location = p.get("location") or p.get("latLng") or {}
        lat = location.get("latitude", location.get("lat"))
        lon = location.get("longitude", location.get("lng", location.get("lon")))
        if lat is None or lon is None:
            continue
        display = p.get("displayName")
        if isinstance(display, dict):
            name = display.get("text") or display.get("value")
        else:
            name = display
        types = tuple(p.get("types") or [])
        parsed.append(
            RawPlace(
                name=name,
                lat=float(lat),
                lon=float(lon),
                category=p.get("primaryType") or (types[0] if types else None),
                address=format_address(p.get("addressComponents"), p.get("formattedAddress")),
                types=types,
                provider_id=p.get("id") or p.get("placeId"),
            )
        )
    return parsed


def format_address(
    components: Optional[List[Dict[str, Any]]],
    formatted: Optional[str] = None,
) -> Optional[str]:
    """Join street number, route, locality and postal code."""
    by_type: Dict[str, str] = {}
    for component in components or []:
        text = component.get("shortText") or component.get("longText")
        if not text:
            continue
        for kind in component.get("types") or []:
            by_type.setdefault(kind, text)
    parts = [
        by_type.get(kind)
        for kind in ("street_number", "route", "locality", "postal_code")
        if by_type.get(kind)
    ]
    if parts:
        return ", ".join(parts)
    return formatted or None


def poi_from_raw(raw: RawPlace, source: str = SOURCE_LIVE) -> PointOfInterest:
    return PointOfInterest(
        name=raw.name or "Public Toilet",
        lat=raw.lat,
        lon=raw.lon,
        address=raw.address,
        category=category_for(raw),
        source=source,
        category_hint=raw.category,
    )
