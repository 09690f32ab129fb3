"""Name and category heuristics for candidate places."""
from __future__ import annotations

import re
from typing import Iterable, Optional

from .models import CATEGORY_FREE, CATEGORY_PAID, CATEGORY_UNKNOWN, PointOfInterest, RawPlace

FACILITY_KEYWORDS = [
    # English
    "toilet", "restroom", "washroom", "lavatory", "loo", "wc", "public convenience",
    # French
    "toilettes", "sanitaires",
    # Spanish
    "baño", "aseo", "servicio",
    # German
    "toilette", "klo",
    # Italian
    "bagno", "gabinetto",
    # Portuguese
    "banheiro", "sanitário",
    # Japanese
    "トイレ", "お手洗い", "化粧室",
    # Korean
    "화장실", "변소",
    # Chinese
    "厕所", "卫生间", "洗手间",
]

FACILITY_CATEGORIES = {"restroom", "public_bathroom", "toilet", "toilets"}

FREE_KEYWORDS = [
    "toilet", "restroom", "washroom", "wc", "lavatory", "loo",
    "station", "terminal", "airport", "motor park",
    "park", "garden",
    "library", "museum",
    "hospital", "clinic",
    "shopping centre", "shopping center", "mall", "plaza",
    "supermarket", "tesco", "sainsbury", "asda", "waitrose", "aldi", "lidl",
    "shoprite", "spar", "hubmart", "justrite",
    "filling station", "petrol station",
    "leisure centre", "sports centre", "community centre",
    "hotel", "guest house",
]

FREE_CATEGORIES = {
    "park", "hospital", "library", "public_transport", "airport", "transit_station",
    "train_station", "bus_station", "subway_station", "public_bathroom", "restroom",
    "shopping_mall", "supermarket",
}

PAID_KEYWORDS = [
    "mcdonald", "kfc", "burger king", "starbucks", "subway", "wendy",
    "taco bell", "pizza hut", "costa", "pret", "cafe", "café", "coffee",
    "restaurant", "diner", "eatery",
    "chicken republic", "mr biggs", "tantalizers", "sweet sensation",
]

PAID_CATEGORIES = {"restaurant", "cafe", "coffee_shop", "food", "food_market", "fast_food_restaurant", "bar"}

FUEL_KEYWORDS = ["petrol", "gas station", "filling station"]
LARGE_RETAIL_BRANDS = ["tesco", "sainsbury", "asda", "morrisons", "waitrose"]

_TRANSPORT_KEYWORDS = ["station", "terminal", "airport", "metro", "underground", "tube"]
_SHOPPING_KEYWORDS = ["mall", "shopping", "supermarket", "tesco", "sainsbury", "asda", "waitrose", "aldi", "lidl"]
_FACILITY_KIND_KEYWORDS = ["library", "centre", "center", "hospital", "museum"]


def _keyword_re(words: Iterable[str]) -> re.Pattern[str]:
    """Whole-word alternation; plural and possessive endings still match.

    CJK keywords are matched anywhere since those scripts have no word breaks.
    """
    parts = []
    for word in sorted(set(words), key=len, reverse=True):
        escaped = re.escape(word.lower())
        if any(ord(ch) >= 0x3000 for ch in word):
            parts.append(escaped)
        else:
            parts.append(rf"(?<!\w){escaped}(?:s|es|'s)?(?!\w)")
    return re.compile("|".join(parts))


FACILITY_RE = _keyword_re(FACILITY_KEYWORDS)
FREE_RE = _keyword_re(FREE_KEYWORDS)
PAID_RE = _keyword_re(PAID_KEYWORDS)
FUEL_RE = _keyword_re(FUEL_KEYWORDS)
LARGE_RETAIL_RE = _keyword_re(LARGE_RETAIL_BRANDS)
_TRANSPORT_RE = _keyword_re(_TRANSPORT_KEYWORDS)
_PARK_RE = _keyword_re(["park"])
_SHOPPING_RE = _keyword_re(_SHOPPING_KEYWORDS)
_FACILITY_KIND_RE = _keyword_re(_FACILITY_KIND_KEYWORDS)


def _matches(text: str, pattern: re.Pattern[str]) -> bool:
    return bool(text) and pattern.search(text) is not None


def _hint_tokens(hint: Optional[str]) -> set:
    if not hint:
        return set()
    normalized = hint.lower().replace("-", "_")
    tokens = set(normalized.replace(",", " ").split())
    tokens.add(normalized.strip())
    tokens.add(normalized.strip().replace(" ", "_"))
    return tokens


def classify_free_access(name: Optional[str], hint: Optional[str] = None) -> bool:
    """True when the place is likely usable without buying anything.

    Name and category hint are both inspected; free signals win over paid ones
    and anything unrecognised gets the benefit of the doubt.
    """
    text = " ".join(part for part in ((name or ""), (hint or "")) if part).lower().replace("_", " ")
    if _matches(text, FREE_RE):
        return True
    tokens = _hint_tokens(hint)
    if tokens & FREE_CATEGORIES:
        return True
    if _matches(text, PAID_RE):
        return False
    if tokens & PAID_CATEGORIES:
        return False
    return True


def is_free_access(poi: PointOfInterest) -> bool:
    if poi.category == CATEGORY_FREE:
        return True
    if poi.category == CATEGORY_PAID:
        return False
    return classify_free_access(poi.name, poi.category_hint)


def category_for(raw: RawPlace) -> str:
    hint = raw.category
    if not raw.name and not hint and not raw.types:
        return CATEGORY_UNKNOWN
    hint_text = " ".join(filter(None, [hint] + list(raw.types)))
    return CATEGORY_FREE if classify_free_access(raw.name, hint_text) else CATEGORY_PAID


def is_dedicated_facility(poi: PointOfInterest) -> bool:
    if _hint_tokens(poi.category_hint) & FACILITY_CATEGORIES:
        return True
    return _matches((poi.name or "").lower(), FACILITY_RE)


def is_fuel_kiosk(poi: PointOfInterest) -> bool:
    name = (poi.name or "").lower()
    if not _matches(name, FUEL_RE):
        return False
    return not _matches(name, LARGE_RETAIL_RE)


def display_name(poi: PointOfInterest) -> str:
    name = poi.name or "Toilet"
    lower = name.lower()
    tokens = _hint_tokens(poi.category_hint)
    if _matches(lower, _TRANSPORT_RE):
        return f"{name} 🚉🚻"
    if _matches(lower, _PARK_RE) or "park" in tokens:
        return f"{name} 🌳🚻"
    if _matches(lower, _SHOPPING_RE):
        return f"{name} 🛒🚻"
    if _matches(lower, PAID_RE) or tokens & {"restaurant", "cafe"}:
        return f"{name} 🍔🚻"
    if _matches(lower, _FACILITY_KIND_RE):
        return f"{name} 🏛🚻"
    return name
