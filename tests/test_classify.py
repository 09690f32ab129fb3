from loofinder.classify import (
    classify_free_access,
    display_name,
    is_dedicated_facility,
    is_free_access,
    is_fuel_kiosk,
)
from loofinder.geo import haversine_m, offset_m
from loofinder.models import CATEGORY_PAID, PointOfInterest, poi_id_for


def test_free_and_paid_heuristics():
    assert classify_free_access("Public Toilet", "public_bathroom")
    assert classify_free_access("King's Cross Station")
    assert classify_free_access("Hyde Park")
    assert not classify_free_access("Starbucks", "cafe")
    assert not classify_free_access("Corner Bistro", "restaurant")
    # Unknown places get the benefit of the doubt
    assert classify_free_access("Somewhere")


def test_free_signal_beats_paid_signal():
    assert classify_free_access("Station Cafe", "cafe")


def test_keywords_match_whole_words_only():
    assert not classify_free_access("Costa Coffee Bloomsbury")
    assert not classify_free_access("Pret A Manger", "cafe")
    assert classify_free_access("Interpreter Bar")
    assert display_name(PointOfInterest("Sparks Diner", 51.5, -0.14)).endswith("🍔🚻")
    assert not is_dedicated_facility(PointOfInterest("Bloom Florist", 51.5, -0.12))


def test_plural_and_possessive_forms_still_match():
    assert is_dedicated_facility(PointOfInterest("Public Toilets", 51.5, -0.12))
    assert not classify_free_access("McDonald's")
    assert classify_free_access("Sainsbury's Local")
    assert is_dedicated_facility(PointOfInterest("駅のトイレ", 35.68, 139.76))


def test_explicit_category_wins():
    poi = PointOfInterest("Public Toilet", 51.5, -0.12, category=CATEGORY_PAID)

    assert not is_free_access(poi)


def test_dedicated_facility_detection():
    assert is_dedicated_facility(PointOfInterest("Toilettes publiques", 48.85, 2.35))
    assert is_dedicated_facility(PointOfInterest("Unnamed", 35.68, 139.76, category_hint="public_bathroom"))
    assert not is_dedicated_facility(PointOfInterest("Tesco Extra", 51.5, -0.12))


def test_fuel_kiosk_unless_large_retailer():
    assert is_fuel_kiosk(PointOfInterest("BP Petrol Station", 51.5, -0.12))
    assert not is_fuel_kiosk(PointOfInterest("Sainsbury's Petrol Station", 51.5, -0.12))
    assert not is_fuel_kiosk(PointOfInterest("Public Toilet", 51.5, -0.12))


def test_display_name_markers():
    assert display_name(PointOfInterest("Victoria Station", 51.5, -0.14)).endswith("🚉🚻")
    assert display_name(PointOfInterest("Plain Name", 51.5, -0.14)) == "Plain Name"


def test_identity_collides_within_rounding():
    a = poi_id_for(51.50071, -0.12461)
    b = poi_id_for(51.50069, -0.12459)

    assert a == b == "51.5007,-0.1246"


def test_offset_matches_haversine():
    lat, lon = offset_m(51.5007, -0.1246, 30, 40)

    assert abs(haversine_m(51.5007, -0.1246, lat, lon) - 50) < 0.1
