from loofinder import config
from loofinder.models import CATEGORY_FREE, CATEGORY_PAID, CATEGORY_UNKNOWN, RawPlace
from loofinder.places_client import (
    GooglePlacesProvider,
    build_text_search_body,
    format_address,
    parse_places_response,
    poi_from_raw,
)


class FakeHttpClient:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post_json(self, url, body, extra_headers=None, params=None):
        self.calls.append((url, body, extra_headers))
        return self.responses.pop(0) if self.responses else {}


def test_parse_places_response_variants():
    response = {
        "places": [
            {
                "id": "p1",
                "displayName": {"text": "Public Toilet"},
                "location": {"latitude": 51.501, "longitude": -0.124},
                "types": ["public_bathroom", "point_of_interest"],
                "addressComponents": [
                    {"shortText": "10", "types": ["street_number"]},
                    {"shortText": "Whitehall", "types": ["route"]},
                    {"longText": "London", "types": ["locality", "political"]},
                ],
            },
            {"placeId": "p2", "displayName": "Cafe Nero", "latLng": {"lat": 51.5, "lng": -0.12}, "primaryType": "cafe"},
            {"id": "p3", "displayName": {"text": "No location"}},
        ]
    }

    parsed = parse_places_response(response)

    assert [p.provider_id for p in parsed] == ["p1", "p2"]
    assert parsed[0].name == "Public Toilet"
    assert parsed[0].category == "public_bathroom"
    assert parsed[0].address == "10, Whitehall, London"
    assert parsed[1].name == "Cafe Nero"
    assert parsed[1].category == "cafe"
    assert parsed[1].lat == 51.5
    assert parse_places_response({}) == []


def test_format_address_falls_back_to_formatted():
    assert format_address(None, "1 Main St") == "1 Main St"
    assert format_address([], None) is None


def test_build_text_search_body_clamps_radius():
    body = build_text_search_body("toilet", 51.5, -0.12, 80000)

    assert body["textQuery"] == "toilet"
    assert body["locationBias"]["circle"]["radius"] == 50000.0
    assert body["locationBias"]["circle"]["center"] == {"latitude": 51.5, "longitude": -0.12}


def test_poi_from_raw_classifies_and_names():
    free = poi_from_raw(RawPlace("Public Toilet", 51.5, -0.12, "public_bathroom"))
    paid = poi_from_raw(RawPlace("Corner Cafe", 51.5, -0.12, "cafe"))
    nameless = poi_from_raw(RawPlace(None, 51.5, -0.12))

    assert free.category == CATEGORY_FREE
    assert paid.category == CATEGORY_PAID
    assert nameless.name == "Public Toilet"
    assert nameless.category == CATEGORY_UNKNOWN


def test_provider_remembers_only_non_empty_results():
    place = {"id": "p1", "displayName": {"text": "Public Toilet"}, "location": {"latitude": 51.5, "longitude": -0.12}}
    http = FakeHttpClient([{"places": []}, {"places": [place]}])
    provider = GooglePlacesProvider(http)

    assert provider.query("toilet", 51.5, -0.12, 500) == []
    first = provider.query("toilet", 51.5, -0.12, 500)
    second = provider.query("toilet", 51.5, -0.12, 500)

    assert [p.name for p in first] == ["Public Toilet"]
    assert second == first
    assert len(http.calls) == 2
    url, body, headers = http.calls[0]
    assert url == config.PLACES_TEXT_SEARCH_URL
    assert headers == {"X-Goog-FieldMask": config.PLACES_FIELD_MASK}
