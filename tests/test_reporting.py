import json

import pytest

from loofinder.http import SearchMetrics
from loofinder.models import Coordinate, PointOfInterest, SearchResult
from loofinder.reporting import atomic_writer, build_result_payload, render_result, write_json_object


def make_result():
    poi = PointOfInterest("Victoria Station", 51.4952, -0.1441, address="Victoria St, London", category="free")
    return SearchResult(destination=poi, origin=Coordinate(51.4960, -0.1440), source="live", tier=2, distance_m=89.04)


def test_write_json_object_nested_atomic(tmp_path):
    path = tmp_path / "result.json"
    payload = {"destination": {"name": "Toilettes Gare du Nord", "note": "Zółć"}, "tier": 1}

    write_json_object(str(path), payload)

    text = path.read_text(encoding="utf-8")
    assert json.loads(text) == payload
    assert "ó" in text
    leftovers = [p for p in tmp_path.iterdir() if p.name != "result.json"]
    assert not leftovers


def test_atomic_writer_keeps_old_file_on_error(tmp_path):
    path = tmp_path / "result.json"
    path.write_text("old", encoding="utf-8")

    with pytest.raises(RuntimeError):
        with atomic_writer(str(path)) as f:
            f.write("new")
            raise RuntimeError("boom")

    assert path.read_text(encoding="utf-8") == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["result.json"]


def test_build_result_payload():
    metrics = SearchMetrics()
    metrics.inc("provider_queries", 4)

    payload = build_result_payload(make_result(), metrics)

    assert payload["destination"]["name"] == "Victoria Station"
    assert payload["destination"]["poi_id"] == "51.4952,-0.1441"
    assert payload["distance_m"] == 89.0
    assert payload["free_access"] is True
    assert payload["display_name"].startswith("Victoria Station")
    assert payload["metrics"]["provider_queries"] == 4


def test_render_result_lines():
    lines = render_result(make_result())

    assert lines[1] == "  89m away (live, tier 2)"
    assert lines[2] == "  Victoria St, London"
