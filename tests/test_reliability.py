from datetime import datetime, timedelta, timezone

import pytest

from loofinder import config
from loofinder.models import ReliabilityScore, poi_id_for
from loofinder.reliability import ReliabilityStore, decayed_score

POI = poi_id_for(51.5007, -0.1246)


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_single_vote_decay():
    up = ReliabilityStore(":memory:")
    down = ReliabilityStore(":memory:")

    assert up.record_feedback(POI, True).cumulative_score == pytest.approx(57.5)
    assert down.record_feedback(POI, False).cumulative_score == pytest.approx(27.5)
    assert decayed_score(57.5, True) == pytest.approx(57.5 * 0.95 + 10)


def test_new_record_takes_coordinates_from_id():
    store = ReliabilityStore(":memory:")
    score = store.record_feedback(POI, True, name="Public Toilet")

    assert score.lat == pytest.approx(51.5007)
    assert score.lon == pytest.approx(-0.1246)
    assert score.name == "Public Toilet"
    assert store.score("unknown") is None


def test_blacklist_is_permanent():
    store = ReliabilityStore(":memory:")
    store.record_feedback(POI, False, "not a place")
    assert not store.is_blacklisted(POI)
    store.record_feedback(POI, False, "Not a toilet")
    assert store.is_blacklisted(POI)

    for _ in range(100):
        store.record_feedback(POI, True)

    assert store.should_hide(POI)
    assert store.is_blacklisted(POI)
    assert store.score(POI).not_a_place_reports == 2


def test_not_a_place_reason_on_upvote_is_ignored():
    store = ReliabilityStore(":memory:")
    store.record_feedback(POI, True, "not a place")
    store.record_feedback(POI, True, "not a place")

    assert not store.is_blacklisted(POI)


def test_should_hide_needs_a_pattern():
    store = ReliabilityStore(":memory:")
    store.record_feedback(POI, False)
    assert not store.should_hide(POI)

    for _ in range(3):
        store.record_feedback(POI, False)
    # Score is already below the threshold but four votes are not enough
    assert store.score(POI).cumulative_score < config.HIDE_SCORE_THRESHOLD
    assert not store.should_hide(POI)

    store.record_feedback(POI, False)
    assert store.should_hide(POI)


def test_recent_spike_marks_uncertain_until_outweighed():
    store = ReliabilityStore(":memory:")
    for _ in range(3):
        store.record_feedback(POI, False)

    assert store.recent_negative_spike(POI)
    assert store.is_uncertain(POI)
    assert store.ranking_adjustment(POI) == config.UNCERTAIN_PENALTY_M

    for _ in range(6):
        store.record_feedback(POI, True)
    assert store.is_uncertain(POI)

    store.record_feedback(POI, True)
    assert not store.is_uncertain(POI)


def test_recent_window_ignores_old_feedback():
    clock = Clock()
    store = ReliabilityStore(":memory:", now=clock)
    for _ in range(3):
        store.record_feedback(POI, False)
    assert store.recent_negative_spike(POI)

    clock.advance(days=8)

    assert not store.recent_negative_spike(POI)
    assert not store.is_uncertain(POI)
    assert store.score(POI).total_negative == 3


def test_ranking_adjustment_is_bounded():
    store = ReliabilityStore(":memory:")
    assert store.ranking_adjustment(POI) == 0.0

    store.record_feedback(POI, True)
    assert store.ranking_adjustment(POI) == pytest.approx(3.75)

    for _ in range(200):
        store.record_feedback(POI, True)
    assert store.ranking_adjustment(POI) == config.RANKING_ADJUSTMENT_MAX_M

    other = poi_id_for(51.6, -0.2)
    clock = Clock()
    slow = ReliabilityStore(":memory:", now=clock)
    for _ in range(200):
        slow.record_feedback(other, False)
        clock.advance(days=8)
    assert slow.score(other).cumulative_score < -100
    assert slow.ranking_adjustment(other) == -config.RANKING_ADJUSTMENT_MAX_M


def test_feedback_log_is_capped(monkeypatch):
    monkeypatch.setattr(config, "FEEDBACK_LOG_MAX_RECORDS", 5)
    clock = Clock()
    store = ReliabilityStore(":memory:", now=clock)
    for _ in range(8):
        store.record_feedback(POI, True)
    assert len(store.feedback_log()) == 5

    clock.advance(days=91)
    store.record_feedback(POI, False)
    assert len(store.feedback_log()) == 1
    # Lifetime counts survive log pruning
    assert store.score(POI).total_feedback == 9


def test_state_survives_restart(tmp_path):
    db_path = str(tmp_path / "state.db")
    other = poi_id_for(51.51, -0.13)
    store = ReliabilityStore(db_path)
    store.record_feedback(POI, True, name="Public Toilet")
    store.record_feedback(POI, False)
    store.record_feedback(other, False, "not a place")
    store.record_feedback(other, False, "not a place")
    before = store.score(POI)
    store.close()

    reopened = ReliabilityStore(db_path)
    after = reopened.score(POI)

    assert after.cumulative_score == pytest.approx(before.cumulative_score)
    assert after.total_positive == 1
    assert after.total_negative == 1
    assert after.name == "Public Toilet"
    assert reopened.is_blacklisted(other)
    assert reopened.score(other).not_a_place_reports == 2
    assert len(reopened.feedback_log()) == 4
    reopened.close()


def test_unwritable_database_keeps_working_in_memory(tmp_path):
    store = ReliabilityStore(str(tmp_path / "missing" / "state.db"))

    assert store.conn is None
    assert store.record_feedback(POI, True).cumulative_score == pytest.approx(57.5)


def test_merge_remote_adopts_only_strictly_more_feedback():
    store = ReliabilityStore(":memory:")
    store.record_feedback(POI, True)
    store.record_feedback(POI, True)

    same = ReliabilityScore(POI, 51.5007, -0.1246, total_positive=1, total_negative=1, cumulative_score=10.0)
    assert not store.merge_remote(same)
    assert store.score(POI).cumulative_score == pytest.approx(decayed_score(57.5, True))

    more = ReliabilityScore(POI, 51.5007, -0.1246, total_positive=2, total_negative=1, cumulative_score=40.0)
    assert store.merge_remote(more)
    assert store.score(POI).cumulative_score == pytest.approx(40.0)
    assert store.score(POI).total_feedback == 3


def test_merge_remote_blacklist_applies_even_when_not_adopted():
    store = ReliabilityStore(":memory:")
    for _ in range(3):
        store.record_feedback(POI, True)

    remote = ReliabilityScore(POI, 51.5007, -0.1246, total_positive=1, is_blacklisted=True, not_a_place_reports=2)

    assert not store.merge_remote(remote)
    assert store.is_blacklisted(POI)
    assert store.should_hide(POI)
