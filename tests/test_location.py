import pytest

from loofinder import config
from loofinder.location import (
    Fix,
    LocationUnavailable,
    StaticLocationProvider,
    acquire_fix,
    is_acceptable_fix,
    is_good_fix,
)


class FakeLocationProvider:
    def __init__(self, current=(), requested=()):
        self.current = list(current)
        self.requested = list(requested)
        self.timeouts = []

    def current_fix(self):
        if len(self.current) > 1:
            return self.current.pop(0)
        return self.current[0] if self.current else None

    def request_fix(self, timeout):
        self.timeouts.append(timeout)
        if self.requested:
            return self.requested.pop(0)
        return None


class Sleeper:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


GOOD = Fix(51.5007, -0.1246, accuracy_m=10, age_s=1)


def test_fix_quality_thresholds():
    assert is_good_fix(GOOD)
    assert not is_good_fix(Fix(51.5, -0.12, accuracy_m=10, age_s=60))
    assert not is_good_fix(Fix(51.5, -0.12, accuracy_m=-1))
    assert is_acceptable_fix(Fix(51.5, -0.12, accuracy_m=120))
    assert not is_acceptable_fix(Fix(51.5, -0.12, accuracy_m=400))


def test_good_current_fix_needs_no_request():
    provider = StaticLocationProvider(GOOD)

    assert acquire_fix(provider, sleep=Sleeper()) == GOOD
    assert provider.requests == 0


def test_polls_until_first_fix():
    sleeper = Sleeper()
    provider = FakeLocationProvider(current=[None, None, None, GOOD])

    fix = acquire_fix(provider, sleep=sleeper)

    assert fix == GOOD
    assert sleeper.calls == [config.LOCATION_POLL_INTERVAL_SECONDS] * 3
    assert provider.timeouts == []


def test_no_fix_at_all_raises():
    sleeper = Sleeper()
    provider = FakeLocationProvider()

    with pytest.raises(LocationUnavailable):
        acquire_fix(provider, sleep=sleeper)

    assert len(sleeper.calls) == config.LOCATION_POLL_MAX_ATTEMPTS
    assert provider.timeouts[0] == config.LOCATION_COLD_TIMEOUT_SECONDS


def test_coarse_fix_requests_once_with_warm_timeout():
    coarse = Fix(51.5007, -0.1246, accuracy_m=100, age_s=2)
    provider = FakeLocationProvider(current=[coarse], requested=[coarse])

    fix = acquire_fix(provider, sleep=Sleeper())

    assert fix == coarse
    assert provider.timeouts == [config.LOCATION_WARM_TIMEOUT_SECONDS]


def test_poor_fix_retries_once_for_better():
    poor = Fix(51.5007, -0.1246, accuracy_m=300, age_s=40)
    better = Fix(51.5008, -0.1246, accuracy_m=40, age_s=0)
    provider = FakeLocationProvider(current=[poor], requested=[poor, better])

    fix = acquire_fix(provider, sleep=Sleeper())

    assert fix == better
    assert provider.timeouts == [config.LOCATION_COLD_TIMEOUT_SECONDS, config.LOCATION_COLD_TIMEOUT_SECONDS]


def test_poor_fix_is_used_when_retry_is_worse():
    poor = Fix(51.5007, -0.1246, accuracy_m=300, age_s=0)
    worse = Fix(51.5007, -0.1246, accuracy_m=900, age_s=0)
    provider = FakeLocationProvider(current=[poor], requested=[poor, worse])

    assert acquire_fix(provider, sleep=Sleeper()) == poor


def test_provider_errors_are_treated_as_no_fix():
    class Broken:
        def current_fix(self):
            raise RuntimeError("gps off")

        def request_fix(self, timeout):
            raise RuntimeError("gps off")

    with pytest.raises(LocationUnavailable):
        acquire_fix(Broken(), sleep=Sleeper(), max_attempts=2)
