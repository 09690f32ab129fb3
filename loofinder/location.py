"""Location fix acquisition."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from . import config
from .models import Coordinate

logger = logging.getLogger(__name__)


class LocationUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class Fix:
    lat: float
    lon: float
    accuracy_m: float
    age_s: float = 0.0

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


class LocationProvider(Protocol):
    def current_fix(self) -> Optional[Fix]:
        ...

    def request_fix(self, timeout: float) -> Optional[Fix]:
        ...


class StaticLocationProvider:
    """Always reports the same fix. Used by the CLI and tests."""

    def __init__(self, fix: Optional[Fix]) -> None:
        self.fix = fix
        self.requests = 0

    def current_fix(self) -> Optional[Fix]:
        return self.fix

    def request_fix(self, timeout: float) -> Optional[Fix]:
        self.requests += 1
        return self.fix


def is_good_fix(fix: Fix) -> bool:
    accurate = 0 < fix.accuracy_m <= config.LOCATION_GOOD_ACCURACY_M
    return accurate and fix.age_s <= config.LOCATION_MAX_AGE_SECONDS


def is_acceptable_fix(fix: Fix) -> bool:
    return is_good_fix(fix) or 0 < fix.accuracy_m <= config.LOCATION_COARSE_ACCURACY_M


def acquire_fix(
    provider: LocationProvider,
    sleep: Callable[[float], None] = time.sleep,
    poll_interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> Fix:
    """Get a usable fix or raise LocationUnavailable.

    Polls for a first fix, asks the provider for a fresh one unless the
    current fix is already good, and makes one more request when the result
    is still coarse. The best fix seen is used even if it is not good.
    """
    interval = config.LOCATION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
    attempts = config.LOCATION_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts

    current = _safe_current(provider)
    if current is None:
        logger.info("No location yet, waiting for a first fix")
        for attempt in range(attempts):
            sleep(interval)
            current = _safe_current(provider)
            if current is not None:
                logger.info("Got location after %s polls", attempt + 1)
                break
        else:
            logger.info("Gave up polling for location after %s attempts", attempts)

    if current is not None and is_good_fix(current):
        fix: Optional[Fix] = current
    else:
        fix = _safe_request(provider, _request_timeout(current)) or current

    if fix is None:
        raise LocationUnavailable("Could not get location")

    if not is_acceptable_fix(fix):
        logger.info("Location accuracy poor (%.0fm), retrying once", fix.accuracy_m)
        retry = _safe_request(provider, _request_timeout(fix))
        if retry is not None and (is_good_fix(retry) or _accuracy(retry) <= _accuracy(fix)):
            fix = retry
    return fix


def _accuracy(fix: Fix) -> float:
    return fix.accuracy_m if fix.accuracy_m > 0 else float("inf")


def _request_timeout(current: Optional[Fix]) -> float:
    if current is not None and current.age_s < config.LOCATION_WARM_AGE_SECONDS:
        return config.LOCATION_WARM_TIMEOUT_SECONDS
    return config.LOCATION_COLD_TIMEOUT_SECONDS


def _safe_current(provider: LocationProvider) -> Optional[Fix]:
    try:
        return provider.current_fix()
    except Exception:
        logger.warning("Location provider failed to report a fix", exc_info=True)
        return None


def _safe_request(provider: LocationProvider, timeout: float) -> Optional[Fix]:
    try:
        return provider.request_fix(timeout)
    except Exception:
        logger.warning("Location request failed", exc_info=True)
        return None
