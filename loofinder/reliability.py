"""Crowd-sourced reliability scores with decay, spike detection and a blacklist."""
from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import config
from .models import FeedbackRecord, ReliabilityScore, utc_now
from .storage import SqliteStore, from_iso, to_iso

logger = logging.getLogger(__name__)


def coordinates_from_poi_id(poi_id: str) -> Tuple[float, float]:
    lat_str, lon_str = poi_id.split(",", 1)
    return float(lat_str), float(lon_str)


def decayed_score(old_score: float, positive: bool) -> float:
    delta = config.SCORE_UPVOTE_DELTA if positive else config.SCORE_DOWNVOTE_DELTA
    return old_score * config.SCORE_RETENTION + delta


def is_not_a_place_reason(reason: Optional[str]) -> bool:
    if not reason:
        return False
    return reason.strip().casefold() in {r.casefold() for r in config.NOT_A_PLACE_REASONS}


class ReliabilityStore(SqliteStore):
    """Per-place feedback store.

    All reads and writes go through the public methods below; the in-memory maps
    are authoritative and SQLite is written after every mutation on a
    best-effort basis.
    """

    schema = (
        """
        CREATE TABLE IF NOT EXISTS reliability_scores (
            poi_id TEXT PRIMARY KEY,
            lat REAL,
            lon REAL,
            name TEXT,
            total_positive INTEGER,
            total_negative INTEGER,
            cumulative_score REAL,
            last_updated TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS reliability_blacklist (
            poi_id TEXT PRIMARY KEY,
            not_a_place_count INTEGER,
            is_blacklisted INTEGER
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS feedback_log (
            record_id TEXT PRIMARY KEY,
            poi_id TEXT,
            lat REAL,
            lon REAL,
            name TEXT,
            positive INTEGER,
            reason TEXT,
            created_at TEXT
        )
        """,
    )

    def __init__(self, db_path: str = ":memory:", now: Optional[Callable[[], datetime]] = None) -> None:
        self.now = now or utc_now
        self._scores: Dict[str, ReliabilityScore] = {}
        self._not_a_place: Dict[str, int] = {}
        self._blacklist: Set[str] = set()
        self._log: List[FeedbackRecord] = []
        super().__init__(db_path)
        self._load()

    # --- Public operations ---

    def record_feedback(
        self,
        poi_id: str,
        positive: bool,
        reason: Optional[str] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        name: Optional[str] = None,
    ) -> ReliabilityScore:
        if lat is None or lon is None:
            lat, lon = coordinates_from_poi_id(poi_id)
        now = self.now()
        record = FeedbackRecord(
            poi_id=poi_id,
            lat=float(lat),
            lon=float(lon),
            name=name or "",
            positive=bool(positive),
            reason=reason,
            timestamp=now,
            record_id=uuid.uuid4().hex,
        )
        with self.lock:
            self._log.append(record)
            self._prune_log(now)

            score = self._scores.get(poi_id)
            if score is None:
                score = ReliabilityScore(poi_id=poi_id, lat=float(lat), lon=float(lon), name=name or "")
                self._scores[poi_id] = score
            if positive:
                score.total_positive += 1
            else:
                score.total_negative += 1
            score.cumulative_score = decayed_score(score.cumulative_score, positive)
            if name:
                score.name = name
            score.last_updated = now
            self._refresh_recent(score, now)

            blacklist_changed = False
            if not positive and is_not_a_place_reason(reason):
                count = self._not_a_place.get(poi_id, 0) + 1
                self._not_a_place[poi_id] = count
                blacklist_changed = True
                if count >= config.NOT_A_PLACE_BLACKLIST_THRESHOLD and poi_id not in self._blacklist:
                    self._blacklist.add(poi_id)
                    logger.info("Blacklisted %s after %s 'not a place' reports", poi_id, count)

            self._persist_feedback(record, score)
            if blacklist_changed:
                self._persist_blacklist(poi_id)
            return self._snapshot(score)

    def score(self, poi_id: str) -> Optional[ReliabilityScore]:
        with self.lock:
            score = self._scores.get(poi_id)
            if score is None:
                return None
            return self._snapshot(score)

    def is_blacklisted(self, poi_id: str) -> bool:
        with self.lock:
            return poi_id in self._blacklist

    def recent_negative_spike(self, poi_id: str) -> bool:
        with self.lock:
            score = self._scores.get(poi_id)
            if score is None:
                return False
            self._refresh_recent(score, self.now())
            return score.recent_negative >= config.DOWNVOTE_SPIKE_THRESHOLD

    def is_uncertain(self, poi_id: str) -> bool:
        with self.lock:
            score = self._scores.get(poi_id)
            if score is None:
                return False
            self._refresh_recent(score, self.now())
            return score.is_uncertain

    def should_hide(self, poi_id: str) -> bool:
        with self.lock:
            if poi_id in self._blacklist:
                return True
            score = self._scores.get(poi_id)
            if score is None:
                return False
            return (
                score.cumulative_score < config.HIDE_SCORE_THRESHOLD
                and score.total_feedback >= config.HIDE_MIN_FEEDBACK
            )

    def ranking_adjustment(self, poi_id: str) -> float:
        """Distance-equivalent nudge in metres; positive values move a place up."""
        with self.lock:
            score = self._scores.get(poi_id)
            if score is None:
                return 0.0
            self._refresh_recent(score, self.now())
            if score.is_uncertain:
                return config.UNCERTAIN_PENALTY_M
            adjustment = (score.clamped_score - 50.0) / 2.0
            limit = config.RANKING_ADJUSTMENT_MAX_M
            return max(-limit, min(limit, adjustment))

    def merge_remote(self, remote: ReliabilityScore) -> bool:
        """Merge a crowd record. Returns True when the remote counts were adopted."""
        with self.lock:
            poi_id = remote.poi_id
            if remote.is_blacklisted:
                self._mark_blacklisted_locked(poi_id, remote.not_a_place_reports)

            local = self._scores.get(poi_id)
            if local is not None and remote.total_feedback <= local.total_feedback:
                return False
            adopted = ReliabilityScore(
                poi_id=poi_id,
                lat=remote.lat,
                lon=remote.lon,
                name=remote.name or (local.name if local else ""),
                total_positive=remote.total_positive,
                total_negative=remote.total_negative,
                cumulative_score=remote.cumulative_score,
                last_updated=self.now(),
            )
            self._refresh_recent(adopted, self.now())
            self._scores[poi_id] = adopted
            self._persist_score(adopted)
            return True

    def mark_blacklisted(self, poi_id: str, not_a_place_count: Optional[int] = None) -> None:
        with self.lock:
            self._mark_blacklisted_locked(poi_id, not_a_place_count)

    def feedback_log(self) -> List[FeedbackRecord]:
        with self.lock:
            return list(self._log)

    # --- Internals ---

    def _mark_blacklisted_locked(self, poi_id: str, not_a_place_count: Optional[int]) -> None:
        if not_a_place_count is not None:
            self._not_a_place[poi_id] = max(self._not_a_place.get(poi_id, 0), int(not_a_place_count))
        self._blacklist.add(poi_id)
        self._persist_blacklist(poi_id)

    def _snapshot(self, score: ReliabilityScore) -> ReliabilityScore:
        return replace(
            score,
            not_a_place_reports=self._not_a_place.get(score.poi_id, 0),
            is_blacklisted=score.poi_id in self._blacklist,
        )

    def _refresh_recent(self, score: ReliabilityScore, now: datetime) -> None:
        cutoff = now - timedelta(days=config.RECENT_WINDOW_DAYS)
        recent_positive = 0
        recent_negative = 0
        for record in self._log:
            if record.poi_id != score.poi_id or record.timestamp <= cutoff:
                continue
            if record.positive:
                recent_positive += 1
            else:
                recent_negative += 1
        score.recent_positive = recent_positive
        score.recent_negative = recent_negative
        uncertain = recent_negative >= config.DOWNVOTE_SPIKE_THRESHOLD
        if recent_positive > recent_negative * config.UNCERTAIN_CLEAR_RATIO:
            uncertain = False
        score.is_uncertain = uncertain

    def _prune_log(self, now: datetime) -> List[FeedbackRecord]:
        cutoff = now - timedelta(days=config.FEEDBACK_LOG_MAX_AGE_DAYS)
        kept = [r for r in self._log if r.timestamp > cutoff]
        if len(kept) > config.FEEDBACK_LOG_MAX_RECORDS:
            kept = kept[-config.FEEDBACK_LOG_MAX_RECORDS:]
        kept_ids = {id(r) for r in kept}
        dropped = [r for r in self._log if id(r) not in kept_ids]
        self._log = kept
        return dropped

    def _load(self) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM reliability_scores")
            for row in cur.fetchall():
                self._scores[row["poi_id"]] = ReliabilityScore(
                    poi_id=row["poi_id"],
                    lat=row["lat"],
                    lon=row["lon"],
                    name=row["name"] or "",
                    total_positive=int(row["total_positive"] or 0),
                    total_negative=int(row["total_negative"] or 0),
                    cumulative_score=float(row["cumulative_score"]),
                    last_updated=from_iso(row["last_updated"]) or self.now(),
                )
            cur.execute("SELECT * FROM reliability_blacklist")
            for row in cur.fetchall():
                self._not_a_place[row["poi_id"]] = int(row["not_a_place_count"] or 0)
                if row["is_blacklisted"]:
                    self._blacklist.add(row["poi_id"])
            cur.execute("SELECT * FROM feedback_log ORDER BY created_at, rowid")
            for row in cur.fetchall():
                timestamp = from_iso(row["created_at"])
                if timestamp is None:
                    continue
                self._log.append(
                    FeedbackRecord(
                        poi_id=row["poi_id"],
                        lat=row["lat"],
                        lon=row["lon"],
                        name=row["name"] or "",
                        positive=bool(row["positive"]),
                        reason=row["reason"],
                        timestamp=timestamp,
                        record_id=row["record_id"],
                    )
                )
        except sqlite3.Error:
            logger.warning("Failed to load reliability data from %s", self.db_path, exc_info=True)
            return

        now = self.now()
        dropped = self._prune_log(now)
        for score in self._scores.values():
            self._refresh_recent(score, now)
        if dropped:
            self._delete_log_records(dropped)

    def _persist_feedback(self, record: FeedbackRecord, score: ReliabilityScore) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO feedback_log (record_id, poi_id, lat, lon, name, positive, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    record.poi_id,
                    record.lat,
                    record.lon,
                    record.name,
                    int(record.positive),
                    record.reason,
                    to_iso(record.timestamp),
                ),
            )
            self._write_score(cur, score)
            self._trim_persisted_log(cur)
            self.conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to persist feedback for %s", record.poi_id, exc_info=True)

    def _persist_score(self, score: ReliabilityScore) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            self._write_score(cur, score)
            self.conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to persist score for %s", score.poi_id, exc_info=True)

    def _persist_blacklist(self, poi_id: str) -> None:
        if self.conn is None:
            return
        try:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO reliability_blacklist (poi_id, not_a_place_count, is_blacklisted)
                VALUES (?, ?, ?)
                ON CONFLICT(poi_id) DO UPDATE SET
                    not_a_place_count = excluded.not_a_place_count,
                    is_blacklisted = excluded.is_blacklisted
                """,
                (poi_id, self._not_a_place.get(poi_id, 0), int(poi_id in self._blacklist)),
            )
            self.conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to persist blacklist entry for %s", poi_id, exc_info=True)

    def _write_score(self, cur: sqlite3.Cursor, score: ReliabilityScore) -> None:
        cur.execute(
            """
            INSERT INTO reliability_scores (
                poi_id, lat, lon, name, total_positive, total_negative, cumulative_score, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(poi_id) DO UPDATE SET
                lat = excluded.lat,
                lon = excluded.lon,
                name = excluded.name,
                total_positive = excluded.total_positive,
                total_negative = excluded.total_negative,
                cumulative_score = excluded.cumulative_score,
                last_updated = excluded.last_updated
            """,
            (
                score.poi_id,
                score.lat,
                score.lon,
                score.name,
                score.total_positive,
                score.total_negative,
                score.cumulative_score,
                to_iso(score.last_updated),
            ),
        )

    def _trim_persisted_log(self, cur: sqlite3.Cursor) -> None:
        cutoff = self.now() - timedelta(days=config.FEEDBACK_LOG_MAX_AGE_DAYS)
        cur.execute("DELETE FROM feedback_log WHERE created_at <= ?", (to_iso(cutoff),))
        cur.execute(
            """
            DELETE FROM feedback_log WHERE rowid NOT IN (
                SELECT rowid FROM feedback_log ORDER BY created_at DESC, rowid DESC LIMIT ?
            )
            """,
            (config.FEEDBACK_LOG_MAX_RECORDS,),
        )

    def _delete_log_records(self, records: List[FeedbackRecord]) -> None:
        try:
            cur = self.conn.cursor()
            cur.executemany(
                "DELETE FROM feedback_log WHERE record_id = ?",
                [(r.record_id,) for r in records if r.record_id],
            )
            self.conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to purge old feedback from %s", self.db_path, exc_info=True)
