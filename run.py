"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv as _load_dotenv

from loofinder import config
from loofinder.cache import ResultCache
from loofinder.classify import display_name
from loofinder.fanout import QueryFanout
from loofinder.http import SearchMetrics
from loofinder.location import Fix, LocationUnavailable
from loofinder.models import Coordinate, poi_id_for
from loofinder.orchestrator import NoResultsFound, SearchOrchestrator
from loofinder.places_client import GooglePlacesProvider
from loofinder.reliability import ReliabilityStore, is_not_a_place_reason
from loofinder.reporting import build_result_payload, render_result, write_json_object
from loofinder.storage import to_iso
from loofinder.sync import FlagCache, RemoteSyncClient


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _env_len(name: str) -> int:
    return len((os.environ.get(name) or "").strip())


def _path_state(path: Path) -> str:
    exists = path.exists()
    writable = os.access(path if exists else path.parent, os.W_OK)
    return f"{path} (exists={exists}, writable={writable})"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find the nearest usable public toilet")
    parser.add_argument("--db", type=str, default=config.DB_PATH, help="SQLite file for local state")
    parser.add_argument("--config", type=str, default=None, help="Path to search_config.json")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    find = sub.add_parser("find", help="Search from a coordinate")
    find.add_argument("--lat", type=float, required=True)
    find.add_argument("--lon", type=float, required=True)
    find.add_argument("--accuracy", type=float, default=10.0, help="Fix accuracy in metres")
    find.add_argument("--out", type=str, default=None, help="Also write the result JSON here")

    feedback = sub.add_parser("feedback", help="Rate a place")
    feedback.add_argument("--lat", type=float, required=True)
    feedback.add_argument("--lon", type=float, required=True)
    feedback.add_argument("--name", type=str, default=None)
    vote = feedback.add_mutually_exclusive_group(required=True)
    vote.add_argument("--up", action="store_true")
    vote.add_argument("--down", action="store_true")
    feedback.add_argument("--reason", type=str, default=None, help='e.g. "not a toilet"')

    cached = sub.add_parser("cached", help="List cached places near a coordinate")
    cached.add_argument("--lat", type=float, required=True)
    cached.add_argument("--lon", type=float, required=True)
    cached.add_argument("--radius", type=float, default=500.0, help="Radius in metres")

    sub.add_parser("flags", help="Refresh and print remote feature flags")
    sub.add_parser("preflight", help="Offline configuration checks")
    return parser.parse_args(argv)


def run_preflight(api_key: Optional[str], db_path: str) -> int:
    ok = True
    if api_key:
        print("API key: OK")
    else:
        print("API key: MISSING")
        ok = False

    try:
        config.validate_tiers(config.SEARCH_TIERS)
        print(f"Tiers: OK ({len(config.SEARCH_TIERS)})")
    except ValueError as exc:
        print(f"Tiers: FAIL ({exc})")
        ok = False

    settings = config.sync_settings_from_env()
    print("Sync (redacted):")
    print(f"- LOOFINDER_SYNC_URL set: {settings.enabled}")
    print(f"- LOOFINDER_SYNC_KEY length: {_env_len('LOOFINDER_SYNC_KEY')}")
    print(f"- GOOGLE_MAPS_API_KEY length: {_env_len('GOOGLE_MAPS_API_KEY')}")
    print(f"- Database: {_path_state(Path(db_path).resolve())}")
    print(f"Max distance: {config.MAX_ACCEPTABLE_DISTANCE_M:.0f}m")

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def run_find(args: argparse.Namespace, api_key: str) -> int:
    metrics = SearchMetrics()
    reliability = ReliabilityStore(args.db)
    cache = ResultCache(args.db)
    sync = RemoteSyncClient(config.sync_settings_from_env(), flag_cache=FlagCache(args.db), metrics=metrics)
    provider = GooglePlacesProvider.from_api_key(api_key)
    orchestrator = SearchOrchestrator(
        QueryFanout(provider, metrics=metrics),
        reliability,
        cache,
        sync=sync,
        metrics=metrics,
    )
    try:
        sync.pull_blacklist(reliability)
        fix = Fix(lat=args.lat, lon=args.lon, accuracy_m=args.accuracy)
        try:
            result = orchestrator.find_nearest(fix, flags=sync.refresh_flags())
        except (LocationUnavailable, NoResultsFound) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        if result is None:
            return 1

        for line in render_result(result):
            print(line)
        payload = build_result_payload(result, metrics)
        if args.out:
            write_json_object(args.out, payload)
            print(f"Result written to {args.out}")
        else:
            print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0
    finally:
        orchestrator.close()
        sync.close()
        cache.close()
        reliability.close()


def run_feedback(args: argparse.Namespace) -> int:
    reliability = ReliabilityStore(args.db)
    sync = RemoteSyncClient(config.sync_settings_from_env(), flag_cache=FlagCache(args.db))
    try:
        poi_id = poi_id_for(args.lat, args.lon)
        score = reliability.record_feedback(
            poi_id, positive=args.up, reason=args.reason, lat=args.lat, lon=args.lon, name=args.name
        )
        not_a_place = not args.up and is_not_a_place_reason(args.reason)
        sync.record_rating(score, positive=args.up, not_a_place=not_a_place)
        print(
            f"{poi_id}: score={score.cumulative_score:.1f} trust={score.normalized:.2f} status={score.status} "
            f"feedback={score.total_feedback} hidden={reliability.should_hide(poi_id)}"
        )
        return 0
    finally:
        sync.close()
        reliability.close()


def run_cached(args: argparse.Namespace) -> int:
    cache = ResultCache(args.db)
    try:
        anchor = Coordinate(args.lat, args.lon)
        entries = cache.within(anchor, args.radius)
        if not entries:
            print(f"No cached places within {args.radius:.0f}m")
            return 0
        for entry in entries:
            print(
                f"{entry.poi.distance_to(anchor):6.0f}m  {display_name(entry.poi)}  "
                f"(captured {to_iso(entry.captured_at)})"
            )
        return 0
    finally:
        cache.close()


def run_flags(args: argparse.Namespace) -> int:
    settings = config.sync_settings_from_env()
    if not settings.enabled:
        print("Missing LOOFINDER_SYNC_URL in environment; showing cached flags", file=sys.stderr)
    sync = RemoteSyncClient(settings, flag_cache=FlagCache(args.db))
    try:
        flags = sync.refresh_flags()
        print(json.dumps(dict(flags.values), indent=2, sort_keys=True))
        return 0
    finally:
        sync.close()


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    config.load_search_config(args.config)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    api_key = (os.environ.get("GOOGLE_MAPS_API_KEY") or "").strip() or None

    if args.command == "preflight":
        return run_preflight(api_key, args.db)
    if args.command == "feedback":
        return run_feedback(args)
    if args.command == "cached":
        return run_cached(args)
    if args.command == "flags":
        return run_flags(args)

    if not api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        return 1
    try:
        return run_find(args, api_key)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
