"""Output helpers for the CLI."""
from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, TextIO

from .classify import display_name, is_free_access
from .http import SearchMetrics
from .models import SearchResult


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def build_result_payload(result: SearchResult, metrics: Optional[SearchMetrics] = None) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["display_name"] = display_name(result.destination)
    payload["free_access"] = is_free_access(result.destination)
    if metrics is not None:
        payload["metrics"] = metrics.as_dict()
    return payload


def render_result(result: SearchResult) -> List[str]:
    poi = result.destination
    lines = [
        f"{display_name(poi)}",
        f"  {result.distance_m:.0f}m away ({result.source}"
        + (f", tier {result.tier})" if result.tier else ")"),
    ]
    if poi.address:
        lines.append(f"  {poi.address}")
    lines.append(f"  {poi.lat:.6f},{poi.lon:.6f}")
    return lines
