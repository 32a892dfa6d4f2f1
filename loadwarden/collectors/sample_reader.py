"""Reader for the JSON-lines feed written by the external sampler."""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from loadwarden.config import SampleSource

logger = logging.getLogger(__name__)

SCREEN_KIND = "screen"


@dataclass(frozen=True, slots=True)
class Sample:
    """Cost of one request, broken down per plugin."""

    kind: str
    trigger: str
    timestamp: datetime
    total_ms: float
    total_queries: int
    plugins: Mapping[str, Tuple[float, int]]


class SampleReader:
    """Parse and optionally tail a sample feed.

    Each line is a JSON object such as::

        {"kind": "ajax", "trigger": "heartbeat", "timestamp": 1718000000,
         "total_ms": 41.5, "total_queries": 12,
         "plugins": {"akismet/akismet.php": {"ms": 3.2, "queries": 1}}}

    ``type`` is accepted for ``kind``; ``action``, ``namespace`` and
    ``screen_id`` are accepted for ``trigger``.  Per-plugin values may also be
    ``[ms, queries]`` pairs or a bare number of milliseconds.  Lines that do not
    parse are skipped.
    """

    def __init__(self, source: SampleSource) -> None:
        self._source = source

    # ------------------------------------------------------------------
    def stream(self, stop_event: Optional[threading.Event] = None) -> Iterator[Sample]:
        """Yield samples as they are appended to the feed."""

        path = self._require_path()
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            if self._source.follow:
                handle.seek(0, os.SEEK_END)
            while True:
                if stop_event and stop_event.is_set():
                    break
                position = handle.tell()
                line = handle.readline()
                if not line:
                    if not self._source.follow or (stop_event and stop_event.is_set()):
                        break
                    time.sleep(0.5)
                    handle.seek(position)
                    continue
                sample = self.parse_line(line)
                if sample:
                    yield sample

    def snapshot(self, limit: Optional[int] = None) -> List[Sample]:
        """Return the samples currently in the feed (the last ``limit`` lines)."""

        path = self._require_path()
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            lines = handle.readlines()
        if limit is not None:
            lines = lines[-limit:]
        samples: List[Sample] = []
        for line in lines:
            sample = self.parse_line(line)
            if sample:
                samples.append(sample)
        return samples

    # ------------------------------------------------------------------
    def _require_path(self) -> Path:
        if self._source.path is None:
            raise FileNotFoundError("no sample feed configured")
        path = Path(self._source.path)
        if not path.exists():
            raise FileNotFoundError(f"sample feed not found: {path}")
        return path

    def parse_line(self, line: str) -> Optional[Sample]:
        line = line.strip()
        if not line:
            return None
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping malformed sample line: %.80s", line)
            return None
        if not isinstance(record, dict):
            return None
        return self.normalise_record(record)

    def normalise_record(self, record: Mapping[str, Any]) -> Optional[Sample]:
        kind = _first_string(record, ("kind", "type", "request_type"))
        trigger = _first_string(record, ("trigger", "action", "namespace", "screen_id", "screen"))
        if not kind or not trigger:
            return None
        plugins = self._extract_plugins(record.get("plugins"))
        if not plugins:
            return None
        total_ms = _as_float(record.get("total_ms"))
        if total_ms is None:
            total_ms = sum(ms for ms, _ in plugins.values())
        total_queries = _as_int(record.get("total_queries"))
        if total_queries is None:
            total_queries = sum(queries for _, queries in plugins.values())
        return Sample(
            kind=kind.lower(),
            trigger=trigger,
            timestamp=_extract_timestamp(record.get("timestamp")),
            total_ms=total_ms,
            total_queries=total_queries,
            plugins=plugins,
        )

    @staticmethod
    def _extract_plugins(value: Any) -> Dict[str, Tuple[float, int]]:
        plugins: Dict[str, Tuple[float, int]] = {}
        if not isinstance(value, Mapping):
            return plugins
        for plugin, cost in value.items():
            if isinstance(cost, Mapping):
                ms = _as_float(cost.get("ms", cost.get("time_ms")))
                queries = _as_int(cost.get("queries")) or 0
            elif isinstance(cost, (list, tuple)) and cost:
                ms = _as_float(cost[0])
                queries = _as_int(cost[1]) if len(cost) > 1 else 0
            else:
                ms = _as_float(cost)
                queries = 0
            if ms is None or ms < 0:
                continue
            plugins[str(plugin)] = (ms, max(0, queries or 0))
        return plugins


def _first_string(record: Mapping[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _extract_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        trimmed = value.strip()
        if trimmed.replace(".", "", 1).isdigit():
            return datetime.fromtimestamp(float(trimmed), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return datetime.now(timezone.utc)


__all__ = ["SCREEN_KIND", "Sample", "SampleReader"]
