"""Per kind -> trigger -> plugin aggregation of performance samples."""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from loadwarden.collectors.sample_reader import Sample
from loadwarden.config import AggregationConfig
from loadwarden.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PluginStats:
    """Running statistics for one plugin under one trigger."""

    plugin: str
    samples: int
    avg_ms: float
    avg_queries: float
    stddev_ms: float

    @property
    def cv(self) -> float:
        """Coefficient of variation of the per-sample cost."""

        if self.avg_ms <= 0:
            return 0.0
        return self.stddev_ms / self.avg_ms

    def to_dict(self) -> Dict[str, object]:
        return {
            "plugin": self.plugin,
            "samples": self.samples,
            "avg_ms": round(self.avg_ms, 2),
            "avg_queries": round(self.avg_queries, 2),
            "stddev_ms": round(self.stddev_ms, 2),
        }


@dataclass(frozen=True, slots=True)
class TriggerStats:
    """Aggregated cost of one trigger (AJAX action, REST namespace, screen...).

    ``avg_ms`` sums the plugin averages; ``avg_request_ms`` is the measured
    request total reported by the host.
    """

    trigger: str
    first_sample: datetime
    last_sample: datetime
    plugins: Tuple[PluginStats, ...]
    requests: int = 0
    avg_request_ms: float = 0.0
    avg_request_queries: float = 0.0

    @property
    def samples(self) -> int:
        return max((stats.samples for stats in self.plugins), default=0)

    @property
    def avg_ms(self) -> float:
        return sum(stats.avg_ms for stats in self.plugins)

    @property
    def avg_queries(self) -> float:
        return sum(stats.avg_queries for stats in self.plugins)

    def plugin(self, plugin_id: str) -> Optional[PluginStats]:
        for stats in self.plugins:
            if stats.plugin == plugin_id:
                return stats
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "trigger": self.trigger,
            "samples": self.samples,
            "first_sample": self.first_sample.isoformat(),
            "last_sample": self.last_sample.isoformat(),
            "avg_ms": round(self.avg_ms, 2),
            "avg_queries": round(self.avg_queries, 2),
            "requests": self.requests,
            "avg_request_ms": round(self.avg_request_ms, 2),
            "avg_request_queries": round(self.avg_request_queries, 2),
            "plugins": [stats.to_dict() for stats in self.plugins],
        }


@dataclass(frozen=True, slots=True)
class PerformanceReport:
    """Serializable snapshot of every kind's triggers."""

    generated_at: datetime
    kinds: Mapping[str, Mapping[str, TriggerStats]]

    def triggers(self, kind: str) -> List[TriggerStats]:
        return list(self.kinds.get(kind, {}).values())

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {
            kind: {trigger: stats.to_dict() for trigger, stats in triggers.items()}
            for kind, triggers in self.kinds.items()
        }


class SampleAggregator:
    """Fold samples into bounded running statistics.

    Each ``(kind, trigger, plugin)`` keeps a Welford mean/variance.  Once the
    sample count passes ``max_samples_per_trigger`` the count is scaled back to
    the cap so newer samples keep their weight.  Each kind keeps at most
    ``max_triggers_per_kind`` triggers; the least recently sampled one is
    evicted first.
    """

    def __init__(self, config: Optional[AggregationConfig] = None) -> None:
        config = config or AggregationConfig()
        if config.max_samples_per_trigger <= 0 or config.max_triggers_per_kind <= 0:
            raise ValidationError("aggregation caps must be positive")
        self._max_samples = config.max_samples_per_trigger
        self._max_triggers = config.max_triggers_per_kind
        self._state: Dict[str, Dict[str, _MutableTrigger]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def record(self, sample: Sample) -> None:
        self.record_many([sample])

    def record_many(self, samples: Iterable[Sample]) -> int:
        count = 0
        with self._lock:
            for sample in samples:
                triggers = self._state.setdefault(sample.kind, {})
                bucket = triggers.get(sample.trigger)
                if bucket is None:
                    bucket = _MutableTrigger(sample.trigger, sample.timestamp, sample.timestamp)
                    triggers[sample.trigger] = bucket
                bucket.first_sample = min(bucket.first_sample, sample.timestamp)
                bucket.last_sample = max(bucket.last_sample, sample.timestamp)
                bucket.add_request(sample.total_ms, sample.total_queries, self._max_samples)
                for plugin, (ms, queries) in sample.plugins.items():
                    stats = bucket.plugins.setdefault(plugin, _MutablePluginStats())
                    stats.add(ms, queries, self._max_samples)
                if len(triggers) > self._max_triggers:
                    self._evict_locked(sample.kind, triggers)
                count += 1
        return count

    def clear(self, target: str = "all") -> None:
        with self._lock:
            if target == "all":
                self._state.clear()
            else:
                self._state.pop(target, None)
        logger.info("cleared performance samples (%s)", target)

    def report(self) -> PerformanceReport:
        with self._lock:
            kinds = {
                kind: {trigger: bucket.freeze() for trigger, bucket in triggers.items()}
                for kind, triggers in self._state.items()
            }
        return PerformanceReport(generated_at=datetime.now(timezone.utc), kinds=kinds)

    # ------------------------------------------------------------------
    def _evict_locked(self, kind: str, triggers: Dict[str, "_MutableTrigger"]) -> None:
        while len(triggers) > self._max_triggers:
            oldest = min(triggers.values(), key=lambda item: (item.last_sample, item.trigger))
            del triggers[oldest.trigger]
            logger.debug("evicted trigger %s/%s", kind, oldest.trigger)


@dataclass(slots=True)
class _MutablePluginStats:
    count: float = 0.0
    mean_ms: float = 0.0
    m2_ms: float = 0.0
    mean_queries: float = 0.0

    def add(self, ms: float, queries: int, cap: int) -> None:
        self.count += 1
        delta = ms - self.mean_ms
        self.mean_ms += delta / self.count
        self.m2_ms += delta * (ms - self.mean_ms)
        self.mean_queries += (queries - self.mean_queries) / self.count
        if self.count > cap:
            self.m2_ms *= cap / self.count
            self.count = float(cap)

    def freeze(self, plugin: str) -> PluginStats:
        variance = self.m2_ms / self.count if self.count > 1 else 0.0
        return PluginStats(
            plugin=plugin,
            samples=int(self.count),
            avg_ms=self.mean_ms,
            avg_queries=self.mean_queries,
            stddev_ms=math.sqrt(max(0.0, variance)),
        )


@dataclass(slots=True)
class _MutableTrigger:
    trigger: str
    first_sample: datetime
    last_sample: datetime
    plugins: Dict[str, _MutablePluginStats] = field(default_factory=dict)
    requests: float = 0.0
    mean_ms: float = 0.0
    mean_queries: float = 0.0

    def add_request(self, ms: float, queries: int, cap: int) -> None:
        self.requests += 1
        self.mean_ms += (ms - self.mean_ms) / self.requests
        self.mean_queries += (queries - self.mean_queries) / self.requests
        if self.requests > cap:
            self.requests = float(cap)

    def freeze(self) -> TriggerStats:
        plugins = [stats.freeze(plugin) for plugin, stats in self.plugins.items()]
        plugins.sort(key=lambda item: (-item.avg_ms, item.plugin))
        return TriggerStats(
            trigger=self.trigger,
            first_sample=self.first_sample,
            last_sample=self.last_sample,
            plugins=tuple(plugins),
            requests=int(self.requests),
            avg_request_ms=self.mean_ms,
            avg_request_queries=self.mean_queries,
        )


__all__ = [
    "PerformanceReport",
    "PluginStats",
    "SampleAggregator",
    "TriggerStats",
]
