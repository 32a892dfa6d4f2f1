"""Configuration schema for LoadWarden.

The dataclasses below describe how the editing client, the suggestion engine
and the sample pipeline are configured.  Every section has defaults so a
minimal YAML file only needs the ``store`` block.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

from loadwarden.rules.model import Plugin, ScreenDefinition


@dataclass(slots=True)
class StoreConfig:
    """Where the rule store action endpoint lives."""

    base_url: str = "http://localhost"
    endpoint: str = "/wp-admin/admin-ajax.php"
    nonce: str = ""
    request_timeout: float = 5.0


@dataclass(slots=True)
class SyncConfig:
    """Timing of optimistic writes."""

    debounce: timedelta = timedelta(seconds=1)


@dataclass(slots=True)
class SuggestionConfig:
    """Thresholds applied by the suggestion engine."""

    min_samples: int = 3
    confidence_threshold: float = 0.5
    max_per_target: int = 10
    prior_strength: float = 5.0


@dataclass(slots=True)
class AggregationConfig:
    """Caps on the stored performance samples."""

    max_samples_per_trigger: int = 100
    max_triggers_per_kind: int = 50


@dataclass(slots=True)
class SampleSource:
    """JSON-lines file written by the external sampler."""

    path: Optional[Path] = None
    follow: bool = False


@dataclass(slots=True)
class SchedulerConfig:
    """Timing knobs for the cooperative scheduler."""

    tick_interval: timedelta = timedelta(milliseconds=100)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class LoadWardenConfig:
    """Top-level configuration bundle."""

    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    samples: SampleSource = field(default_factory=SampleSource)
    screens: Sequence[ScreenDefinition] = field(default_factory=tuple)
    plugins: Sequence[Plugin] = field(default_factory=tuple)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state_dir: Path = field(default_factory=lambda: Path("./state"))


__all__ = [
    "AggregationConfig",
    "LoadWardenConfig",
    "LoggingConfig",
    "SampleSource",
    "SchedulerConfig",
    "StoreConfig",
    "SuggestionConfig",
    "SyncConfig",
]
