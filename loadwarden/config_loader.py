"""Utilities to load :mod:`loadwarden.config` structures from YAML files."""
from __future__ import annotations

import datetime as _dt
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from .config import (
    AggregationConfig,
    LoadWardenConfig,
    LoggingConfig,
    SampleSource,
    SchedulerConfig,
    StoreConfig,
    SuggestionConfig,
    SyncConfig,
)
from .errors import ValidationError
from .rules.model import Plugin, ScreenDefinition

_DURATION_UNITS = {
    "ms": _dt.timedelta(milliseconds=1),
    "s": _dt.timedelta(seconds=1),
    "m": _dt.timedelta(minutes=1),
    "h": _dt.timedelta(hours=1),
    "d": _dt.timedelta(days=1),
}

_DURATION_PATTERN = re.compile(r"^(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h|d)$", re.IGNORECASE)


def load_config(path: Path) -> LoadWardenConfig:
    """Load a configuration file into :class:`LoadWardenConfig`.

    Durations accept human friendly values such as ``"500ms"``, ``"1s"`` or
    ``"30d"``; bare numbers are seconds.  Omitted sections fall back to the
    defaults declared in :mod:`loadwarden.config`.
    """

    return parse_config(_load_yaml(Path(path)))


def parse_config(raw: Mapping[str, Any]) -> LoadWardenConfig:
    defaults = LoadWardenConfig()

    store_section = _section(raw, "store")
    store = StoreConfig(
        base_url=str(store_section.get("base_url", defaults.store.base_url)),
        endpoint=str(store_section.get("endpoint", defaults.store.endpoint)),
        nonce=str(store_section.get("nonce", defaults.store.nonce)),
        request_timeout=float(store_section.get("request_timeout", defaults.store.request_timeout)),
    )

    sync_section = _section(raw, "sync")
    sync = SyncConfig(debounce=_parse_duration(sync_section.get("debounce", "1s")))

    suggestions_section = _section(raw, "suggestions")
    suggestions = SuggestionConfig(
        min_samples=int(suggestions_section.get("min_samples", defaults.suggestions.min_samples)),
        confidence_threshold=float(
            suggestions_section.get("confidence_threshold", defaults.suggestions.confidence_threshold)
        ),
        max_per_target=int(suggestions_section.get("max_per_target", defaults.suggestions.max_per_target)),
        prior_strength=float(suggestions_section.get("prior_strength", defaults.suggestions.prior_strength)),
    )
    if not 0.0 <= suggestions.confidence_threshold <= 1.0:
        raise ValidationError("suggestions.confidence_threshold must be within [0, 1]")
    if suggestions.max_per_target <= 0:
        raise ValidationError("suggestions.max_per_target must be positive")

    aggregation_section = _section(raw, "aggregation")
    aggregation = AggregationConfig(
        max_samples_per_trigger=int(
            aggregation_section.get("max_samples_per_trigger", defaults.aggregation.max_samples_per_trigger)
        ),
        max_triggers_per_kind=int(
            aggregation_section.get("max_triggers_per_kind", defaults.aggregation.max_triggers_per_kind)
        ),
    )

    samples_section = _section(raw, "samples")
    samples = SampleSource(
        path=Path(samples_section["path"]) if samples_section.get("path") else None,
        follow=bool(samples_section.get("follow", False)),
    )

    screens = tuple(
        ScreenDefinition(
            id=str(item["id"]),
            label=str(item.get("label", "")),
            group=str(item["group"]) if item.get("group") else None,
            always_all=bool(item.get("always_all", False)),
        )
        for item in raw.get("screens", []) or []
    )

    plugins = tuple(
        Plugin(
            id=str(item["id"]),
            name=str(item.get("name", "")),
            protected=bool(item.get("protected", False)),
            requires=tuple(str(parent) for parent in item.get("requires", []) or []),
        )
        for item in raw.get("plugins", []) or []
    )

    scheduler_section = _section(raw, "scheduler")
    scheduler = SchedulerConfig(
        tick_interval=_parse_duration(scheduler_section.get("tick_interval", "100ms")),
    )

    logging_section = _section(raw, "logging")
    logging_cfg = LoggingConfig(level=str(logging_section.get("level", defaults.logging.level)).upper())

    state_dir = Path(raw.get("state_dir", "./state"))

    return LoadWardenConfig(
        store=store,
        sync=sync,
        suggestions=suggestions,
        aggregation=aggregation,
        samples=samples,
        screens=screens,
        plugins=plugins,
        scheduler=scheduler,
        logging=logging_cfg,
        state_dir=state_dir,
    )


def _load_yaml(path: Path) -> Mapping[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("configuration root must be a mapping")
    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"configuration section {name!r} must be a mapping")
    return section


def _parse_duration(value: Any) -> _dt.timedelta:
    if isinstance(value, _dt.timedelta):
        return value
    if isinstance(value, (int, float)):
        return _dt.timedelta(seconds=float(value))
    if not isinstance(value, str):
        raise ValueError(f"unsupported duration value: {value!r}")
    value = value.strip()
    if value.isdigit():
        return _dt.timedelta(seconds=int(value))
    match = _DURATION_PATTERN.match(value)
    if match is None:
        raise ValueError(f"unknown duration unit: {value}")
    base = _DURATION_UNITS[match.group("unit").lower()]
    return _dt.timedelta(seconds=base.total_seconds() * float(match.group("amount")))


__all__ = ["load_config", "parse_config"]
