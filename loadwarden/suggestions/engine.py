"""Turn aggregated samples into ranked, confidence-scored rule proposals.

Every heuristic produces a *strength* in ``[0, 1]``.  The published confidence
discounts it by how much evidence there is and how noisy it is::

    confidence = strength * n / (n + prior_strength) * 1 / (1 + cv)

where ``n`` is the number of samples behind the proposal and ``cv`` the
coefficient of variation of the per-sample cost.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from loadwarden.collectors.sample_reader import SCREEN_KIND
from loadwarden.config import SuggestionConfig
from loadwarden.errors import UnknownScopeError, ValidationError
from loadwarden.metrics.aggregator import PerformanceReport, PluginStats, TriggerStats
from loadwarden.rules.editor import Edit, RuleEditor
from loadwarden.rules.model import REQUEST_KINDS, Mode, Plugin, RuleState, Scope, ScopeKey, ScreenDefinition
from loadwarden.suggestions.catalog import PluginCatalog

logger = logging.getLogger(__name__)

BLOCK = "block"
WHITELIST = "whitelist"
DEFER = "defer"
ACTIONS = (BLOCK, WHITELIST, DEFER)

SOURCE_CONTEXTUAL = "contextual"
SOURCE_SAMPLING = "sampling"


@dataclass(frozen=True, slots=True)
class Suggestion:
    """A proposed rule. Never persisted."""

    plugin: str
    action: str
    confidence: float
    savings_ms: float
    target: ScopeKey
    reason: str = ""
    source: str = SOURCE_SAMPLING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "action": self.action,
            "confidence": round(self.confidence, 2),
            "savings_ms": round(self.savings_ms, 2),
            "target": str(self.target),
            "reason": self.reason,
            "source": self.source,
        }

    def to_payload(self) -> Dict[str, str]:
        """Shape sent to ``apply-auto-rules``."""

        if self.target.scope is Scope.REQUEST_KIND:
            return {"type": "request-kind", "action": self.action, "plugin": self.plugin, "kind": self.target.key}
        return {"type": "screen", "action": self.action, "plugin": self.plugin, "screen": self.target.key}

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Suggestion":
        action = str(data.get("action", ""))
        plugin = str(data.get("plugin", "")).strip()
        if action not in ACTIONS or not plugin:
            raise ValidationError(f"invalid suggestion: {dict(data)!r}")
        kind = str(data.get("type", ""))
        if kind == "request-kind":
            target = ScopeKey.request_kind(str(data.get("kind", "")))
            if action == DEFER:
                raise ValidationError("request kinds cannot defer plugins")
        elif kind == "screen":
            screen = str(data.get("screen", "")).strip()
            if not screen:
                raise UnknownScopeError("screen suggestion without a screen id")
            target = ScopeKey.screen(screen)
            if action == WHITELIST:
                raise ValidationError("screens take block or defer suggestions")
        else:
            raise UnknownScopeError(f"unknown suggestion type: {kind!r}")
        return cls(plugin=plugin, action=action, confidence=0.0, savings_ms=0.0, target=target)


@dataclass(slots=True)
class KindSuggestions:
    kind: str
    suggested_blocks: List[Suggestion] = field(default_factory=list)
    suggested_whitelist: List[Suggestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggested_blocks": [item.to_dict() for item in self.suggested_blocks],
            "suggested_whitelist": [item.to_dict() for item in self.suggested_whitelist],
        }


@dataclass(slots=True)
class ScreenSuggestions:
    screen: str
    label: str
    total_load_ms: float
    samples: int
    suggested_blocks: List[Suggestion] = field(default_factory=list)
    suggested_defer: List[Suggestion] = field(default_factory=list)

    @property
    def total_savings_ms(self) -> float:
        return sum(item.savings_ms for item in self.suggested_blocks + self.suggested_defer)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screen": self.screen,
            "screen_label": self.label,
            "total_load_ms": round(self.total_load_ms, 2),
            "samples": self.samples,
            "suggested_blocks": [item.to_dict() for item in self.suggested_blocks],
            "suggested_defer": [item.to_dict() for item in self.suggested_defer],
        }


@dataclass(slots=True)
class SuggestionReport:
    kinds: Dict[str, KindSuggestions] = field(default_factory=dict)
    screens: List[ScreenSuggestions] = field(default_factory=list)

    def __iter__(self) -> Iterator[Suggestion]:
        for entry in self.kinds.values():
            yield from entry.suggested_blocks
            yield from entry.suggested_whitelist
        for screen in self.screens:
            yield from screen.suggested_blocks
            yield from screen.suggested_defer

    def find(self, target: ScopeKey, plugin: str) -> Optional[Suggestion]:
        for suggestion in self:
            if suggestion.target == target and suggestion.plugin == plugin:
                return suggestion
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {kind: entry.to_dict() for kind, entry in self.kinds.items()}
        payload["admin_screens"] = [screen.to_dict() for screen in self.screens]
        return payload


def confidence(strength: float, samples: int, cv: float, prior_strength: float) -> float:
    """Shrinkage-discounted confidence, clipped to ``[0, 1]``."""

    if samples <= 0:
        return 0.0
    reliability = samples / (samples + max(0.0, prior_strength))
    consistency = 1.0 / (1.0 + max(0.0, cv))
    return max(0.0, min(1.0, strength * reliability * consistency))


@dataclass(slots=True)
class _PluginProfile:
    """One plugin's cost across the triggers of a request kind."""

    plugin: str
    stats: List[PluginStats] = field(default_factory=list)

    @property
    def samples(self) -> int:
        return sum(item.samples for item in self.stats)

    @property
    def avg_ms(self) -> float:
        return sum(item.avg_ms for item in self.stats) / len(self.stats) if self.stats else 0.0

    @property
    def cv(self) -> float:
        total = self.samples
        if total <= 0:
            return 0.0
        mean = sum(item.avg_ms * item.samples for item in self.stats) / total
        if mean <= 0:
            return 0.0
        second_moment = sum(item.samples * (item.stddev_ms ** 2 + item.avg_ms ** 2) for item in self.stats) / total
        return math.sqrt(max(0.0, second_moment - mean * mean)) / mean


class SuggestionEngine:
    """Apply the request-kind and screen heuristics to a performance report."""

    def __init__(
        self,
        config: Optional[SuggestionConfig] = None,
        plugins: Iterable[Plugin] = (),
        screens: Iterable[ScreenDefinition] = (),
        catalog: Optional[PluginCatalog] = None,
    ) -> None:
        self._config = config or SuggestionConfig()
        self._protected = {plugin.id for plugin in plugins if plugin.protected}
        self._labels = {screen.id: screen.label for screen in screens if screen.label}
        self._catalog = catalog or PluginCatalog()

    def suggest(self, report: PerformanceReport) -> SuggestionReport:
        result = SuggestionReport()
        for kind in REQUEST_KINDS:
            triggers = report.triggers(kind)
            if triggers:
                result.kinds[kind] = self._suggest_kind(kind, triggers)
        screens = [self._suggest_screen(stats, report.triggers(SCREEN_KIND))
                   for stats in report.triggers(SCREEN_KIND)]
        result.screens = sorted(
            (entry for entry in screens if entry.suggested_blocks or entry.suggested_defer),
            key=lambda entry: (-entry.total_savings_ms, entry.screen),
        )
        logger.info("generated %d suggestion(s)", sum(1 for _ in result))
        return result

    # ------------------------------------------------------------------
    def _eligible(self, plugin: str, samples: int) -> bool:
        return plugin not in self._protected and samples >= self._config.min_samples

    def _make(
        self,
        strength: float,
        samples: int,
        cv: float,
        **kwargs: Any,
    ) -> Optional[Suggestion]:
        score = confidence(strength, samples, cv, self._config.prior_strength)
        if score < self._config.confidence_threshold:
            return None
        return Suggestion(confidence=score, **kwargs)

    def _suggest_kind(self, kind: str, triggers: Sequence[TriggerStats]) -> KindSuggestions:
        target = ScopeKey.request_kind(kind)
        profiles: Dict[str, _PluginProfile] = {}
        for trigger in triggers:
            for stats in trigger.plugins:
                profiles.setdefault(stats.plugin, _PluginProfile(stats.plugin)).stats.append(stats)
        total_triggers = len(triggers)
        global_avg = sum(p.avg_ms for p in profiles.values()) / len(profiles) if profiles else 0.0

        entry = KindSuggestions(kind)
        for plugin, profile in sorted(profiles.items()):
            n = profile.samples
            if not self._eligible(plugin, n):
                continue
            avg_ms = profile.avg_ms
            cv = profile.cv
            trigger_count = len(profile.stats)
            presence = trigger_count / total_triggers if total_triggers else 0.0

            verdict = self._catalog.check(plugin, kind)
            if verdict.safe is True:
                if avg_ms >= 1:
                    suggestion = self._make(
                        0.90, n, cv, plugin=plugin, action=BLOCK, savings_ms=avg_ms, target=target,
                        reason=verdict.reason, source=SOURCE_CONTEXTUAL,
                    )
                    if suggestion:
                        entry.suggested_blocks.append(suggestion)
                continue
            if verdict.safe is False:
                continue

            block: Optional[Suggestion] = None
            if avg_ms > 5 and presence < 0.5:
                strength = min(0.95, (1 - presence) * (avg_ms / 30))
                block = self._make(
                    strength, n, cv, plugin=plugin, action=BLOCK, savings_ms=avg_ms, target=target,
                    reason=(
                        f"Plugin has {avg_ms:.1f}ms average load time, but appears in only "
                        f"{round(presence * 100)}% of {kind} triggers"
                    ),
                )
            if block is None and avg_ms > 8 and global_avg > 0 and avg_ms > global_avg * 1.5:
                weight = avg_ms / global_avg
                strength = min(0.90, 0.5 + (weight - 1.5) * 0.15)
                block = self._make(
                    strength, n, cv, plugin=plugin, action=BLOCK, savings_ms=avg_ms, target=target,
                    reason=(
                        f"Plugin has {avg_ms:.1f}ms average load time ({weight:.1f}x the "
                        f"{global_avg:.1f}ms average) - optimization candidate"
                    ),
                )
            if block is not None:
                entry.suggested_blocks.append(block)
                continue

            min_triggers = max(3, min(5, total_triggers))
            if presence > 0.9 and trigger_count >= min_triggers and avg_ms < 3:
                allow = self._make(
                    min(0.95, presence), n, cv, plugin=plugin, action=WHITELIST, savings_ms=0.0,
                    target=target,
                    reason=(
                        f"Plugin appears in {round(presence * 100)}% of {kind} triggers and has "
                        f"minimal load ({avg_ms:.1f}ms) - likely needed"
                    ),
                )
                if allow is not None:
                    entry.suggested_whitelist.append(allow)

        entry.suggested_blocks = self._rank_by_savings(entry.suggested_blocks)
        entry.suggested_whitelist = sorted(
            entry.suggested_whitelist, key=lambda item: (-item.confidence, item.plugin)
        )[: self._config.max_per_target]
        return entry

    def _suggest_screen(self, screen: TriggerStats, all_screens: Sequence[TriggerStats]) -> ScreenSuggestions:
        target = ScopeKey.screen(screen.trigger)
        total_screens = len(all_screens)
        presence_counts: Dict[str, int] = {}
        for other in all_screens:
            for stats in other.plugins:
                presence_counts[stats.plugin] = presence_counts.get(stats.plugin, 0) + 1
        screen_avg = screen.avg_ms / len(screen.plugins) if screen.plugins else 0.0

        entry = ScreenSuggestions(
            screen=screen.trigger,
            label=self._labels.get(screen.trigger, screen.trigger),
            total_load_ms=screen.avg_ms,
            samples=screen.samples,
        )
        for stats in screen.plugins:
            if not self._eligible(stats.plugin, stats.samples):
                continue
            avg_ms = stats.avg_ms
            presence = presence_counts.get(stats.plugin, 0) / total_screens if total_screens else 1.0
            common = dict(plugin=stats.plugin, target=target)

            block: Optional[Suggestion] = None
            if avg_ms > 8 and presence < 0.7:
                strength = min(0.90, 0.4 + avg_ms / 80 + (1 - presence) * 0.4)
                block = self._make(
                    strength, stats.samples, stats.cv, action=BLOCK, savings_ms=avg_ms,
                    reason=(
                        f"Plugin has {avg_ms:.1f}ms load on this screen and is only needed on "
                        f"{round(presence * 100)}% of screens"
                    ),
                    **common,
                )
            if block is None and avg_ms > 3 and not self._catalog.is_relevant(stats.plugin, screen.trigger):
                strength = min(0.80, 0.45 + avg_ms / 60)
                block = self._make(
                    strength, stats.samples, stats.cv, action=BLOCK, savings_ms=avg_ms,
                    reason=f"Plugin is probably not needed on this screen ({avg_ms:.1f}ms load)",
                    **common,
                )
            if block is not None:
                entry.suggested_blocks.append(block)
                continue

            if avg_ms > 10 and presence > 0.5 and avg_ms > screen_avg * 1.3:
                weight = avg_ms / screen_avg if screen_avg > 0 else 1.0
                strength = min(0.85, 0.35 + (weight - 1.3) * 0.25)
                defer = self._make(
                    strength, stats.samples, stats.cv, action=DEFER, savings_ms=avg_ms * 0.7,
                    reason=(
                        f"Plugin has {avg_ms:.1f}ms load ({weight:.1f}x the screen average) - "
                        "consider deferring it"
                    ),
                    **common,
                )
                if defer is not None:
                    entry.suggested_defer.append(defer)

        entry.suggested_blocks = self._rank_by_savings(entry.suggested_blocks)
        entry.suggested_defer = self._rank_by_savings(entry.suggested_defer)
        return entry

    def _rank_by_savings(self, items: List[Suggestion]) -> List[Suggestion]:
        ranked = sorted(items, key=lambda item: (-item.savings_ms, -item.confidence, item.plugin))
        return ranked[: self._config.max_per_target]


def apply_suggestions(editor: RuleEditor, suggestions: Iterable[Suggestion]) -> List[Edit]:
    """Materialise accepted proposals through the editor.

    Screen proposals become ``disabled``/``defer`` rules.  Request-kind
    proposals switch a passthrough kind to the matching mode and then mark
    the plugin active.  A proposal whose mode conflicts with the kind's
    current mode raises :class:`ValidationError` rather than reinterpreting
    the existing members.
    """

    edits: List[Edit] = []
    for suggestion in suggestions:
        target = suggestion.target
        if target.scope is Scope.SCREEN:
            state = RuleState.DEFER if suggestion.action == DEFER else RuleState.DISABLED
            edits.append(editor.set_state(target, suggestion.plugin, state))
            continue
        if target.scope is not Scope.REQUEST_KIND:
            raise UnknownScopeError(f"cannot apply a suggestion to {target}")
        mode = Mode.WHITELIST if suggestion.action == WHITELIST else Mode.BLACKLIST
        editor.validate(target, suggestion.plugin)
        current = editor.snapshot.effective_mode(target)
        if current is Mode.PASSTHROUGH:
            edits.append(editor.switch_mode(target, mode))
        elif current is not mode:
            raise ValidationError(
                f"{target} is in {current.value} mode; cannot apply a {suggestion.action} suggestion"
            )
        edits.append(editor.set_state(target, suggestion.plugin, mode.active_state))
    return edits


__all__ = [
    "ACTIONS",
    "BLOCK",
    "DEFER",
    "KindSuggestions",
    "ScreenSuggestions",
    "Suggestion",
    "SuggestionEngine",
    "SuggestionReport",
    "WHITELIST",
    "apply_suggestions",
    "confidence",
]
