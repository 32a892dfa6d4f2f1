"""Layered precedence resolution of plugin activation state.

The walk is top-down and stops at the first layer with an opinion::

    override > screen (own, group) > context | request-kind > global

The resolver is pure: it reads a :class:`RuleSnapshot` and never caches, so a
new resolver (or the same one) always reflects the snapshot it is given.
"""
from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from loadwarden.rules.dependencies import DependencyGraph, cascade_reasons
from loadwarden.rules.model import (
    GLOBAL_CONTEXT_KEY,
    WILDCARD,
    BinaryRuleSet,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    Scope,
    ScopeKey,
    ScreenDefinition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestContext:
    """What the host knows about the request being served."""

    screen_id: Optional[str] = None
    request_kind: Optional[str] = None
    context_id: Optional[str] = None
    override: Optional[Tuple[str, int]] = None
    trigger: Optional[str] = None

    def describe(self) -> str:
        parts = []
        if self.screen_id:
            parts.append(f"screen={self.screen_id}")
        if self.request_kind:
            parts.append(f"kind={self.request_kind}")
        if self.context_id:
            parts.append(f"context={self.context_id}")
        if self.override:
            parts.append(f"override={self.override[0]}:{self.override[1]}")
        if self.trigger:
            parts.append(f"trigger={self.trigger}")
        return " ".join(parts) or "<empty>"


@dataclass(frozen=True, slots=True)
class EffectiveState:
    """Resolved state plus the scope instance that produced it."""

    state: RuleState
    source: Optional[Scope] = None
    key: Optional[ScopeKey] = None

    @property
    def is_inherited_default(self) -> bool:
        return self.source is None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "state": self.state.value,
            "source": self.source.value if self.source else None,
            "key": str(self.key) if self.key else None,
        }


DEFAULT_STATE = EffectiveState(RuleState.DEFAULT)


def pattern_matches(pattern: str, value: str) -> bool:
    """``*`` wildcard match used by smart detection."""

    if pattern == WILDCARD:
        return True
    return fnmatch.fnmatchcase(value, pattern)


class StateResolver:
    """Compute :class:`EffectiveState` for a plugin in a request."""

    def __init__(
        self,
        snapshot: RuleSnapshot,
        plugins: Iterable[Plugin] = (),
        screens: Iterable[ScreenDefinition] = (),
    ) -> None:
        self._snapshot = snapshot
        self._plugins: Dict[str, Plugin] = {plugin.id: plugin for plugin in plugins}
        self._screens: Dict[str, ScreenDefinition] = {screen.id: screen for screen in screens}

    @property
    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    def is_protected(self, plugin_id: str) -> bool:
        plugin = self._plugins.get(plugin_id)
        return bool(plugin and plugin.protected)

    def resolve(self, plugin_id: str, request: RequestContext) -> EffectiveState:
        if self.is_protected(plugin_id):
            return DEFAULT_STATE

        screen = self._screens.get(request.screen_id) if request.screen_id else None
        if screen is not None and screen.always_all:
            return DEFAULT_STATE

        frontend_enabled = self._snapshot.frontend.enabled

        if request.override and frontend_enabled:
            key = ScopeKey.override(*request.override)
            state = self._snapshot.state_of(key, plugin_id)
            if state is not RuleState.DEFAULT:
                return EffectiveState(state, Scope.OVERRIDE, key)

        if request.screen_id:
            found = self._resolve_screen(plugin_id, request.screen_id)
            if found is not None:
                return found

        implied: Optional[EffectiveState] = None
        if request.request_kind:
            found, implied = self._resolve_request_kind(plugin_id, request)
            if found is not None:
                return found
        elif request.context_id and frontend_enabled:
            found, implied = self._resolve_context(plugin_id, request.context_id)
            if found is not None:
                return found

        if request.screen_id:
            key = ScopeKey.global_admin()
            state = self._snapshot.state_of(key, plugin_id)
            if state is not RuleState.DEFAULT:
                return EffectiveState(state, Scope.GLOBAL, key)

        if implied is not None:
            return implied
        return DEFAULT_STATE

    def inherited_state(self, screen_id: str, plugin_id: str) -> EffectiveState:
        """State a screen tag shows when it has no own rule."""

        group_key = self._group_key(screen_id)
        if group_key is not None:
            state = self._snapshot.state_of(group_key, plugin_id)
            if state is not RuleState.DEFAULT:
                return EffectiveState(state, Scope.SCREEN, group_key)
        key = ScopeKey.global_admin()
        if screen_id != key.key:
            state = self._snapshot.state_of(key, plugin_id)
            if state is not RuleState.DEFAULT:
                return EffectiveState(state, Scope.GLOBAL, key)
        return DEFAULT_STATE

    # ------------------------------------------------------------------
    def _group_key(self, screen_id: str) -> Optional[ScopeKey]:
        screen = self._screens.get(screen_id)
        return screen.group_key if screen is not None else None

    def _resolve_screen(self, plugin_id: str, screen_id: str) -> Optional[EffectiveState]:
        key = ScopeKey.screen(screen_id)
        state = self._snapshot.state_of(key, plugin_id)
        if state is not RuleState.DEFAULT:
            return EffectiveState(state, Scope.SCREEN, key)
        group_key = self._group_key(screen_id)
        if group_key is not None:
            state = self._snapshot.state_of(group_key, plugin_id)
            if state is not RuleState.DEFAULT:
                return EffectiveState(state, Scope.SCREEN, group_key)
        return None

    def _resolve_request_kind(
        self, plugin_id: str, request: RequestContext
    ) -> Tuple[Optional[EffectiveState], Optional[EffectiveState]]:
        key = ScopeKey.request_kind(str(request.request_kind))
        rule_set = self._snapshot.binary_set(key)
        if rule_set is None or rule_set.mode in (None, Mode.PASSTHROUGH):
            return None, None
        mode = rule_set.mode
        if mode is Mode.BLACKLIST:
            if rule_set.is_active(plugin_id):
                return EffectiveState(RuleState.DISABLED, Scope.REQUEST_KIND, key), None
            return None, None

        if rule_set.is_active(plugin_id) or rule_set.is_active(WILDCARD):
            return EffectiveState(RuleState.ENABLED, Scope.REQUEST_KIND, key), None
        if self._detected(rule_set, request, plugin_id):
            return EffectiveState(RuleState.ENABLED, Scope.REQUEST_KIND, key), None
        return None, EffectiveState(RuleState.DISABLED, Scope.GLOBAL, key)

    @staticmethod
    def _detected(rule_set: BinaryRuleSet, request: RequestContext, plugin_id: str) -> bool:
        if not request.trigger:
            return False
        if request.request_kind == "ajax" and not rule_set.detect_by_action:
            return False
        if request.request_kind == "rest" and not rule_set.detect_by_namespace:
            return False
        if request.request_kind not in ("ajax", "rest"):
            return False
        trigger = request.trigger
        if request.request_kind == "rest":
            trigger = trigger.strip("/")
        for pattern, plugins in rule_set.known_patterns.items():
            if not pattern_matches(pattern, trigger):
                continue
            if WILDCARD in plugins or plugin_id in plugins:
                return True
        return False

    def _resolve_context(
        self, plugin_id: str, context_id: str
    ) -> Tuple[Optional[EffectiveState], Optional[EffectiveState]]:
        key = ScopeKey.context(context_id)
        mode = self._snapshot.effective_mode(key)
        if mode is Mode.PASSTHROUGH:
            return None, None
        polarity = mode.active_state

        rule_set = self._snapshot.binary_set(key)
        if rule_set is not None and rule_set.is_active(plugin_id):
            return EffectiveState(polarity, key.scope, key), None
        if mode is Mode.WHITELIST and rule_set is not None and rule_set.is_active(WILDCARD):
            return EffectiveState(RuleState.ENABLED, key.scope, key), None

        # _global members keep the polarity of _global's own mode
        global_key = ScopeKey.global_context()
        global_set = self._snapshot.contexts.get(GLOBAL_CONTEXT_KEY)
        if global_set is not None and context_id != GLOBAL_CONTEXT_KEY:
            global_mode = global_set.mode or mode
            if global_mode is not Mode.PASSTHROUGH:
                if global_set.is_active(plugin_id):
                    return EffectiveState(global_mode.active_state, Scope.GLOBAL, global_key), None
                if mode is Mode.WHITELIST and global_mode is Mode.WHITELIST and global_set.is_active(WILDCARD):
                    return EffectiveState(RuleState.ENABLED, Scope.GLOBAL, global_key), None

        if mode is Mode.WHITELIST:
            return None, EffectiveState(RuleState.DISABLED, Scope.GLOBAL, global_key)
        return None, None


@dataclass(slots=True)
class LoadPlan:
    """Outcome of resolving every plugin for one request."""

    loaded: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    disabled: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "loaded": list(self.loaded),
            "deferred": list(self.deferred),
            "disabled": dict(self.disabled),
        }


class LoadPlanner:
    """Apply the resolver to a request's plugin list."""

    def __init__(self, resolver: StateResolver, dependencies: Optional[DependencyGraph] = None) -> None:
        self._resolver = resolver
        self._dependencies = dependencies

    def plan(self, plugins: Iterable[str], request: RequestContext) -> LoadPlan:
        plan = LoadPlan()
        ordered = list(dict.fromkeys(plugins))
        for plugin_id in ordered:
            effective = self._resolver.resolve(plugin_id, request)
            if effective.state is RuleState.DISABLED:
                plan.disabled[plugin_id] = str(effective.key) if effective.key else "disabled"
            elif effective.state is RuleState.DEFER:
                plan.deferred.append(plugin_id)
            else:
                plan.loaded.append(plugin_id)

        if self._dependencies is not None and plan.disabled:
            remaining = plan.loaded + plan.deferred
            cascaded = cascade_reasons(self._dependencies.cascade(plan.disabled, remaining))
            if cascaded:
                plan.loaded = [p for p in plan.loaded if p not in cascaded]
                plan.deferred = [p for p in plan.deferred if p not in cascaded]
                plan.disabled.update(cascaded)

        logger.debug(
            "planned %s: %d loaded, %d deferred, %d disabled",
            request.describe(),
            len(plan.loaded),
            len(plan.deferred),
            len(plan.disabled),
        )
        return plan


def resolve_many(
    resolver: StateResolver, plugins: Iterable[str], request: RequestContext
) -> Mapping[str, EffectiveState]:
    return {plugin_id: resolver.resolve(plugin_id, request) for plugin_id in plugins}


__all__ = [
    "DEFAULT_STATE",
    "EffectiveState",
    "LoadPlan",
    "LoadPlanner",
    "RequestContext",
    "StateResolver",
    "pattern_matches",
    "resolve_many",
]
