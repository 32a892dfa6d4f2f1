"""Editing protocol for rule snapshots.

Four-state tags (screens, groups, ``_global_admin``) cycle through
``default -> enabled -> disabled -> defer -> default``.  Binary tags
(request kinds, contexts) toggle membership of the instance's active list and
are inert while the instance is in passthrough.  Override tags toggle between
``default`` and the polarity of their parent context.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from loadwarden.errors import InertTagError, ProtectedPluginError, ValidationError
from loadwarden.rules.model import (
    FOUR_STATE_CYCLE,
    BinaryRuleSet,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    Scope,
    ScopeKey,
    ScreenDefinition,
)
from loadwarden.rules.resolver import EffectiveState, StateResolver

logger = logging.getLogger(__name__)

EditValue = Union[RuleState, Mode, None]


@dataclass(frozen=True, slots=True)
class Edit:
    """One applied change. ``plugin`` is ``None`` for mode switches."""

    scope_key: ScopeKey
    plugin: Optional[str]
    before: EditValue
    after: EditValue

    @property
    def changed(self) -> bool:
        return self.before != self.after


@dataclass(frozen=True, slots=True)
class ScopeSummary:
    enabled: int = 0
    disabled: int = 0
    deferred: int = 0

    @property
    def total(self) -> int:
        return self.enabled + self.disabled + self.deferred

    def to_dict(self) -> Dict[str, int]:
        return {"enabled": self.enabled, "disabled": self.disabled, "deferred": self.deferred}


class RuleEditor:
    """Mutates a :class:`RuleSnapshot` in place, one validated edit at a time."""

    def __init__(
        self,
        snapshot: RuleSnapshot,
        plugins: Iterable[Plugin] = (),
        screens: Iterable[ScreenDefinition] = (),
    ) -> None:
        self._snapshot = snapshot
        self._plugins: Dict[str, Plugin] = {plugin.id: plugin for plugin in plugins}
        self._screens = list(screens)

    @property
    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    # ------------------------------------------------------------------
    # Queries
    def displayed_state(self, key: ScopeKey, plugin: str) -> EffectiveState:
        """State a tag shows: its own rule, else what it inherits."""

        own = self._snapshot.state_of(key, plugin)
        if own is not RuleState.DEFAULT:
            return EffectiveState(own, key.scope, key)
        if key.is_four_state:
            return self._resolver().inherited_state(key.key, plugin)
        return EffectiveState(RuleState.DEFAULT)

    def summary(self, keys: Optional[Iterable[ScopeKey]] = None) -> ScopeSummary:
        """Count enabled/disabled/deferred tags over the current snapshot."""

        wanted = set(keys) if keys is not None else None
        enabled = disabled = deferred = 0
        for key, _plugin, state in self._snapshot.iter_tags():
            if wanted is not None and key not in wanted:
                continue
            if state is RuleState.ENABLED:
                enabled += 1
            elif state is RuleState.DISABLED:
                disabled += 1
            elif state is RuleState.DEFER:
                deferred += 1
        return ScopeSummary(enabled=enabled, disabled=disabled, deferred=deferred)

    # ------------------------------------------------------------------
    # Mutations
    def validate(self, key: ScopeKey, plugin: str) -> None:
        if not plugin or not plugin.strip():
            raise ValidationError("plugin id must not be empty")
        target = self._plugins.get(plugin)
        if target is not None and target.protected:
            raise ProtectedPluginError(plugin)

    def cycle(self, key: ScopeKey, plugin: str) -> Edit:
        if not key.is_four_state:
            raise ValidationError(f"{key} does not hold four-state rules")
        self.validate(key, plugin)
        own = self._snapshot.state_of(key, plugin)
        if own is not RuleState.DEFAULT:
            return self._write_four_state(key, plugin, FOUR_STATE_CYCLE[own], before=own)
        inherited = self.displayed_state(key, plugin).state
        return self._write_four_state(key, plugin, FOUR_STATE_CYCLE[inherited], before=own)

    def toggle(self, key: ScopeKey, plugin: str, parent_context: Optional[str] = None) -> Edit:
        if key.is_four_state:
            raise ValidationError(f"{key} holds four-state rules; cycle them instead")
        self.validate(key, plugin)
        if key.scope is Scope.OVERRIDE:
            polarity = self._override_polarity(key, parent_context)
            own = self._snapshot.state_of(key, plugin)
            after = RuleState.DEFAULT if own is not RuleState.DEFAULT else polarity
            return self._write_override(key, plugin, after)

        mode = self._snapshot.effective_mode(key)
        if mode is Mode.PASSTHROUGH:
            raise InertTagError(f"{key} is in passthrough mode")
        rule_set = self._binary_set(key)
        if rule_set.is_active(plugin):
            rule_set.deactivate(plugin)
            return self._log(Edit(key, plugin, mode.active_state, RuleState.DEFAULT))
        rule_set.activate(plugin)
        return self._log(Edit(key, plugin, RuleState.DEFAULT, mode.active_state))

    def set_state(self, key: ScopeKey, plugin: str, state: RuleState) -> Edit:
        state = RuleState.parse(state)
        self.validate(key, plugin)
        if key.is_four_state:
            return self._write_four_state(key, plugin, state, before=self._snapshot.state_of(key, plugin))
        if key.scope is Scope.OVERRIDE:
            if state is RuleState.DEFER:
                raise ValidationError("overrides cannot defer a plugin")
            return self._write_override(key, plugin, state)

        mode = self._snapshot.effective_mode(key)
        before = self._snapshot.state_of(key, plugin)
        if state is RuleState.DEFAULT:
            rule_set = self._snapshot.binary_set(key)
            if rule_set is not None:
                rule_set.deactivate(plugin)
            return self._log(Edit(key, plugin, before, RuleState.DEFAULT))
        if mode is Mode.PASSTHROUGH:
            raise InertTagError(f"{key} is in passthrough mode")
        if state is not mode.active_state:
            raise ValidationError(f"{key} in {mode.value} mode cannot hold {state.value} rules")
        self._binary_set(key).activate(plugin)
        return self._log(Edit(key, plugin, before, state))

    def switch_mode(self, key: ScopeKey, mode: Mode) -> Edit:
        mode = Mode.parse(mode)
        if key.is_four_state or key.scope is Scope.OVERRIDE:
            raise ValidationError(f"{key} has no mode")
        before = self._snapshot.effective_mode(key)
        rule_set = self._binary_set(key)
        rule_set.mode = mode
        if mode is Mode.PASSTHROUGH:
            rule_set.active.clear()
        return self._log(Edit(key, None, before, mode))

    def set_detection(self, kind: str, enabled: bool) -> None:
        key = ScopeKey.request_kind(kind)
        rule_set = self._binary_set(key)
        if kind == "ajax":
            rule_set.detect_by_action = enabled
        elif kind == "rest":
            rule_set.detect_by_namespace = enabled
        else:
            raise ValidationError(f"request kind {kind!r} has no smart detection")

    def reset_scope(self, key: ScopeKey) -> List[Edit]:
        edits: List[Edit] = []
        if key.is_four_state:
            rules = self._snapshot.screens.pop(key.key, {})
            edits = [Edit(key, plugin, state, RuleState.DEFAULT) for plugin, state in rules.items()]
        elif key.scope is Scope.OVERRIDE:
            rules = self._snapshot.overrides.pop(key.key, {})
            edits = [Edit(key, plugin, state, RuleState.DEFAULT) for plugin, state in rules.items()]
        else:
            rule_set = self._snapshot.binary_set(key)
            if rule_set is not None:
                polarity = self._snapshot.effective_mode(key).active_state
                edits = [Edit(key, plugin, polarity, RuleState.DEFAULT) for plugin in rule_set.active]
                rule_set.active.clear()
        logger.info("reset %s (%d rule(s))", key, len(edits))
        return edits

    def reset_override(self, override_type: str, override_id: int) -> List[Edit]:
        return self.reset_scope(ScopeKey.override(override_type, override_id))

    # ------------------------------------------------------------------
    def _resolver(self) -> StateResolver:
        return StateResolver(self._snapshot, self._plugins.values(), self._screens)

    def _binary_set(self, key: ScopeKey) -> BinaryRuleSet:
        rule_set = self._snapshot.binary_set(key)
        if rule_set is not None:
            return rule_set
        if key.scope is Scope.REQUEST_KIND:
            rule_set = BinaryRuleSet()
            self._snapshot.request_kinds[key.key] = rule_set
        elif key.scope is Scope.CONTEXT:
            rule_set = BinaryRuleSet(mode=None)
            self._snapshot.contexts[key.key] = rule_set
        else:
            rule_set = BinaryRuleSet()
            self._snapshot.contexts[key.key] = rule_set
        return rule_set

    def _override_polarity(self, key: ScopeKey, parent_context: Optional[str]) -> RuleState:
        if not parent_context:
            raise ValidationError(f"toggling {key} needs its parent context")
        mode = self._snapshot.effective_mode(ScopeKey.context(parent_context))
        if mode is Mode.PASSTHROUGH:
            raise InertTagError(f"context {parent_context!r} is in passthrough mode")
        return mode.active_state

    def _write_four_state(self, key: ScopeKey, plugin: str, state: RuleState, *, before: RuleState) -> Edit:
        rules = self._snapshot.screens.setdefault(key.key, {})
        if state is RuleState.DEFAULT:
            rules.pop(plugin, None)
        else:
            rules[plugin] = state
        if not rules:
            del self._snapshot.screens[key.key]
        return self._log(Edit(key, plugin, before, state))

    def _write_override(self, key: ScopeKey, plugin: str, state: RuleState) -> Edit:
        before = self._snapshot.state_of(key, plugin)
        rules = self._snapshot.overrides.setdefault(key.key, {})
        if state is RuleState.DEFAULT:
            rules.pop(plugin, None)
        else:
            rules[plugin] = state
        if not rules:
            del self._snapshot.overrides[key.key]
        return self._log(Edit(key, plugin, before, state))

    @staticmethod
    def _log(edit: Edit) -> Edit:
        logger.debug("edit %s %s: %s -> %s", edit.scope_key, edit.plugin or "<mode>", edit.before, edit.after)
        return edit


__all__ = ["Edit", "RuleEditor", "ScopeSummary"]
