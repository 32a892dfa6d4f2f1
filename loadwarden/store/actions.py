"""Server side of the rule store action endpoint.

Every action answers with the ``{"success": bool, "data": ...}`` envelope.
Failures carry ``{"message": ...}`` and an HTTP-style status code so the
handler can be mounted behind any HTTP layer; :meth:`ActionHandler.handle_request`
adapts it to ``httpx`` transports.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs

import httpx

from loadwarden.audit.assets import AssetAudit
from loadwarden.collectors.sample_reader import SCREEN_KIND
from loadwarden.errors import LoadWardenError, StoreError, UnknownScopeError, ValidationError
from loadwarden.metrics.aggregator import SampleAggregator
from loadwarden.rules.editor import RuleEditor
from loadwarden.rules.model import (
    GLOBAL_ADMIN_KEY,
    GLOBAL_CONTEXT_KEY,
    REQUEST_KINDS,
    FrontendSettings,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    ScopeKey,
    ScreenDefinition,
    parse_context_rules,
    parse_request_kind_rules,
    parse_screen_rules,
)
from loadwarden.rules.resolver import RequestContext, StateResolver
from loadwarden.store.backend import (
    ADMIN_THEME,
    FRONTEND_RULES,
    FRONTEND_SETTINGS,
    OPERATING_MODE,
    OVERRIDES,
    REQUEST_KIND_RULES,
    SCREEN_RULES,
    RuleStore,
    load_snapshot,
    save_snapshot,
)
from loadwarden.suggestions.engine import Suggestion, SuggestionEngine, apply_suggestions

logger = logging.getLogger(__name__)

THEMES = ("light", "dark")
OPERATING_MODES = ("manual", "auto")
RULE_ACTIONS = {"block": RuleState.DISABLED, "allow": RuleState.ENABLED, "default": RuleState.DEFAULT}

Reply = Tuple[int, Dict[str, Any]]


def success(data: Any) -> Reply:
    return 200, {"success": True, "data": data}


def failure(message: str, status: int = 400) -> Reply:
    return status, {"success": False, "data": {"message": message}}


class ActionHandler:
    """Executes the network action table against a :class:`RuleStore`."""

    def __init__(
        self,
        store: RuleStore,
        *,
        nonce: Optional[str] = None,
        plugins: Iterable[Plugin] = (),
        screens: Iterable[ScreenDefinition] = (),
        aggregator: Optional[SampleAggregator] = None,
        engine: Optional[SuggestionEngine] = None,
        audit: Optional[AssetAudit] = None,
    ) -> None:
        self._store = store
        self._nonce = nonce
        self._plugins = list(plugins)
        self._screens = list(screens)
        self._aggregator = aggregator or SampleAggregator()
        self._engine = engine or SuggestionEngine(plugins=self._plugins, screens=self._screens)
        self._audit = audit or AssetAudit(store)
        self._lock = threading.Lock()
        self._actions: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "save-admin-theme": self._save_admin_theme,
            "save-screen-rules": self._save_screen_rules,
            "save-request-kind-rules": self._save_request_kind_rules,
            "get-request-kind-performance": self._get_performance,
            "clear-request-kind-performance": self._clear_performance,
            "set-mode": self._set_mode,
            "get-auto-suggestions": self._get_auto_suggestions,
            "apply-auto-rules": self._apply_auto_rules,
            "reset-auto-data": self._reset_auto_data,
            "save-frontend-settings": self._save_frontend_settings,
            "save-frontend-rules": self._save_frontend_rules,
            "get-frontend-asset-audit": self._get_asset_audit,
            "toggle-rule": self._toggle_rule,
            "toggle-frontend-rule": self._toggle_frontend_rule,
            "reset-overrides": self._reset_overrides,
        }

    @property
    def aggregator(self) -> SampleAggregator:
        return self._aggregator

    @property
    def actions(self) -> List[str]:
        return sorted(self._actions)

    # ------------------------------------------------------------------
    def handle(self, action: str, fields: Mapping[str, Any]) -> Reply:
        """Run ``action`` and return ``(status, envelope)``."""

        if self._nonce is not None and fields.get("nonce") != self._nonce:
            logger.warning("rejected %s: bad nonce", action)
            return failure("Security check failed", 403)
        method = self._actions.get(action)
        if method is None:
            return failure(f"Unknown action: {action}", 400)
        with self._lock:
            try:
                data = method(fields)
            except ValidationError as exc:
                logger.info("rejected %s: %s", action, exc)
                return failure(str(exc), 400)
            except StoreError as exc:
                logger.error("store failure during %s: %s", action, exc)
                return failure(str(exc), 500)
            except LoadWardenError as exc:
                logger.error("failure during %s: %s", action, exc)
                return failure(str(exc), 500)
        logger.debug("handled %s", action)
        return success(data)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """Adapter usable as an ``httpx.MockTransport`` handler."""

        if request.method != "POST":
            status, payload = failure("Method not allowed", 405)
            return httpx.Response(status, json=payload)
        form = {key: values[-1] for key, values in parse_qs(request.content.decode("utf-8")).items()}
        status, payload = self.handle(str(form.pop("action", "")), form)
        return httpx.Response(status, json=payload)

    # ------------------------------------------------------------------
    # Helpers
    def _snapshot(self) -> RuleSnapshot:
        return load_snapshot(self._store)

    def _editor(self, snapshot: RuleSnapshot) -> RuleEditor:
        return RuleEditor(snapshot, self._plugins, self._screens)

    def _protected(self) -> set:
        return {plugin.id for plugin in self._plugins if plugin.protected}

    @staticmethod
    def _json_field(fields: Mapping[str, Any], name: str, default: Any = None) -> Any:
        value = fields.get(name, default)
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"field {name!r} is not valid JSON") from exc
        return value

    @staticmethod
    def _required(fields: Mapping[str, Any], name: str) -> str:
        value = str(fields.get(name, "") or "").strip()
        if not value:
            raise ValidationError(f"missing field: {name}")
        if name == "plugin" and ".." in value:
            raise ValidationError("Invalid data")
        return value

    def _all_plugins_state(
        self, snapshot: RuleSnapshot, context: str, override: Optional[Tuple[str, int]] = None
    ) -> List[Dict[str, Any]]:
        resolver = StateResolver(snapshot, self._plugins, self._screens)
        request = RequestContext(context_id=context, override=override)
        override_rules = snapshot.overrides.get(f"{override[0]}:{override[1]}", {}) if override else {}
        entries = []
        for plugin in self._plugins:
            effective = resolver.resolve(plugin.id, request)
            entries.append(
                {
                    "file": plugin.id,
                    "name": plugin.display_name,
                    "state": effective.state.value,
                    "source": effective.source.value if effective.source else None,
                    "protected": plugin.protected,
                    "overrideState": override_rules.get(plugin.id, RuleState.DEFAULT).value,
                }
            )
        return entries

    # ------------------------------------------------------------------
    # Actions
    def _save_admin_theme(self, fields: Mapping[str, Any]) -> Dict[str, str]:
        theme = self._required(fields, "theme")
        if theme not in THEMES:
            raise ValidationError(f"Invalid theme: {theme}")
        self._store.replace(ADMIN_THEME, theme)
        return {"message": "Theme saved", "theme": theme}

    def _save_screen_rules(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        snapshot = self._snapshot()
        rules = parse_screen_rules(self._json_field(fields, "rules", {}) or {})
        protected = self._protected()
        snapshot.screens = {
            screen: {plugin: state for plugin, state in entries.items() if plugin not in protected}
            for screen, entries in rules.items()
        }
        snapshot.screens = {screen: entries for screen, entries in snapshot.screens.items() if entries}
        save_snapshot(self._store, snapshot, SCREEN_RULES)
        return {"message": "Rules saved", "screen_rules": snapshot.screens_payload()}

    def _save_request_kind_rules(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        snapshot = self._snapshot()
        snapshot.request_kinds = parse_request_kind_rules(self._json_field(fields, "rules", {}) or {})
        protected = self._protected()
        for rule_set in snapshot.request_kinds.values():
            rule_set.active = [plugin for plugin in rule_set.active if plugin not in protected]
        save_snapshot(self._store, snapshot, REQUEST_KIND_RULES)
        return {"message": "Request kind rules saved", "request_kind_rules": snapshot.request_kinds_payload()}

    def _get_performance(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return self._aggregator.report().to_dict()

    def _clear_performance(self, fields: Mapping[str, Any]) -> Dict[str, str]:
        target = str(fields.get("target") or "all")
        if target != "all" and target not in REQUEST_KINDS and target != SCREEN_KIND:
            raise ValidationError(f"Invalid target: {target}")
        self._aggregator.clear(target)
        return {"message": "Performance data cleared", "target": target}

    def _set_mode(self, fields: Mapping[str, Any]) -> Dict[str, str]:
        mode = self._required(fields, "mode")
        if mode not in OPERATING_MODES:
            raise ValidationError(f"Invalid mode: {mode}")
        self._store.replace(OPERATING_MODE, mode)
        return {"message": "Mode saved", "mode": mode}

    def _get_auto_suggestions(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        report = self._engine.suggest(self._aggregator.report())
        return {"suggestions": report.to_dict(), "mode": self._store.read(OPERATING_MODE) or "manual"}

    def _apply_auto_rules(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        items = self._json_field(fields, "suggestions", [])
        if not isinstance(items, list) or not items:
            raise ValidationError("No suggestions to apply")
        if not all(isinstance(item, Mapping) for item in items):
            raise ValidationError("suggestions must be objects")
        # The whole batch is applied to a draft; any invalid item rejects it.
        suggestions = [Suggestion.from_payload(item) for item in items]
        snapshot = self._snapshot()
        apply_suggestions(self._editor(snapshot), suggestions)
        save_snapshot(self._store, snapshot, SCREEN_RULES, REQUEST_KIND_RULES)
        applied = [suggestion.to_payload() for suggestion in suggestions]
        return {
            "message": f"Applied {len(applied)} rule(s)",
            "applied": applied,
            **snapshot.to_documents(),
        }

    def _reset_auto_data(self, fields: Mapping[str, Any]) -> Dict[str, str]:
        self._aggregator.clear("all")
        self._store.replace(SCREEN_RULES, None)
        self._store.replace(REQUEST_KIND_RULES, None)
        return {"message": "Sampling data and rules reset"}

    def _save_frontend_settings(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        settings = FrontendSettings.from_payload(fields)
        self._store.replace(FRONTEND_SETTINGS, settings.to_payload())
        return {"message": "Settings saved", "settings": settings.to_payload()}

    def _save_frontend_rules(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        snapshot = self._snapshot()
        snapshot.contexts = parse_context_rules(self._json_field(fields, "rules", {}) or {})
        protected = self._protected()
        for rule_set in snapshot.contexts.values():
            rule_set.active = [plugin for plugin in rule_set.active if plugin not in protected]
        save_snapshot(self._store, snapshot, FRONTEND_RULES)
        return {"message": "Frontend rules saved", "frontend_rules": snapshot.contexts_payload()}

    def _get_asset_audit(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        context = fields.get("context") or None
        return self._audit.report(context)

    def _toggle_rule(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        screen_id = self._required(fields, "screen_id")
        plugin = self._required(fields, "plugin")
        state = RuleState.parse(self._required(fields, "state"))
        key = ScopeKey.global_admin() if screen_id == GLOBAL_ADMIN_KEY else ScopeKey.screen(screen_id)
        snapshot = self._snapshot()
        self._editor(snapshot).set_state(key, plugin, state)
        save_snapshot(self._store, snapshot, SCREEN_RULES)
        return {
            "screen_id": screen_id,
            "screen_rules": snapshot.screens_payload().get(screen_id, {}),
        }

    def _toggle_frontend_rule(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        context = self._required(fields, "context")
        plugin = self._required(fields, "plugin")
        rule_action = self._required(fields, "rule_action")
        scope = str(fields.get("scope") or "context")
        if rule_action not in RULE_ACTIONS:
            raise ValidationError(f"Invalid action: {rule_action}")
        state = RULE_ACTIONS[rule_action]
        snapshot = self._snapshot()
        editor = self._editor(snapshot)

        if scope == "override":
            key = ScopeKey.override(str(fields.get("override_type", "")), fields.get("override_id"))
            editor.set_state(key, plugin, state)
            save_snapshot(self._store, snapshot, OVERRIDES)
            override = key.override_target
            return {
                "context": context,
                "scope": scope,
                "mode": snapshot.effective_mode(ScopeKey.context(context)).value,
                "overrides": snapshot.override_payload(key.key),
                "allPlugins": self._all_plugins_state(snapshot, context, override),
            }
        if scope not in ("context", "global"):
            raise UnknownScopeError(f"Invalid scope: {scope}")

        key = ScopeKey.global_context() if scope == "global" else ScopeKey.context(context)
        mode = snapshot.effective_mode(key)
        if mode is Mode.PASSTHROUGH and state is RuleState.DISABLED:
            editor.switch_mode(key, Mode.BLACKLIST)
            mode = Mode.BLACKLIST
        if state is RuleState.DEFAULT or mode is Mode.PASSTHROUGH or state is not mode.active_state:
            editor.set_state(key, plugin, RuleState.DEFAULT)
        else:
            editor.set_state(key, plugin, state)
        save_snapshot(self._store, snapshot, FRONTEND_RULES)
        return {
            "context": context,
            "scope": scope,
            "ruleKey": key.key if scope == "context" else GLOBAL_CONTEXT_KEY,
            "mode": snapshot.effective_mode(ScopeKey.context(context)).value,
            "overrides": {},
            "allPlugins": self._all_plugins_state(snapshot, context),
        }

    def _reset_overrides(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        context = str(fields.get("context") or "")
        key = ScopeKey.override(str(fields.get("override_type", "")), fields.get("override_id"))
        snapshot = self._snapshot()
        self._editor(snapshot).reset_scope(key)
        save_snapshot(self._store, snapshot, OVERRIDES)
        return {
            "context": context,
            "allPlugins": self._all_plugins_state(snapshot, context) if context else [],
        }


__all__ = ["ActionHandler", "Reply", "failure", "success"]
