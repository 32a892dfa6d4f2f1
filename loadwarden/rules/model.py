"""Rule data model: scopes, states, modes and the rule snapshot.

A :class:`RuleSnapshot` mirrors the documents kept by the rule store:

* ``screens``: ``screen_id -> {plugin: state}`` four-state rules.  Besides
  real screen ids the document carries ``_group_<name>`` group sets and the
  admin-wide ``_global_admin`` set.
* ``request_kinds``: ``kind -> BinaryRuleSet`` for ajax/rest/cron/cli.
* ``contexts``: ``context_id -> BinaryRuleSet`` for public pages, plus the
  context-wide ``_global`` set.
* ``overrides``: ``"<type>:<id>" -> {plugin: enabled|disabled}`` per page.

Binary sets store an *active* flag per plugin; the polarity of that flag comes
from the set's :class:`Mode` so switching between blacklist and whitelist
reinterprets the same members instead of rewriting them.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from loadwarden.errors import UnknownScopeError, ValidationError


class RuleState(str, Enum):
    DEFAULT = "default"
    ENABLED = "enabled"
    DISABLED = "disabled"
    DEFER = "defer"

    @classmethod
    def parse(cls, value: Any) -> "RuleState":
        if isinstance(value, RuleState):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"invalid rule state: {value!r}") from exc


FOUR_STATE_CYCLE: Mapping[RuleState, RuleState] = {
    RuleState.DEFAULT: RuleState.ENABLED,
    RuleState.ENABLED: RuleState.DISABLED,
    RuleState.DISABLED: RuleState.DEFER,
    RuleState.DEFER: RuleState.DEFAULT,
}


class Scope(str, Enum):
    GLOBAL = "global"
    REQUEST_KIND = "request-kind"
    CONTEXT = "context"
    SCREEN = "screen"
    OVERRIDE = "override"


class Mode(str, Enum):
    PASSTHROUGH = "passthrough"
    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"

    @property
    def active_state(self) -> RuleState:
        """State an *active* binary rule stands for under this mode."""

        if self is Mode.BLACKLIST:
            return RuleState.DISABLED
        if self is Mode.WHITELIST:
            return RuleState.ENABLED
        return RuleState.DEFAULT

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        if isinstance(value, Mode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"invalid mode: {value!r}") from exc


REQUEST_KINDS: Tuple[str, ...] = ("ajax", "rest", "cron", "cli")
OVERRIDE_TYPES: Tuple[str, ...] = ("post", "term")
GLOBAL_ADMIN_KEY = "_global_admin"
GLOBAL_CONTEXT_KEY = "_global"
GROUP_PREFIX = "_group_"
WILDCARD = "*"

UNIT_SCREENS = "screens"
UNIT_REQUEST_KINDS = "request-kinds"


@dataclass(frozen=True, slots=True)
class Plugin:
    """An optional component the host can load."""

    id: str
    name: str = ""
    protected: bool = False
    requires: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def slug(self) -> str:
        head, _, tail = self.id.partition("/")
        if tail:
            return head.lower()
        return head[:-4].lower() if head.endswith(".php") else head.lower()


@dataclass(frozen=True, slots=True)
class ScreenDefinition:
    """Known admin screen with its optional group."""

    id: str
    label: str = ""
    group: Optional[str] = None
    always_all: bool = False

    @property
    def group_key(self) -> Optional["ScopeKey"]:
        return ScopeKey.group(self.group) if self.group else None


@dataclass(frozen=True, slots=True)
class ScopeKey:
    """Identifies one scope instance, e.g. ``screen:edit-post``."""

    scope: Scope
    key: str

    @classmethod
    def screen(cls, screen_id: str) -> "ScopeKey":
        return cls(Scope.SCREEN, screen_id)

    @classmethod
    def group(cls, group: str) -> "ScopeKey":
        return cls(Scope.SCREEN, f"{GROUP_PREFIX}{group}")

    @classmethod
    def global_admin(cls) -> "ScopeKey":
        return cls(Scope.GLOBAL, GLOBAL_ADMIN_KEY)

    @classmethod
    def global_context(cls) -> "ScopeKey":
        return cls(Scope.GLOBAL, GLOBAL_CONTEXT_KEY)

    @classmethod
    def request_kind(cls, kind: str) -> "ScopeKey":
        if kind not in REQUEST_KINDS:
            raise UnknownScopeError(f"unknown request kind: {kind!r}")
        return cls(Scope.REQUEST_KIND, kind)

    @classmethod
    def context(cls, context_id: str) -> "ScopeKey":
        if context_id == GLOBAL_CONTEXT_KEY:
            return cls.global_context()
        return cls(Scope.CONTEXT, context_id)

    @classmethod
    def override(cls, override_type: str, override_id: Any) -> "ScopeKey":
        if override_type not in OVERRIDE_TYPES:
            raise UnknownScopeError(f"unknown override type: {override_type!r}")
        try:
            numeric = int(override_id)
        except (TypeError, ValueError) as exc:
            raise UnknownScopeError(f"invalid override id: {override_id!r}") from exc
        if numeric <= 0:
            raise UnknownScopeError(f"invalid override id: {override_id!r}")
        return cls(Scope.OVERRIDE, f"{override_type}:{numeric}")

    @classmethod
    def parse(cls, text: str) -> "ScopeKey":
        """Parse the ``scope:key`` notation used by the CLI and logs."""

        scope_name, sep, rest = text.partition(":")
        if not sep or not rest:
            raise UnknownScopeError(f"invalid scope key: {text!r}")
        try:
            scope = Scope(scope_name)
        except ValueError as exc:
            raise UnknownScopeError(f"invalid scope: {scope_name!r}") from exc
        if scope is Scope.OVERRIDE:
            override_type, _, override_id = rest.partition(":")
            return cls.override(override_type, override_id)
        if scope is Scope.GLOBAL and rest not in (GLOBAL_ADMIN_KEY, GLOBAL_CONTEXT_KEY):
            raise UnknownScopeError(f"invalid global key: {rest!r}")
        if scope is Scope.REQUEST_KIND:
            return cls.request_kind(rest)
        return cls(scope, rest)

    @property
    def is_four_state(self) -> bool:
        return self.scope is Scope.SCREEN or self.key == GLOBAL_ADMIN_KEY

    @property
    def unit(self) -> str:
        """Name of the persisted document this instance belongs to."""

        if self.is_four_state:
            return UNIT_SCREENS
        if self.scope is Scope.REQUEST_KIND:
            return UNIT_REQUEST_KINDS
        if self.scope is Scope.OVERRIDE:
            return f"override:{self.key}"
        return f"context:{self.key}"

    @property
    def override_target(self) -> Tuple[str, int]:
        if self.scope is not Scope.OVERRIDE:
            raise UnknownScopeError(f"{self} is not an override scope")
        override_type, _, override_id = self.key.partition(":")
        return override_type, int(override_id)

    def __str__(self) -> str:
        return f"{self.scope.value}:{self.key}"


@dataclass(slots=True)
class BinaryRuleSet:
    """Mode plus active members for a request-kind or context instance.

    ``mode`` is ``None`` for context entries that inherit the mode of the
    ``_global`` context set.
    """

    mode: Optional[Mode] = Mode.PASSTHROUGH
    active: List[str] = field(default_factory=list)
    detect_by_action: bool = False
    detect_by_namespace: bool = False
    known_patterns: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def is_active(self, plugin: str) -> bool:
        return plugin in self.active

    def activate(self, plugin: str) -> None:
        if plugin not in self.active:
            self.active.append(plugin)

    def deactivate(self, plugin: str) -> None:
        if plugin in self.active:
            self.active.remove(plugin)

    def copy(self) -> "BinaryRuleSet":
        return BinaryRuleSet(
            mode=self.mode,
            active=list(self.active),
            detect_by_action=self.detect_by_action,
            detect_by_namespace=self.detect_by_namespace,
            known_patterns=dict(self.known_patterns),
        )

    def to_payload(self, enabled_key: str, effective_mode: Optional[Mode] = None) -> Dict[str, Any]:
        mode = self.mode or effective_mode or Mode.PASSTHROUGH
        payload: Dict[str, Any] = {
            "disabled_plugins": list(self.active) if mode is Mode.BLACKLIST else [],
            enabled_key: list(self.active) if mode is Mode.WHITELIST else [],
        }
        if self.mode is not None:
            payload["_mode"] = self.mode.value
        if self.detect_by_action:
            payload["_detect_by_action"] = True
        if self.detect_by_namespace:
            payload["_detect_by_namespace"] = True
        if self.known_patterns:
            payload["known_patterns"] = {
                pattern: list(plugins) for pattern, plugins in self.known_patterns.items()
            }
        return payload

    @classmethod
    def from_payload(
        cls,
        data: Mapping[str, Any],
        enabled_key: str,
        fallback_mode: Optional[Mode] = None,
        *,
        allow_inherit: bool = False,
    ) -> "BinaryRuleSet":
        if not isinstance(data, Mapping):
            raise ValidationError("binary rule set must be a mapping")
        raw_mode = data.get("_mode")
        if raw_mode is None:
            mode: Optional[Mode] = None if allow_inherit else Mode.PASSTHROUGH
        else:
            mode = Mode.parse(raw_mode)
        polarity = mode or fallback_mode or Mode.PASSTHROUGH
        if polarity is Mode.BLACKLIST:
            members = data.get("disabled_plugins") or []
        elif polarity is Mode.WHITELIST:
            members = data.get(enabled_key) or []
        else:
            members = []
        active: List[str] = []
        for plugin in members:
            plugin = str(plugin).strip()
            if plugin and plugin not in active:
                active.append(plugin)
        patterns = data.get("known_patterns") or {}
        return cls(
            mode=mode,
            active=active,
            detect_by_action=bool(data.get("_detect_by_action", False)),
            detect_by_namespace=bool(data.get("_detect_by_namespace", False)),
            known_patterns={str(k): tuple(str(p) for p in v) for k, v in dict(patterns).items()},
        )


@dataclass(slots=True)
class FrontendSettings:
    """Feature toggles for public-page filtering."""

    enabled: bool = True
    admin_bypass: bool = False
    write_protection: bool = False
    sampling_enabled: bool = True
    asset_audit: bool = False

    def to_payload(self) -> Dict[str, bool]:
        return {
            "enabled": self.enabled,
            "admin_bypass": self.admin_bypass,
            "write_protection": self.write_protection,
            "sampling_enabled": self.sampling_enabled,
            "asset_audit": self.asset_audit,
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "FrontendSettings":
        defaults = cls()
        return cls(
            enabled=_as_bool(data.get("enabled", defaults.enabled)),
            admin_bypass=_as_bool(data.get("admin_bypass", defaults.admin_bypass)),
            write_protection=_as_bool(data.get("write_protection", defaults.write_protection)),
            sampling_enabled=_as_bool(data.get("sampling_enabled", defaults.sampling_enabled)),
            asset_audit=_as_bool(data.get("asset_audit", defaults.asset_audit)),
        )


def default_request_kind_rules() -> Dict[str, BinaryRuleSet]:
    """Request-kind configuration used until an operator saves their own."""

    woocommerce = ("woocommerce/woocommerce.php",)
    return {
        "ajax": BinaryRuleSet(
            known_patterns={"heartbeat": (WILDCARD,), "woocommerce_*": woocommerce},
        ),
        "rest": BinaryRuleSet(
            known_patterns={"wc/v3": woocommerce, "wp/v2": (WILDCARD,)},
        ),
        "cron": BinaryRuleSet(),
        "cli": BinaryRuleSet(),
    }


@dataclass(slots=True)
class RuleSnapshot:
    """Complete rule state at one point in time."""

    screens: Dict[str, Dict[str, RuleState]] = field(default_factory=dict)
    request_kinds: Dict[str, BinaryRuleSet] = field(default_factory=default_request_kind_rules)
    contexts: Dict[str, BinaryRuleSet] = field(default_factory=dict)
    overrides: Dict[str, Dict[str, RuleState]] = field(default_factory=dict)
    frontend: FrontendSettings = field(default_factory=FrontendSettings)
    operating_mode: str = "manual"

    def copy(self) -> "RuleSnapshot":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Lookups
    def four_state_rules(self, key: ScopeKey) -> Mapping[str, RuleState]:
        return self.screens.get(key.key, {})

    def binary_set(self, key: ScopeKey) -> Optional[BinaryRuleSet]:
        if key.scope is Scope.REQUEST_KIND:
            return self.request_kinds.get(key.key)
        if key.scope is Scope.CONTEXT or key.key == GLOBAL_CONTEXT_KEY:
            return self.contexts.get(key.key)
        return None

    def effective_mode(self, key: ScopeKey) -> Mode:
        """Mode used to interpret the binary instance (or override parent)."""

        rule_set = self.binary_set(key)
        if rule_set is not None and rule_set.mode is not None:
            return rule_set.mode
        if key.scope is Scope.CONTEXT:
            fallback = self.contexts.get(GLOBAL_CONTEXT_KEY)
            if fallback is not None and fallback.mode is not None:
                return fallback.mode
        return Mode.PASSTHROUGH

    def state_of(self, key: ScopeKey, plugin: str) -> RuleState:
        """Own stored state of ``plugin`` at ``key`` (no inheritance)."""

        if key.is_four_state:
            return self.four_state_rules(key).get(plugin, RuleState.DEFAULT)
        if key.scope is Scope.OVERRIDE:
            return self.overrides.get(key.key, {}).get(plugin, RuleState.DEFAULT)
        rule_set = self.binary_set(key)
        if rule_set is None or not rule_set.is_active(plugin):
            return RuleState.DEFAULT
        return self.effective_mode(key).active_state

    def iter_tags(self) -> Iterator[Tuple[ScopeKey, str, RuleState]]:
        """Yield every non-default ``(scope instance, plugin, state)`` tag."""

        for screen_key, rules in self.screens.items():
            key = ScopeKey.global_admin() if screen_key == GLOBAL_ADMIN_KEY else ScopeKey.screen(screen_key)
            for plugin, state in rules.items():
                if state is not RuleState.DEFAULT:
                    yield key, plugin, state
        for kind in self.request_kinds:
            key = ScopeKey.request_kind(kind)
            for plugin in self.request_kinds[kind].active:
                yield key, plugin, self.state_of(key, plugin)
        for context_id in self.contexts:
            key = ScopeKey.context(context_id)
            for plugin in self.contexts[context_id].active:
                yield key, plugin, self.state_of(key, plugin)
        for override_key, rules in self.overrides.items():
            key = ScopeKey(Scope.OVERRIDE, override_key)
            for plugin, state in rules.items():
                yield key, plugin, state

    # ------------------------------------------------------------------
    # Persistence helpers
    def screens_payload(self) -> Dict[str, Dict[str, str]]:
        return {
            screen: {plugin: state.value for plugin, state in rules.items() if state is not RuleState.DEFAULT}
            for screen, rules in self.screens.items()
            if rules
        }

    def request_kinds_payload(self) -> Dict[str, Dict[str, Any]]:
        return {kind: rules.to_payload("default_plugins") for kind, rules in self.request_kinds.items()}

    def contexts_payload(self) -> Dict[str, Dict[str, Any]]:
        payload: Dict[str, Dict[str, Any]] = {}
        for context_id, rules in self.contexts.items():
            payload[context_id] = rules.to_payload(
                "enabled_plugins", self.effective_mode(ScopeKey.context(context_id))
            )
        return payload

    def override_payload(self, override_key: str) -> Dict[str, List[str]]:
        rules = self.overrides.get(override_key, {})
        return {
            "disabled_plugins": [p for p, s in rules.items() if s is RuleState.DISABLED],
            "enabled_plugins": [p for p, s in rules.items() if s is RuleState.ENABLED],
        }

    def overrides_payload(self) -> Dict[str, Dict[str, List[str]]]:
        return {key: self.override_payload(key) for key, rules in self.overrides.items() if rules}

    def to_documents(self) -> Dict[str, Any]:
        return {
            "screen_rules": self.screens_payload(),
            "request_kind_rules": self.request_kinds_payload(),
            "frontend_rules": self.contexts_payload(),
            "overrides": self.overrides_payload(),
            "frontend_settings": self.frontend.to_payload(),
            "mode": self.operating_mode,
        }

    @classmethod
    def from_documents(cls, documents: Mapping[str, Any]) -> "RuleSnapshot":
        snapshot = cls()
        if documents.get("screen_rules") is not None:
            snapshot.screens = parse_screen_rules(documents["screen_rules"])
        if documents.get("request_kind_rules") is not None:
            snapshot.request_kinds = parse_request_kind_rules(documents["request_kind_rules"])
        if documents.get("frontend_rules") is not None:
            snapshot.contexts = parse_context_rules(documents["frontend_rules"])
        for override_key, data in dict(documents.get("overrides") or {}).items():
            snapshot.overrides[str(override_key)] = parse_override_rules(data)
        if documents.get("frontend_settings") is not None:
            snapshot.frontend = FrontendSettings.from_payload(documents["frontend_settings"])
        if documents.get("mode"):
            snapshot.operating_mode = str(documents["mode"])
        return snapshot

    def copy_unit_from(self, other: "RuleSnapshot", unit: str) -> None:
        """Replace one persisted document of ``self`` with ``other``'s copy."""

        if unit == UNIT_SCREENS:
            self.screens = copy.deepcopy(other.screens)
        elif unit == UNIT_REQUEST_KINDS:
            self.request_kinds = {kind: rules.copy() for kind, rules in other.request_kinds.items()}
        elif unit.startswith("context:"):
            context_id = unit[len("context:"):]
            if context_id in other.contexts:
                self.contexts[context_id] = other.contexts[context_id].copy()
            else:
                self.contexts.pop(context_id, None)
        elif unit.startswith("override:"):
            override_key = unit[len("override:"):]
            if override_key in other.overrides:
                self.overrides[override_key] = dict(other.overrides[override_key])
            else:
                self.overrides.pop(override_key, None)
        else:
            raise UnknownScopeError(f"unknown rule document: {unit!r}")


def parse_screen_rules(data: Mapping[str, Any]) -> Dict[str, Dict[str, RuleState]]:
    if not isinstance(data, Mapping):
        raise ValidationError("screen rules must be a mapping")
    parsed: Dict[str, Dict[str, RuleState]] = {}
    for screen_id, rules in data.items():
        if rules is None:
            continue
        if not isinstance(rules, Mapping):
            raise ValidationError(f"rules for screen {screen_id!r} must be a mapping")
        screen_rules: Dict[str, RuleState] = {}
        for plugin, state in rules.items():
            plugin = str(plugin).strip()
            if not plugin or ".." in plugin:
                continue
            parsed_state = RuleState.parse(state)
            if parsed_state is not RuleState.DEFAULT:
                screen_rules[plugin] = parsed_state
        if screen_rules:
            parsed[str(screen_id)] = screen_rules
    return parsed


def parse_request_kind_rules(data: Mapping[str, Any]) -> Dict[str, BinaryRuleSet]:
    if not isinstance(data, Mapping):
        raise ValidationError("request-kind rules must be a mapping")
    defaults = default_request_kind_rules()
    parsed: Dict[str, BinaryRuleSet] = {}
    for kind in REQUEST_KINDS:
        if kind not in data:
            parsed[kind] = defaults[kind]
            continue
        rule_set = BinaryRuleSet.from_payload(data[kind], "default_plugins")
        if not rule_set.known_patterns:
            rule_set.known_patterns = dict(defaults[kind].known_patterns)
        parsed[kind] = rule_set
    return parsed


def parse_context_rules(data: Mapping[str, Any]) -> Dict[str, BinaryRuleSet]:
    if not isinstance(data, Mapping):
        raise ValidationError("context rules must be a mapping")
    parsed: Dict[str, BinaryRuleSet] = {}
    global_data = data.get(GLOBAL_CONTEXT_KEY)
    fallback: Optional[Mode] = None
    if isinstance(global_data, Mapping):
        parsed[GLOBAL_CONTEXT_KEY] = BinaryRuleSet.from_payload(global_data, "enabled_plugins")
        fallback = parsed[GLOBAL_CONTEXT_KEY].mode
    for context_id, rules in data.items():
        if context_id == GLOBAL_CONTEXT_KEY:
            continue
        parsed[str(context_id)] = BinaryRuleSet.from_payload(
            rules, "enabled_plugins", fallback, allow_inherit=True
        )
    return parsed


def parse_override_rules(data: Mapping[str, Any]) -> Dict[str, RuleState]:
    if not isinstance(data, Mapping):
        raise ValidationError("override rules must be a mapping")
    rules: Dict[str, RuleState] = {}
    for plugin in data.get("disabled_plugins") or []:
        rules[str(plugin)] = RuleState.DISABLED
    for plugin in data.get("enabled_plugins") or []:
        rules[str(plugin)] = RuleState.ENABLED
    return rules


def plugin_index(plugins: Iterable[Plugin]) -> Dict[str, Plugin]:
    return {plugin.id: plugin for plugin in plugins}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


__all__ = [
    "BinaryRuleSet",
    "FOUR_STATE_CYCLE",
    "FrontendSettings",
    "GLOBAL_ADMIN_KEY",
    "GLOBAL_CONTEXT_KEY",
    "GROUP_PREFIX",
    "Mode",
    "OVERRIDE_TYPES",
    "Plugin",
    "REQUEST_KINDS",
    "RuleSnapshot",
    "RuleState",
    "Scope",
    "ScreenDefinition",
    "ScopeKey",
    "UNIT_REQUEST_KINDS",
    "UNIT_SCREENS",
    "WILDCARD",
    "default_request_kind_rules",
    "parse_context_rules",
    "parse_override_rules",
    "parse_request_kind_rules",
    "parse_screen_rules",
    "plugin_index",
]
