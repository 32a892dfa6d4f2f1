"""Optimistic synchronisation of rule edits with the rule store.

Edits land in the local snapshot at once.  Screen rules are saved as one
debounced document; request-kind rules are saved as a whole document right
away; context and override tags are sent one plugin at a time.  Each write is
tagged with the generation of what it carries, so a completion can tell
whether a newer local edit has superseded it:

* on success the sent state becomes the confirmed state, and the local
  snapshot is left alone;
* on failure the local state reverts to the confirmed one, unless a newer
  edit is already on its way.

Bulk operations (mode switches, resets, applying suggestions) are never
applied optimistically: the local snapshot changes only after the store
accepts them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

from loadwarden.errors import LoadWardenError, StoreError, ValidationError
from loadwarden.notifiers.notices import NoticeBoard
from loadwarden.rules.editor import Edit, RuleEditor, ScopeSummary
from loadwarden.rules.model import (
    GLOBAL_CONTEXT_KEY,
    UNIT_REQUEST_KINDS,
    UNIT_SCREENS,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    Scope,
    ScopeKey,
    ScreenDefinition,
)
from loadwarden.suggestions.engine import Suggestion, apply_suggestions
from loadwarden.sync.transport import Transport

if TYPE_CHECKING:
    from loadwarden.services.scheduler import Scheduler

logger = logging.getLogger(__name__)

PENDING = "pending"
SENT = "sent"
CONFIRMED = "confirmed"
FAILED = "failed"
INVALID = "invalid"

_RULE_ACTIONS = {RuleState.DISABLED: "block", RuleState.ENABLED: "allow", RuleState.DEFAULT: "default"}

Listener = Callable[[RuleSnapshot], None]


@dataclass(frozen=True, slots=True)
class EditOutcome:
    """Result of an edit or bulk operation as known when the call returns."""

    status: str
    edits: Tuple[Edit, ...] = ()
    error: Optional[LoadWardenError] = None

    @property
    def edit(self) -> Optional[Edit]:
        return self.edits[0] if self.edits else None

    @property
    def ok(self) -> bool:
        return self.status in (PENDING, SENT, CONFIRMED)


@dataclass(slots=True)
class _Flight:
    status: str = SENT
    error: Optional[StoreError] = None


@dataclass(slots=True)
class _ScreenDebounce:
    timer: Optional[int] = None
    edits: List[Edit] = field(default_factory=list)


class SyncClient:
    """Keeps a local :class:`RuleSnapshot` in step with the rule store."""

    def __init__(
        self,
        transport: Transport,
        scheduler: Scheduler,
        snapshot: Optional[RuleSnapshot] = None,
        *,
        plugins: Iterable[Plugin] = (),
        screens: Iterable[ScreenDefinition] = (),
        notices: Optional[NoticeBoard] = None,
        debounce: float = 1.0,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._local = snapshot.copy() if snapshot is not None else RuleSnapshot()
        self._confirmed = self._local.copy()
        self._plugins = list(plugins)
        self._screens = list(screens)
        self._notices = notices or NoticeBoard()
        self._debounce = debounce
        self._generation: Dict[str, int] = {}
        self._screen_save = _ScreenDebounce()
        self._listeners: List[Listener] = []
        self._in_flight = 0

    # ------------------------------------------------------------------
    # State
    @property
    def snapshot(self) -> RuleSnapshot:
        """The optimistic local snapshot. Treat as read-only."""

        return self._local

    @property
    def confirmed(self) -> RuleSnapshot:
        return self._confirmed

    @property
    def notices(self) -> NoticeBoard:
        return self._notices

    @property
    def has_pending_writes(self) -> bool:
        return self._screen_save.timer is not None or self._in_flight > 0

    def editor(self) -> RuleEditor:
        return RuleEditor(self._local, self._plugins, self._screens)

    def summary(self, keys: Optional[Iterable[ScopeKey]] = None) -> ScopeSummary:
        return self.editor().summary(keys)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def generation(self, scope_key: ScopeKey, plugin: Optional[str] = None) -> int:
        return self._generation.get(self._document_id(scope_key, plugin), 0)

    # ------------------------------------------------------------------
    # Single edits
    def apply_edit(
        self, scope_key: ScopeKey, plugin: str, new_state: RuleState, parent_context: Optional[str] = None
    ) -> EditOutcome:
        return self._edit(lambda editor: editor.set_state(scope_key, plugin, new_state), parent_context)

    def cycle(self, scope_key: ScopeKey, plugin: str) -> EditOutcome:
        return self._edit(lambda editor: editor.cycle(scope_key, plugin), None)

    def toggle(self, scope_key: ScopeKey, plugin: str, parent_context: Optional[str] = None) -> EditOutcome:
        return self._edit(lambda editor: editor.toggle(scope_key, plugin, parent_context), parent_context)

    def flush(self) -> Optional[EditOutcome]:
        """Send a pending debounced screen save now."""

        if self._screen_save.timer is None:
            return None
        self._scheduler.cancel(self._screen_save.timer)
        return self._send_screens()

    # ------------------------------------------------------------------
    # Bulk operations
    def switch_mode(self, scope_key: ScopeKey, mode: Mode) -> EditOutcome:
        return self._bulk(lambda editor: [editor.switch_mode(scope_key, mode)], scope_key)

    def reset_scope(self, scope_key: ScopeKey, parent_context: Optional[str] = None) -> EditOutcome:
        if scope_key.scope is Scope.OVERRIDE:
            override_type, override_id = scope_key.override_target
            return self.reset_overrides(parent_context or "", override_type, override_id)
        return self._bulk(lambda editor: editor.reset_scope(scope_key), scope_key)

    def reset_overrides(self, context: str, override_type: str, override_id: int) -> EditOutcome:
        key = ScopeKey.override(override_type, override_id)
        payload = {"context": context, "override_type": override_type, "override_id": str(override_id)}
        return self._bulk(lambda editor: editor.reset_scope(key), key, action="reset-overrides", payload=payload)

    def apply_suggestions(self, suggestions: Iterable[Suggestion]) -> EditOutcome:
        accepted = list(suggestions)
        if not accepted:
            return EditOutcome(INVALID, error=ValidationError("No suggestions to apply"))
        self.flush()
        draft = self._local.copy()
        editor = RuleEditor(draft, self._plugins, self._screens)
        try:
            edits = apply_suggestions(editor, accepted)
        except ValidationError as exc:
            logger.info("suggestions rejected: %s", exc)
            return EditOutcome(INVALID, error=exc)

        def _done(data: Any, error: Optional[StoreError]) -> None:
            if error is not None:
                self._notices.send([self._notices.format(error)])
                return
            result = draft
            if isinstance(data, dict) and "screen_rules" in data:
                # The store's documents are authoritative.
                result = RuleSnapshot.from_documents(
                    {
                        "screen_rules": data.get("screen_rules"),
                        "request_kind_rules": data.get("request_kind_rules"),
                    }
                )
            self._adopt(result, (UNIT_SCREENS, UNIT_REQUEST_KINDS))
            self._notices.success(f"Applied {len(accepted)} suggestion(s)")

        flight = self._send("apply-auto-rules", {"suggestions": [item.to_payload() for item in accepted]}, _done)
        return EditOutcome(flight.status, tuple(edits), flight.error)

    # ------------------------------------------------------------------
    # Internals
    def _edit(self, mutate: Callable[[RuleEditor], Edit], parent_context: Optional[str]) -> EditOutcome:
        try:
            edit = mutate(self.editor())
        except ValidationError as exc:
            logger.info("edit rejected: %s", exc)
            return EditOutcome(INVALID, error=exc)
        self._changed()
        key = edit.scope_key
        if key.unit == UNIT_SCREENS:
            self._bump(self._document_id(key, None))
            self._screen_save.edits.append(edit)
            self._scheduler.cancel(self._screen_save.timer)
            self._screen_save.timer = self._scheduler.call_later(self._debounce, self._on_debounce)
            return EditOutcome(PENDING, (edit,))
        if key.unit == UNIT_REQUEST_KINDS:
            doc = self._document_id(key, None)
            generation = self._bump(doc)
            sent = self._local.copy()
            flight = self._send(
                "save-request-kind-rules",
                {"rules": sent.request_kinds_payload()},
                lambda data, error: self._complete_document(UNIT_REQUEST_KINDS, doc, generation, sent, error, key),
            )
            return EditOutcome(flight.status, (edit,), flight.error)

        payload = self._frontend_payload(edit, parent_context)
        doc = self._document_id(key, edit.plugin)
        generation = self._bump(doc)
        sent = self._local.copy()
        flight = self._send(
            "toggle-frontend-rule",
            payload,
            lambda data, error: self._complete_plugin(key, edit.plugin, doc, generation, sent, error),
        )
        return EditOutcome(flight.status, (edit,), flight.error)

    def _on_debounce(self) -> None:
        self._screen_save.timer = None
        self._send_screens()

    def _send_screens(self) -> EditOutcome:
        self._screen_save.timer = None
        edits = tuple(self._screen_save.edits)
        self._screen_save.edits = []
        doc = UNIT_SCREENS
        generation = self._generation.get(doc, 0)
        sent = self._local.copy()
        flight = self._send(
            "save-screen-rules",
            {"rules": sent.screens_payload()},
            lambda data, error: self._complete_document(UNIT_SCREENS, doc, generation, sent, error, None),
        )
        return EditOutcome(flight.status, edits, flight.error)

    def _send(
        self,
        action: str,
        payload: Dict[str, Any],
        on_complete: Callable[[Any, Optional[StoreError]], None],
    ) -> _Flight:
        flight = _Flight()
        self._in_flight += 1

        def _callback(data: Any, error: Optional[StoreError]) -> None:
            self._in_flight -= 1
            flight.status = FAILED if error is not None else CONFIRMED
            flight.error = error
            on_complete(data, error)

        logger.debug("sending %s", action)
        self._transport.send(action, payload, _callback)
        return flight

    def _complete_document(
        self,
        unit: str,
        doc: str,
        generation: int,
        sent: RuleSnapshot,
        error: Optional[StoreError],
        scope_key: Optional[ScopeKey],
    ) -> None:
        if error is None:
            self._confirmed.copy_unit_from(sent, unit)
            return
        self._notices.send([self._notices.format(error, scope_key)])
        if self._generation.get(doc, 0) != generation:
            logger.info("%s write failed but a newer edit is pending; keeping local state", unit)
            return
        self._local.copy_unit_from(self._confirmed, unit)
        logger.info("%s reverted to confirmed state", unit)
        self._changed()

    def _complete_plugin(
        self,
        key: ScopeKey,
        plugin: str,
        doc: str,
        generation: int,
        sent: RuleSnapshot,
        error: Optional[StoreError],
    ) -> None:
        if error is None:
            _copy_plugin_state(sent, self._confirmed, key, plugin)
            return
        self._notices.send([self._notices.format(error, key)])
        if self._generation.get(doc, 0) != generation:
            return
        _copy_plugin_state(self._confirmed, self._local, key, plugin)
        logger.info("%s %s reverted to confirmed state", key, plugin)
        self._changed()

    def _bulk(
        self,
        mutate: Callable[[RuleEditor], List[Edit]],
        scope_key: ScopeKey,
        *,
        action: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EditOutcome:
        if scope_key.scope is Scope.OVERRIDE and (action is None or payload is None):
            raise ValidationError(f"{scope_key} needs an explicit store action")
        self.flush()
        draft = self._local.copy()
        try:
            edits = mutate(RuleEditor(draft, self._plugins, self._screens))
        except ValidationError as exc:
            logger.info("bulk operation rejected: %s", exc)
            return EditOutcome(INVALID, error=exc)

        units: Tuple[str, ...]
        if scope_key.unit == UNIT_SCREENS:
            action, payload, units = "save-screen-rules", {"rules": draft.screens_payload()}, (UNIT_SCREENS,)
        elif scope_key.unit == UNIT_REQUEST_KINDS:
            action = "save-request-kind-rules"
            payload, units = {"rules": draft.request_kinds_payload()}, (UNIT_REQUEST_KINDS,)
        elif scope_key.scope is Scope.OVERRIDE:
            units = (scope_key.unit,)
        else:
            action = "save-frontend-rules"
            payload = {"rules": draft.contexts_payload()}
            units = tuple(f"context:{context_id}" for context_id in set(draft.contexts) | set(self._local.contexts))

        def _done(data: Any, error: Optional[StoreError]) -> None:
            if error is not None:
                self._notices.send([self._notices.format(error, scope_key)])
                return
            self._adopt(draft, units)

        flight = self._send(action, payload, _done)
        return EditOutcome(flight.status, tuple(edits), flight.error)

    def _adopt(self, draft: RuleSnapshot, units: Iterable[str]) -> None:
        """Take ``units`` from a confirmed bulk result into both snapshots."""

        for unit in units:
            self._local.copy_unit_from(draft, unit)
            self._confirmed.copy_unit_from(draft, unit)
            for doc in list(self._generation):
                if doc.startswith(f"{unit}|"):
                    self._bump(doc)
            self._bump(unit)
        self._changed()

    def _bump(self, doc: str) -> int:
        self._generation[doc] = self._generation.get(doc, 0) + 1
        return self._generation[doc]

    @staticmethod
    def _document_id(key: ScopeKey, plugin: Optional[str]) -> str:
        if key.unit in (UNIT_SCREENS, UNIT_REQUEST_KINDS) or plugin is None:
            return key.unit
        return f"{key.unit}|{plugin}"

    @staticmethod
    def _frontend_payload(edit: Edit, parent_context: Optional[str]) -> Dict[str, str]:
        key = edit.scope_key
        if edit.plugin is None or not isinstance(edit.after, RuleState):
            raise ValidationError(f"{key} edit does not name a plugin state")
        payload = {"plugin": edit.plugin, "rule_action": _RULE_ACTIONS[edit.after]}
        if key.scope is Scope.OVERRIDE:
            override_type, override_id = key.override_target
            payload.update(
                context=parent_context or GLOBAL_CONTEXT_KEY,
                scope="override",
                override_type=override_type,
                override_id=str(override_id),
            )
        elif key.key == GLOBAL_CONTEXT_KEY:
            payload.update(context=parent_context or GLOBAL_CONTEXT_KEY, scope="global")
        else:
            payload.update(context=key.key, scope="context")
        return payload

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener(self._local)


def _copy_plugin_state(source: RuleSnapshot, target: RuleSnapshot, key: ScopeKey, plugin: str) -> None:
    """Copy one plugin's own state at ``key`` from ``source`` into ``target``."""

    if key.scope is Scope.OVERRIDE:
        state = source.overrides.get(key.key, {}).get(plugin)
        rules = target.overrides.setdefault(key.key, {})
        if state is None:
            rules.pop(plugin, None)
        else:
            rules[plugin] = state
        if not rules:
            target.overrides.pop(key.key, None)
        return
    source_set = source.binary_set(key)
    target_set = target.binary_set(key)
    active = source_set is not None and source_set.is_active(plugin)
    if target_set is None:
        if not active or source_set is None:
            return
        target_set = source_set.copy()
        target_set.active = []
        target.contexts[key.key] = target_set
    if active:
        target_set.activate(plugin)
        return
    target_set.deactivate(plugin)
    if source_set is None and not target_set.active:
        target.contexts.pop(key.key, None)


__all__ = [
    "CONFIRMED",
    "EditOutcome",
    "FAILED",
    "INVALID",
    "PENDING",
    "SENT",
    "SyncClient",
]
