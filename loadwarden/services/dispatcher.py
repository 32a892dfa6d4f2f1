"""Typed operator commands and the dispatcher that routes them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from loadwarden.errors import ValidationError
from loadwarden.rules.model import Mode, ScopeKey
from loadwarden.services.session import AdminSession
from loadwarden.services.view import ViewState, build_view
from loadwarden.suggestions.engine import Suggestion
from loadwarden.sync.client import INVALID, EditOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleTag:
    scope_key: ScopeKey
    plugin: str


@dataclass(frozen=True, slots=True)
class ToggleBinary:
    scope_key: ScopeKey
    plugin: str
    parent_context: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SwitchMode:
    scope_key: ScopeKey
    mode: Mode


@dataclass(frozen=True, slots=True)
class ApplySuggestions:
    suggestions: Tuple[Suggestion, ...]


@dataclass(frozen=True, slots=True)
class ResetOverrides:
    context: str
    override_type: str
    override_id: int


@dataclass(frozen=True, slots=True)
class ResetScope:
    scope_key: ScopeKey
    parent_context: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SetDrawerOpen:
    is_open: bool


@dataclass(frozen=True, slots=True)
class SetTheme:
    theme: str


Command = Any


class Dispatcher:
    """Route commands to the sync client and return a fresh :class:`ViewState`.

    Validation failures never raise out of :meth:`dispatch`; they become an
    ``invalid`` status plus an error notice, the same way store failures are
    reported.
    """

    def __init__(self, session: AdminSession) -> None:
        self._session = session
        self._handlers: Dict[Type[Any], Callable[[Any], Optional[EditOutcome]]] = {
            CycleTag: self._cycle,
            ToggleBinary: self._toggle,
            SwitchMode: self._switch_mode,
            ApplySuggestions: self._apply_suggestions,
            ResetOverrides: self._reset_overrides,
            ResetScope: self._reset_scope,
            SetDrawerOpen: self._set_drawer_open,
            SetTheme: self._set_theme,
        }
        self._last: Optional[EditOutcome] = None

    @property
    def last_outcome(self) -> Optional[EditOutcome]:
        return self._last

    def dispatch(self, command: Command) -> ViewState:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"unsupported command: {command!r}")
        try:
            outcome = handler(command)
        except ValidationError as exc:
            outcome = EditOutcome(INVALID, error=exc)
        if outcome is not None and outcome.status == INVALID and outcome.error is not None:
            self._session.notices.send([self._session.notices.format(outcome.error)])
        self._last = outcome
        logger.debug("dispatched %s -> %s", type(command).__name__, outcome.status if outcome else "ok")
        return self.view()

    def view(self) -> ViewState:
        return build_view(self._session, last_status=self._last.status if self._last else None)

    # ------------------------------------------------------------------
    def _cycle(self, command: CycleTag) -> EditOutcome:
        return self._session.sync.cycle(command.scope_key, command.plugin)

    def _toggle(self, command: ToggleBinary) -> EditOutcome:
        return self._session.sync.toggle(command.scope_key, command.plugin, command.parent_context)

    def _switch_mode(self, command: SwitchMode) -> EditOutcome:
        return self._session.sync.switch_mode(command.scope_key, command.mode)

    def _apply_suggestions(self, command: ApplySuggestions) -> EditOutcome:
        return self._session.sync.apply_suggestions(command.suggestions)

    def _reset_overrides(self, command: ResetOverrides) -> EditOutcome:
        return self._session.sync.reset_overrides(command.context, command.override_type, command.override_id)

    def _reset_scope(self, command: ResetScope) -> EditOutcome:
        return self._session.sync.reset_scope(command.scope_key, command.parent_context)

    def _set_drawer_open(self, command: SetDrawerOpen) -> None:
        self._session.preferences.set_drawer_open(command.is_open)

    def _set_theme(self, command: SetTheme) -> None:
        self._session.preferences.set_theme(command.theme)


__all__ = [
    "ApplySuggestions",
    "Command",
    "CycleTag",
    "Dispatcher",
    "ResetOverrides",
    "ResetScope",
    "SetDrawerOpen",
    "SetTheme",
    "SwitchMode",
    "ToggleBinary",
]
