"""Per-operator editing session.

One :class:`AdminSession` exists per active admin session.  It is built
explicitly from the configuration and handed to the dispatcher, so nothing in
the editing path reads ambient state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, MutableMapping, Optional, Tuple

from loadwarden.config import LoadWardenConfig
from loadwarden.errors import StoreError, ValidationError
from loadwarden.notifiers.notices import NoticeBoard
from loadwarden.rules.model import Plugin, RuleSnapshot, ScreenDefinition
from loadwarden.rules.resolver import StateResolver
from loadwarden.services.scheduler import Clock, Scheduler
from loadwarden.sync.client import SyncClient
from loadwarden.sync.transport import Transport

logger = logging.getLogger(__name__)

DRAWER_OPEN = "drawer_open"
THEME = "theme"
THEMES = ("light", "dark")

ThemeWriter = Callable[[str, Callable[[Optional[StoreError]], None]], None]


class PreferenceStore:
    """Small key-value store for UI preferences (drawer state, theme).

    ``values`` is the backing mapping; pass a persistent mapping to keep
    preferences between sessions.  Theme changes are also pushed through
    ``theme_writer`` and rolled back when that write fails.
    """

    def __init__(
        self,
        values: Optional[MutableMapping[str, Any]] = None,
        *,
        theme_writer: Optional[ThemeWriter] = None,
    ) -> None:
        self._values: MutableMapping[str, Any] = values if values is not None else {}
        self._theme_writer = theme_writer

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    @property
    def drawer_open(self) -> bool:
        return bool(self._values.get(DRAWER_OPEN, False))

    def set_drawer_open(self, is_open: bool) -> None:
        self._values[DRAWER_OPEN] = bool(is_open)

    @property
    def theme(self) -> str:
        return str(self._values.get(THEME, "light"))

    def set_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValidationError(f"Invalid theme: {theme}")
        previous = self.theme
        self._values[THEME] = theme
        if self._theme_writer is None:
            return

        def _done(error: Optional[StoreError]) -> None:
            if error is not None and self._values.get(THEME) == theme:
                logger.info("theme %s not saved; restoring %s", theme, previous)
                self._values[THEME] = previous

        self._theme_writer(theme, _done)

    def to_dict(self) -> Dict[str, Any]:
        return {DRAWER_OPEN: self.drawer_open, THEME: self.theme}


@dataclass(slots=True)
class AdminSession:
    """Everything one operator's editing surface needs."""

    config: LoadWardenConfig
    transport: Transport
    scheduler: Scheduler
    sync: SyncClient
    notices: NoticeBoard
    preferences: PreferenceStore

    @classmethod
    def open(
        cls,
        config: LoadWardenConfig,
        transport: Transport,
        snapshot: Optional[RuleSnapshot] = None,
        *,
        clock: Optional[Clock] = None,
        preferences: Optional[MutableMapping[str, Any]] = None,
    ) -> "AdminSession":
        scheduler = Scheduler(config.scheduler, clock=clock)
        notices = NoticeBoard()
        sync = SyncClient(
            transport,
            scheduler,
            snapshot,
            plugins=config.plugins,
            screens=config.screens,
            notices=notices,
            debounce=config.sync.debounce.total_seconds(),
        )

        def _write_theme(theme: str, done: Callable[[Optional[StoreError]], None]) -> None:
            def _callback(data: Any, error: Optional[StoreError]) -> None:
                if error is not None:
                    notices.send([notices.format(error)])
                done(error)

            transport.send("save-admin-theme", {"theme": theme}, _callback)

        store = PreferenceStore(preferences, theme_writer=_write_theme)
        logger.debug("opened admin session with %d plugin(s)", len(config.plugins))
        return cls(config, transport, scheduler, sync, notices, store)

    @property
    def plugins(self) -> Tuple[Plugin, ...]:
        return tuple(self.config.plugins)

    @property
    def screens(self) -> Tuple[ScreenDefinition, ...]:
        return tuple(self.config.screens)

    @property
    def snapshot(self) -> RuleSnapshot:
        return self.sync.snapshot

    def resolver(self) -> StateResolver:
        return StateResolver(self.sync.snapshot, self.config.plugins, self.config.screens)

    def tick(self) -> int:
        """Fire due timers (debounced saves)."""

        return self.scheduler.run_due()

    def close(self) -> None:
        """Send anything still waiting on a debounce timer."""

        self.sync.flush()


__all__ = ["AdminSession", "DRAWER_OPEN", "PreferenceStore", "THEME", "THEMES"]
