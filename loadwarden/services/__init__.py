"""Service orchestration helpers."""

from .scheduler import ScheduledTask, Scheduler
from .session import AdminSession, PreferenceStore
from .view import ViewState, build_view, render_text
from .dispatcher import (
    ApplySuggestions,
    CycleTag,
    Dispatcher,
    ResetOverrides,
    ResetScope,
    SetDrawerOpen,
    SetTheme,
    SwitchMode,
    ToggleBinary,
)

__all__ = [
    "AdminSession",
    "ApplySuggestions",
    "CycleTag",
    "Dispatcher",
    "PreferenceStore",
    "ResetOverrides",
    "ResetScope",
    "ScheduledTask",
    "Scheduler",
    "SetDrawerOpen",
    "SetTheme",
    "SwitchMode",
    "ToggleBinary",
    "ViewState",
    "build_view",
    "render_text",
]
