"""Immutable view-model of the editing surface and a plain-text renderer."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loadwarden.notifiers.notices import Notice
from loadwarden.rules.editor import RuleEditor, ScopeSummary
from loadwarden.rules.model import (
    GLOBAL_CONTEXT_KEY,
    REQUEST_KINDS,
    Mode,
    RuleState,
    Scope,
    ScopeKey,
)

_STATE_MARKS = {
    RuleState.DEFAULT: ".",
    RuleState.ENABLED: "+",
    RuleState.DISABLED: "-",
    RuleState.DEFER: "~",
}


@dataclass(frozen=True, slots=True)
class TagView:
    """One plugin tag inside a section."""

    plugin: str
    name: str
    state: RuleState
    own: bool
    source: Optional[str]
    protected: bool = False
    inert: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "name": self.name,
            "state": self.state.value,
            "own": self.own,
            "source": self.source,
            "protected": self.protected,
            "inert": self.inert,
        }


@dataclass(frozen=True, slots=True)
class SectionView:
    scope_key: ScopeKey
    title: str
    mode: Optional[Mode]
    tags: Tuple[TagView, ...]
    summary: ScopeSummary

    def tag(self, plugin: str) -> Optional[TagView]:
        for tag in self.tags:
            if tag.plugin == plugin:
                return tag
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": str(self.scope_key),
            "title": self.title,
            "mode": self.mode.value if self.mode else None,
            "summary": self.summary.to_dict(),
            "tags": [tag.to_dict() for tag in self.tags],
        }


@dataclass(frozen=True, slots=True)
class ViewState:
    """Everything a renderer needs; built fresh after each command."""

    sections: Tuple[SectionView, ...]
    summary: ScopeSummary
    notices: Tuple[Notice, ...] = ()
    pending_writes: bool = False
    last_status: Optional[str] = None
    preferences: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    def section(self, scope_key: ScopeKey) -> Optional[SectionView]:
        for section in self.sections:
            if section.scope_key == scope_key:
                return section
        return None

    def state_of(self, scope_key: ScopeKey, plugin: str) -> Optional[RuleState]:
        section = self.section(scope_key)
        tag = section.tag(plugin) if section else None
        return tag.state if tag else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "pending_writes": self.pending_writes,
            "last_status": self.last_status,
            "preferences": dict(self.preferences),
            "notices": [notice.to_dict() for notice in self.notices],
            "sections": [section.to_dict() for section in self.sections],
        }


def default_section_keys(session) -> List[ScopeKey]:
    """Every scope instance the surface shows for ``session``."""

    snapshot = session.snapshot
    keys: List[ScopeKey] = [ScopeKey.global_admin()]
    groups: List[str] = []
    for screen in session.screens:
        keys.append(ScopeKey.screen(screen.id))
        if screen.group and screen.group not in groups:
            groups.append(screen.group)
    keys.extend(ScopeKey.group(group) for group in groups)
    for screen_id in snapshot.screens:
        key = ScopeKey.global_admin() if screen_id == ScopeKey.global_admin().key else ScopeKey.screen(screen_id)
        if key not in keys:
            keys.append(key)
    keys.extend(ScopeKey.request_kind(kind) for kind in REQUEST_KINDS)
    keys.append(ScopeKey.global_context())
    keys.extend(ScopeKey.context(context_id) for context_id in snapshot.contexts if context_id != GLOBAL_CONTEXT_KEY)
    keys.extend(ScopeKey(Scope.OVERRIDE, override_key) for override_key in snapshot.overrides)
    return keys


def build_view(
    session,
    keys: Optional[Iterable[ScopeKey]] = None,
    *,
    last_status: Optional[str] = None,
) -> ViewState:
    """Project the session's local snapshot into a :class:`ViewState`."""

    snapshot = session.snapshot
    editor = RuleEditor(snapshot, session.plugins, session.screens)
    titles = {screen.id: screen.label for screen in session.screens}
    sections = []
    for key in keys if keys is not None else default_section_keys(session):
        mode = None if key.is_four_state or key.scope is Scope.OVERRIDE else snapshot.effective_mode(key)
        tags = []
        for plugin in session.plugins:
            if plugin.protected:
                tags.append(TagView(plugin.id, plugin.display_name, RuleState.DEFAULT, False, None, protected=True))
                continue
            shown = editor.displayed_state(key, plugin.id)
            tags.append(
                TagView(
                    plugin.id,
                    plugin.display_name,
                    shown.state,
                    own=shown.key == key and shown.state is not RuleState.DEFAULT,
                    source=str(shown.key) if shown.key else None,
                    inert=mode is Mode.PASSTHROUGH,
                )
            )
        sections.append(
            SectionView(key, titles.get(key.key) or key.key, mode, tuple(tags), editor.summary([key]))
        )
    return ViewState(
        sections=tuple(sections),
        summary=editor.summary(),
        notices=tuple(session.notices.notices),
        pending_writes=session.sync.has_pending_writes,
        last_status=last_status,
        preferences=tuple(sorted(session.preferences.to_dict().items())),
    )


def render_text(view: ViewState, *, show_default: bool = False) -> str:
    """Plain-text rendering used by the CLI and in logs."""

    summary = view.summary
    lines = [
        f"rules: {summary.enabled} enabled, {summary.disabled} disabled, {summary.deferred} deferred"
        + (" (saving...)" if view.pending_writes else "")
    ]
    for section in view.sections:
        tags = [tag for tag in section.tags if show_default or tag.state is not RuleState.DEFAULT]
        if not tags and not show_default:
            continue
        header = f"[{section.scope_key}] {section.title}"
        if section.mode is not None:
            header += f" ({section.mode.value})"
        lines.append(header)
        for tag in tags:
            suffix = ""
            if tag.protected:
                suffix = " protected"
            elif tag.state is not RuleState.DEFAULT and not tag.own:
                suffix = f" via {tag.source}"
            lines.append(f"  {_STATE_MARKS[tag.state]} {tag.name} [{tag.state.value}]{suffix}")
    for notice in view.notices:
        lines.append(f"! {notice.level}: {notice.message}")
    return "\n".join(lines)


__all__ = ["SectionView", "TagView", "ViewState", "build_view", "default_section_keys", "render_text"]
