"""Rule model, precedence resolution and the editing protocol."""

from .dependencies import DependencyGraph
from .editor import Edit, RuleEditor, ScopeSummary
from .model import (
    BinaryRuleSet,
    FrontendSettings,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    Scope,
    ScopeKey,
    ScreenDefinition,
)
from .resolver import EffectiveState, LoadPlan, LoadPlanner, RequestContext, StateResolver

__all__ = [
    "BinaryRuleSet",
    "DependencyGraph",
    "Edit",
    "EffectiveState",
    "FrontendSettings",
    "LoadPlan",
    "LoadPlanner",
    "Mode",
    "Plugin",
    "RequestContext",
    "RuleEditor",
    "RuleSnapshot",
    "RuleState",
    "Scope",
    "ScopeKey",
    "ScopeSummary",
    "ScreenDefinition",
    "StateResolver",
]
