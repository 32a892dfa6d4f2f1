"""Rule proposals derived from sampled performance data."""

from .catalog import CatalogVerdict, PluginCatalog
from .engine import (
    KindSuggestions,
    ScreenSuggestions,
    Suggestion,
    SuggestionEngine,
    SuggestionReport,
    apply_suggestions,
    confidence,
)

__all__ = [
    "CatalogVerdict",
    "KindSuggestions",
    "PluginCatalog",
    "ScreenSuggestions",
    "Suggestion",
    "SuggestionEngine",
    "SuggestionReport",
    "apply_suggestions",
    "confidence",
]
