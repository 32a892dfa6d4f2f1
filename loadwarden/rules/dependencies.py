"""Dependency map between plugins and cascade blocking."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from loadwarden.rules.model import Plugin

logger = logging.getLogger(__name__)

WOOCOMMERCE = "woocommerce/woocommerce.php"
ELEMENTOR = "elementor/elementor.php"

# Name fragments that imply an undeclared parent plugin.
_NAME_HINTS: Tuple[Tuple[str, str], ...] = (
    ("for woocommerce", WOOCOMMERCE),
    ("woocommerce", WOOCOMMERCE),
    ("for elementor", ELEMENTOR),
)


def infer_requires(plugin: Plugin) -> Tuple[str, ...]:
    """Return declared parents plus those implied by the plugin name."""

    parents: List[str] = [parent for parent in plugin.requires if parent != plugin.id]
    name = plugin.name.lower()
    for fragment, parent in _NAME_HINTS:
        if fragment in name and parent != plugin.id and parent not in parents:
            parents.append(parent)
    return tuple(parents)


class DependencyGraph:
    """Child -> parents map built from the plugin catalog."""

    def __init__(self, plugins: Iterable[Plugin]) -> None:
        self._plugins: Dict[str, Plugin] = {plugin.id: plugin for plugin in plugins}
        self._parents: Dict[str, Tuple[str, ...]] = {}
        for plugin in self._plugins.values():
            parents = infer_requires(plugin)
            if parents:
                self._parents[plugin.id] = parents

    def parents_of(self, plugin_id: str) -> Tuple[str, ...]:
        return self._parents.get(plugin_id, ())

    def dependents_of(self, plugin_id: str) -> List[str]:
        return sorted(child for child, parents in self._parents.items() if plugin_id in parents)

    def as_dict(self) -> Dict[str, List[str]]:
        return {child: list(parents) for child, parents in sorted(self._parents.items())}

    def cascade(self, blocked: Iterable[str], loaded: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Return ``child -> blocked parent`` for plugins that must follow.

        The cascade is transitive: a child blocked because of its parent blocks
        its own dependents in turn.  Protected plugins are never cascaded.
        When ``loaded`` is given only those plugins are considered.
        """

        blocked_set = set(blocked)
        candidates = set(loaded) if loaded is not None else set(self._parents)
        result: Dict[str, str] = {}
        changed = True
        while changed:
            changed = False
            for child in sorted(candidates):
                if child in blocked_set or child in result:
                    continue
                plugin = self._plugins.get(child)
                if plugin is not None and plugin.protected:
                    continue
                for parent in self._parents.get(child, ()):
                    if parent in blocked_set or parent in result:
                        result[child] = parent
                        changed = True
                        break
        if result:
            logger.debug("cascade blocked %d plugin(s): %s", len(result), result)
        return result


def cascade_reasons(cascaded: Mapping[str, str]) -> Dict[str, str]:
    return {child: f"cascade:{parent}" for child, parent in cascaded.items()}


__all__ = [
    "DependencyGraph",
    "ELEMENTOR",
    "WOOCOMMERCE",
    "cascade_reasons",
    "infer_requires",
]
