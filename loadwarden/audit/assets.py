"""Attribute enqueued scripts and styles to the plugin that ships them."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loadwarden.store.backend import ASSET_AUDIT, RuleStore

logger = logging.getLogger(__name__)

THEME = "_theme"
CORE = "_core"
INLINE = "(inline)"
MAX_CONTEXTS = 50

_PLUGIN_PATH = re.compile(r"/wp-content/plugins/([^/]+)/")


def attribute_asset(src: Optional[str]) -> Optional[str]:
    """Return the owning plugin slug, ``_theme``, ``_core`` or ``None``."""

    if not src or src == INLINE:
        return None
    match = _PLUGIN_PATH.search(src)
    if match:
        return match.group(1)
    if "/wp-content/themes/" in src:
        return THEME
    if "/wp-includes/" in src or "/wp-admin/" in src:
        return CORE
    return None


@dataclass(frozen=True, slots=True)
class AssetRecord:
    handle: str
    kind: str
    src: str
    plugin: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"handle": self.handle, "kind": self.kind, "src": self.src, "plugin": self.plugin}


class AssetAudit:
    """Per-context asset inventory kept in the rule store.

    Only the most recent :data:`MAX_CONTEXTS` contexts are retained.
    """

    def __init__(self, store: RuleStore) -> None:
        self._store = store

    def record(self, context: str, assets: Iterable[Mapping[str, Any]]) -> List[AssetRecord]:
        """Store the assets seen on a page of ``context``.

        Each asset mapping carries ``handle``, ``kind`` (``script``/``style``)
        and ``src``.
        """

        records: List[AssetRecord] = []
        for asset in assets:
            handle = str(asset.get("handle", "")).strip()
            if not handle:
                continue
            src = str(asset.get("src") or INLINE)
            kind = str(asset.get("kind", "script"))
            records.append(AssetRecord(handle=handle, kind=kind, src=src, plugin=attribute_asset(src)))

        audit = dict(self._store.read(ASSET_AUDIT) or {})
        audit.pop(context, None)
        audit[context] = [record.to_dict() for record in records]
        while len(audit) > MAX_CONTEXTS:
            del audit[next(iter(audit))]
        self._store.replace(ASSET_AUDIT, audit)
        logger.debug("recorded %d asset(s) for %s", len(records), context)
        return records

    def report(self, context: Optional[str] = None) -> Dict[str, List[Dict[str, Optional[str]]]]:
        audit = self._store.read(ASSET_AUDIT) or {}
        if context is not None:
            return {context: list(audit.get(context, []))}
        return {name: list(entries) for name, entries in audit.items()}

    def by_plugin(self, context: str) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for entry in self.report(context).get(context, []):
            owner = entry.get("plugin") or "_unknown"
            grouped.setdefault(str(owner), []).append(str(entry.get("handle")))
        return grouped


__all__ = ["AssetAudit", "AssetRecord", "CORE", "THEME", "attribute_asset"]
