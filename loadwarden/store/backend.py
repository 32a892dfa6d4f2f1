"""Rule store backends: one JSON document per name."""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from loadwarden.errors import StoreError, UnknownScopeError
from loadwarden.rules.model import RuleSnapshot

logger = logging.getLogger(__name__)

SCREEN_RULES = "screen_rules"
REQUEST_KIND_RULES = "request_kind_rules"
FRONTEND_RULES = "frontend_rules"
OVERRIDES = "overrides"
FRONTEND_SETTINGS = "frontend_settings"
OPERATING_MODE = "mode"
ADMIN_THEME = "admin_theme"
ASSET_AUDIT = "asset_audit"

DOCUMENTS = (
    SCREEN_RULES,
    REQUEST_KIND_RULES,
    FRONTEND_RULES,
    OVERRIDES,
    FRONTEND_SETTINGS,
    OPERATING_MODE,
    ADMIN_THEME,
    ASSET_AUDIT,
)

SNAPSHOT_DOCUMENTS = (
    SCREEN_RULES,
    REQUEST_KIND_RULES,
    FRONTEND_RULES,
    OVERRIDES,
    FRONTEND_SETTINGS,
    OPERATING_MODE,
)


class RuleStore(Protocol):
    """Read and replace whole documents."""

    def read(self, document: str) -> Any:
        ...

    def replace(self, document: str, value: Any) -> None:
        ...


def _check_document(document: str) -> None:
    if document not in DOCUMENTS:
        raise UnknownScopeError(f"unknown store document: {document!r}")


class InMemoryRuleStore:
    """Dictionary backed store used by tests and the CLI."""

    def __init__(self, documents: Optional[Dict[str, Any]] = None) -> None:
        self._documents: Dict[str, Any] = {}
        self._lock = threading.Lock()
        for name, value in (documents or {}).items():
            self.replace(name, value)

    def read(self, document: str) -> Any:
        _check_document(document)
        with self._lock:
            return copy.deepcopy(self._documents.get(document))

    def replace(self, document: str, value: Any) -> None:
        _check_document(document)
        with self._lock:
            if value is None:
                self._documents.pop(document, None)
            else:
                self._documents[document] = copy.deepcopy(value)


class JsonFileRuleStore:
    """Store each document as ``<state_dir>/<document>.json``.

    Writes go to a temporary file that is renamed over the target so readers
    never observe a partially written document.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._lock = threading.Lock()

    def read(self, document: str) -> Any:
        _check_document(document)
        path = self._path(document)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as handle:
                    return json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                raise StoreError(f"cannot read {path}: {exc}") from exc

    def replace(self, document: str, value: Any) -> None:
        _check_document(document)
        path = self._path(document)
        with self._lock:
            try:
                if value is None:
                    path.unlink(missing_ok=True)
                    return
                self._state_dir.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_suffix(".json.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(value, handle, indent=2, ensure_ascii=False, sort_keys=True)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise StoreError(f"cannot write {path}: {exc}") from exc
        logger.debug("stored %s", path)

    def _path(self, document: str) -> Path:
        return self._state_dir / f"{document}.json"


def load_snapshot(store: RuleStore) -> RuleSnapshot:
    """Build a :class:`RuleSnapshot` from the documents held by ``store``."""

    return RuleSnapshot.from_documents({name: store.read(name) for name in SNAPSHOT_DOCUMENTS})


def save_snapshot(store: RuleStore, snapshot: RuleSnapshot, *documents: str) -> None:
    """Write ``documents`` (all snapshot documents by default) back to ``store``."""

    payloads = snapshot.to_documents()
    for name in documents or SNAPSHOT_DOCUMENTS:
        store.replace(name, payloads[name])


__all__ = [
    "ADMIN_THEME",
    "ASSET_AUDIT",
    "DOCUMENTS",
    "FRONTEND_RULES",
    "FRONTEND_SETTINGS",
    "InMemoryRuleStore",
    "JsonFileRuleStore",
    "OPERATING_MODE",
    "OVERRIDES",
    "REQUEST_KIND_RULES",
    "RuleStore",
    "SCREEN_RULES",
    "SNAPSHOT_DOCUMENTS",
    "load_snapshot",
    "save_snapshot",
]
