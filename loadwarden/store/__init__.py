"""Rule persistence: document backends and the HTTP action client.

The server-side action table lives in :mod:`loadwarden.store.actions`.
"""

from .backend import InMemoryRuleStore, JsonFileRuleStore, RuleStore, load_snapshot, save_snapshot
from .client import RuleStoreClient

__all__ = [
    "InMemoryRuleStore",
    "JsonFileRuleStore",
    "RuleStore",
    "RuleStoreClient",
    "load_snapshot",
    "save_snapshot",
]
