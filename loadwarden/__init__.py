"""LoadWarden core package: per-request plugin load rules and their editing client."""

from .cli import main as cli_main
from .config_loader import load_config

__all__ = [
    "cli_main",
    "load_config",
    "audit",
    "config",
    "collectors",
    "metrics",
    "notifiers",
    "rules",
    "services",
    "store",
    "suggestions",
    "sync",
]
