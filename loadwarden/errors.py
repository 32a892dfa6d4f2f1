"""Exception hierarchy shared by the resolver, editor, store and sync layers."""
from __future__ import annotations

from typing import Optional

GENERIC_TRANSPORT_MESSAGE = "Request failed. Check your connection and try again."
GENERIC_REJECTED_MESSAGE = "The server rejected the change."


class LoadWardenError(Exception):
    """Base class for every error raised by :mod:`loadwarden`."""


class StoreError(LoadWardenError, RuntimeError):
    """Generic rule store communication error."""


class TransportError(StoreError):
    """Raised when a request to the rule store could not complete."""

    def __init__(self, message: str = GENERIC_TRANSPORT_MESSAGE) -> None:
        super().__init__(message)


class ServerRejectedError(StoreError):
    """Raised when the store answered with ``success: false``."""

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        super().__init__(message or GENERIC_REJECTED_MESSAGE)
        self.status_code = status_code


class ValidationError(LoadWardenError, ValueError):
    """Raised before any network call when an edit is not acceptable."""


class ProtectedPluginError(ValidationError):
    """Raised when an edit targets a protected plugin."""

    def __init__(self, plugin: str) -> None:
        super().__init__(f"plugin {plugin!r} is protected and cannot be changed")
        self.plugin = plugin


class InertTagError(ValidationError):
    """Raised when a binary tag is toggled while its scope is in passthrough mode."""


class UnknownScopeError(ValidationError):
    """Raised when a scope key or action target cannot be interpreted."""


__all__ = [
    "GENERIC_REJECTED_MESSAGE",
    "GENERIC_TRANSPORT_MESSAGE",
    "InertTagError",
    "LoadWardenError",
    "ProtectedPluginError",
    "ServerRejectedError",
    "StoreError",
    "TransportError",
    "UnknownScopeError",
    "ValidationError",
]
