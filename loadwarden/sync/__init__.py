"""Optimistic synchronisation between the editing surface and the rule store."""

from .client import CONFIRMED, FAILED, INVALID, PENDING, SENT, EditOutcome, SyncClient
from .transport import ImmediateTransport, PendingRequest, QueuedTransport, Transport

__all__ = [
    "CONFIRMED",
    "EditOutcome",
    "FAILED",
    "INVALID",
    "ImmediateTransport",
    "PENDING",
    "PendingRequest",
    "QueuedTransport",
    "SENT",
    "SyncClient",
    "Transport",
]
