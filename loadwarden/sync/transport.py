"""Transports deliver action requests and report completion via callbacks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Protocol

from loadwarden.errors import StoreError, TransportError
from loadwarden.store.client import RuleStoreClient

logger = logging.getLogger(__name__)

Callback = Callable[[Any, Optional[StoreError]], None]


class Transport(Protocol):
    """Sends one action; ``callback(data, error)`` runs exactly once."""

    def send(self, action: str, payload: Mapping[str, Any], callback: Callback) -> None:
        ...


class ImmediateTransport:
    """Completes synchronously through a :class:`RuleStoreClient`."""

    def __init__(self, client: RuleStoreClient) -> None:
        self._client = client

    def send(self, action: str, payload: Mapping[str, Any], callback: Callback) -> None:
        try:
            data = self._client.call(action, payload)
        except StoreError as exc:
            callback(None, exc)
            return
        callback(data, None)


@dataclass(slots=True)
class PendingRequest:
    action: str
    payload: Mapping[str, Any]
    callback: Callback


class QueuedTransport:
    """Holds requests until the caller completes them, in any order."""

    def __init__(self) -> None:
        self.requests: List[PendingRequest] = []

    def send(self, action: str, payload: Mapping[str, Any], callback: Callback) -> None:
        self.requests.append(PendingRequest(action, dict(payload), callback))

    def __len__(self) -> int:
        return len(self.requests)

    def complete(self, index: int = 0, data: Any = None) -> PendingRequest:
        request = self.requests.pop(index)
        request.callback(data, None)
        return request

    def fail(self, index: int = 0, error: Optional[StoreError] = None) -> PendingRequest:
        request = self.requests.pop(index)
        request.callback(None, error or TransportError())
        return request

    def forward(self, client: RuleStoreClient, index: int = 0) -> PendingRequest:
        """Deliver a queued request through ``client`` now."""

        request = self.requests.pop(index)
        ImmediateTransport(client).send(request.action, request.payload, request.callback)
        return request


__all__ = ["Callback", "ImmediateTransport", "PendingRequest", "QueuedTransport", "Transport"]
