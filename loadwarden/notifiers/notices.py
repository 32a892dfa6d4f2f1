"""Operator-facing notices (the toast area of the editing surface)."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterable, List, Optional

from loadwarden.errors import GENERIC_TRANSPORT_MESSAGE, LoadWardenError, ServerRejectedError, TransportError
from loadwarden.rules.model import ScopeKey

logger = logging.getLogger(__name__)

ERROR = "error"
SUCCESS = "success"
INFO = "info"


@dataclass(frozen=True, slots=True)
class Notice:
    """Information that should be shown to the operator."""

    level: str
    message: str
    scope_key: Optional[ScopeKey] = None

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "message": self.message,
            "scope": str(self.scope_key) if self.scope_key else None,
        }


Listener = Callable[[Notice], None]


class NoticeBoard:
    """Bounded queue of notices with optional listeners."""

    def __init__(self, limit: int = 50) -> None:
        self._notices: Deque[Notice] = deque(maxlen=limit)
        self._listeners: List[Listener] = []

    def format(self, exc: LoadWardenError, scope_key: Optional[ScopeKey] = None) -> Notice:
        """Build the error notice for a failed operation."""

        if isinstance(exc, TransportError):
            message = str(exc) or GENERIC_TRANSPORT_MESSAGE
        elif isinstance(exc, ServerRejectedError):
            message = str(exc)
        else:
            message = str(exc) or exc.__class__.__name__
        return Notice(ERROR, message, scope_key)

    def send(self, notices: Iterable[Notice]) -> None:
        for notice in notices:
            self._notices.append(notice)
            log = logger.warning if notice.level == ERROR else logger.info
            log("%s%s", f"[{notice.scope_key}] " if notice.scope_key else "", notice.message)
            for listener in list(self._listeners):
                listener(notice)

    def post(self, level: str, message: str, scope_key: Optional[ScopeKey] = None) -> Notice:
        notice = Notice(level, message, scope_key)
        self.send([notice])
        return notice

    def error(self, message: str, scope_key: Optional[ScopeKey] = None) -> Notice:
        return self.post(ERROR, message, scope_key)

    def success(self, message: str, scope_key: Optional[ScopeKey] = None) -> Notice:
        return self.post(SUCCESS, message, scope_key)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def latest(self) -> Optional[Notice]:
        return self._notices[-1] if self._notices else None

    def drain(self) -> List[Notice]:
        drained = list(self._notices)
        self._notices.clear()
        return drained


__all__ = ["ERROR", "INFO", "Notice", "NoticeBoard", "SUCCESS"]
