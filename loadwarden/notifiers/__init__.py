"""Notification backends."""

from .notices import Notice, NoticeBoard

__all__ = ["Notice", "NoticeBoard"]
