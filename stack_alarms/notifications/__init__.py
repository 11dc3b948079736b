"""Notification dispatch and delivery channels."""

from .dispatcher import NotificationDispatcher
from .targets import TARGET_KINDS, NotificationTarget, build_target

__all__ = ["NotificationDispatcher", "NotificationTarget", "TARGET_KINDS", "build_target"]
