"""Approval notifications: engine-side hand-off and per-channel fan-out."""

from __future__ import annotations

from .base import (
    APPROVAL_EXPIRED,
    APPROVAL_REQUESTED,
    LoggingNotifier,
    Notifier,
    QueueNotifier,
    notify_safely,
)
from .channels import (
    ChannelDispatcher,
    ChannelSender,
    LogChannelSender,
    NotificationMessage,
    WebhookChannelSender,
)

__all__ = [
    "APPROVAL_EXPIRED",
    "APPROVAL_REQUESTED",
    "ChannelDispatcher",
    "ChannelSender",
    "LogChannelSender",
    "LoggingNotifier",
    "NotificationMessage",
    "Notifier",
    "QueueNotifier",
    "WebhookChannelSender",
    "notify_safely",
]
