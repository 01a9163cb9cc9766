"""Background workers consuming the job queues."""

from .approvals import ApprovalWorker
from .base import QueueWorker
from .notifications import NotificationWorker

__all__ = ["ApprovalWorker", "NotificationWorker", "QueueWorker"]
