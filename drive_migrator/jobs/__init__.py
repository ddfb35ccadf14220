from drive_migrator.jobs.concurrency_manager import ConcurrencyGuard
from drive_migrator.jobs.notifications import NotificationPublisher, Subscription
from drive_migrator.jobs.registry import JobRegistry

__all__ = [
    "ConcurrencyGuard",
    "NotificationPublisher",
    "Subscription",
    "JobRegistry",
]
