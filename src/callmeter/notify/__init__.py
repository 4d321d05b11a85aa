"""
Call Meter - Notifications

Best-effort delivery of billing-state events to call clients.
"""

from .sink import (
    BestEffortNotifier,
    BillingEvent,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
)

__all__ = [
    "BestEffortNotifier",
    "BillingEvent",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "NotificationSink",
]
