"""
Billing-State Notifications

Clients watching a call are told when a unit is billed and when the call is
ended. Delivery is best-effort: a sink that fails is logged and ignored, and
never affects the billing step that produced the event.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional
import structlog

from ..persistence.models import EndReason, to_timestamp

logger = structlog.get_logger()


@dataclass(frozen=True)
class BillingEvent:
    """A notification as delivered to a sink."""
    call_id: str
    kind: str  # "updated" or "ended"
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"call_id": self.call_id, **self.payload}


class NotificationSink(ABC):
    """Receiver of billing-state events."""

    @abstractmethod
    def call_updated(self, call_id: str, seconds_used: int, last_billed_at: datetime) -> None:
        """A billing step committed."""
        pass

    @abstractmethod
    def call_ended(self, call_id: str, end_reason: EndReason) -> None:
        """The call was terminated."""
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes events to the structured log. Default when nothing else is wired."""

    def call_updated(self, call_id: str, seconds_used: int, last_billed_at: datetime) -> None:
        logger.info(
            "notify_call_updated",
            call_id=call_id,
            seconds_used=seconds_used,
            last_billed_at=to_timestamp(last_billed_at),
        )

    def call_ended(self, call_id: str, end_reason: EndReason) -> None:
        logger.info("notify_call_ended", call_id=call_id, status="ended", end_reason=end_reason.value)


class InMemoryNotificationSink(NotificationSink):
    """Keeps events in memory, e.g. for the API's event feed or tests."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self._events: List[BillingEvent] = []
        self._lock = Lock()

    def _append(self, event: BillingEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                self._events = self._events[-self.max_events:]

    def call_updated(self, call_id: str, seconds_used: int, last_billed_at: datetime) -> None:
        self._append(BillingEvent(
            call_id=call_id,
            kind="updated",
            payload={"secondsUsed": seconds_used, "lastBilledAt": to_timestamp(last_billed_at)},
        ))

    def call_ended(self, call_id: str, end_reason: EndReason) -> None:
        self._append(BillingEvent(
            call_id=call_id,
            kind="ended",
            payload={"status": "ended", "endReason": end_reason.value},
        ))

    def events(self, call_id: Optional[str] = None) -> List[BillingEvent]:
        with self._lock:
            events = list(self._events)
        if call_id is not None:
            events = [e for e in events if e.call_id == call_id]
        return events


class BestEffortNotifier:
    """
    Fans events out to sinks, logging and dropping any sink error.

    The billing engine only talks to this wrapper, so a broken sink can
    never fail or roll back a billing step.
    """

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks = sinks if sinks is not None else [LoggingNotificationSink()]

    def call_updated(self, call_id: str, seconds_used: int, last_billed_at: datetime) -> None:
        for sink in self.sinks:
            try:
                sink.call_updated(call_id, seconds_used, last_billed_at)
            except Exception as e:
                logger.error("notification_failed", call_id=call_id, kind="updated", sink=type(sink).__name__, error=str(e))

    def call_ended(self, call_id: str, end_reason: EndReason) -> None:
        for sink in self.sinks:
            try:
                sink.call_ended(call_id, end_reason)
            except Exception as e:
                logger.error("notification_failed", call_id=call_id, kind="ended", sink=type(sink).__name__, error=str(e))
