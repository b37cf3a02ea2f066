"""
Scheduler notification hub.

Fire-and-forget events published by the scheduler (recording started/stopped/
failed, EPG refresh needed, schedule changed). Subscribers run synchronously
on the publishing thread; a UI layer that needs its own thread marshals the
event itself.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from recorder.entities import ScheduledRecording, SeriesRecording

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RECORDING_STARTED = "recording_started"
    RECORDING_STOPPED = "recording_stopped"
    RECORDING_FAILED = "recording_failed"
    EPG_REFRESH_NEEDED = "epg_refresh_needed"
    SCHEDULE_CHANGED = "schedule_changed"


@dataclass
class SchedulerEvent:
    """An event published to subscribers."""
    type: EventType
    recording: Optional[ScheduledRecording] = None
    series: Optional[SeriesRecording] = None
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "recording": self.recording.to_dict() if self.recording else None,
            "series": self.series.to_dict() if self.series else None,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }


Subscriber = Callable[[SchedulerEvent], None]


class NotificationHub:
    """Publishes scheduler events to registered subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: SchedulerEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # Don't let subscriber failures affect scheduling
                logger.error(f"Notification subscriber failed for {event.type.value}: {e}")

    def publish(
        self,
        event_type: EventType,
        recording: Optional[ScheduledRecording] = None,
        series: Optional[SeriesRecording] = None,
        message: str = "",
    ) -> None:
        self.emit(SchedulerEvent(type=event_type, recording=recording, series=series, message=message))
