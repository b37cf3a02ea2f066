"""
Unit tests for the scheduler notification hub.
"""
from unittest.mock import MagicMock

from notifications import EventType, NotificationHub, SchedulerEvent

from tests.fixtures.factories import create_recording


class TestNotificationHub:
    def test_subscribers_receive_events_in_order(self):
        hub = NotificationHub()
        received = []
        hub.subscribe(received.append)

        hub.publish(EventType.RECORDING_STARTED, message="one")
        hub.publish(EventType.RECORDING_STOPPED, message="two")

        assert [(e.type, e.message) for e in received] == [
            (EventType.RECORDING_STARTED, "one"),
            (EventType.RECORDING_STOPPED, "two"),
        ]

    def test_unsubscribe(self):
        hub = NotificationHub()
        received = []
        unsubscribe = hub.subscribe(received.append)
        unsubscribe()
        unsubscribe()  # second call is harmless

        hub.publish(EventType.SCHEDULE_CHANGED)

        assert received == []

    def test_failing_subscriber_does_not_stop_others(self):
        hub = NotificationHub()
        received = []
        hub.subscribe(MagicMock(side_effect=RuntimeError("ui gone")))
        hub.subscribe(received.append)

        hub.publish(EventType.RECORDING_FAILED, message="exit code 1")

        assert len(received) == 1

    def test_publish_without_subscribers(self):
        NotificationHub().publish(EventType.EPG_REFRESH_NEEDED)


class TestSchedulerEvent:
    def test_to_dict(self):
        recording = create_recording(title="Evening News")
        event = SchedulerEvent(type=EventType.RECORDING_STARTED, recording=recording, message="started")

        data = event.to_dict()

        assert data["type"] == "recording_started"
        assert data["recording"]["title"] == "Evening News"
        assert data["series"] is None
        assert data["timestamp"].endswith("Z")
