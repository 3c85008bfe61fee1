"""Unit tests for event envelopes and the event buffer."""
import pydantic
import pytest

from app.aggregate import Appointment, Organization
from app.events import EventBuffer


class TestEnvelope:
    def test_to_message(self, new_appointment):
        event = Appointment.new(new_appointment, "user-1").pull_events()[0]
        message = event.to_message()
        assert message["event_type"] == "booking.appointment.scheduled"
        assert message["key"] == "place-1"
        assert message["event_id"] == str(event.event_id)
        assert message["data"]["appointment_id"] == "appt-1"
        assert message["data"]["version"] == 0
        assert "event_id" not in message["data"]

    def test_events_are_immutable(self):
        event = Organization.new("org-1", "Acme", "user-1").pull_events()[0]
        with pytest.raises(pydantic.ValidationError):
            event.name = "Other"

    def test_event_ids_are_unique(self):
        org = Organization.new("org-1", "Acme", "user-1")
        org.delete("user-1")
        first, second = org.pull_events()
        assert first.event_id != second.event_id


class TestEventBuffer:
    def test_register_keeps_order_and_pull_resets(self):
        buffer = EventBuffer()
        a = Organization.new("org-1", "A", "u").pull_events()[0]
        b = Organization.new("org-2", "B", "u").pull_events()[0]
        buffer.register(a, b)
        assert len(buffer) == 2
        assert buffer.pending == (a, b)
        assert buffer.pull_events() == [a, b]
        assert buffer.pull_events() == []
        assert len(buffer) == 0
