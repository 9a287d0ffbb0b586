"""
Tests for the dialog channel wire schema.
"""

import pytest

from writers_room.messaging.protocol import (
    ControlCommand,
    ControlEvent,
    DialogEvent,
    ProtocolError,
    parse_message,
)


def test_dialog_event_round_trips_through_wire_form():
    event = DialogEvent(speaker="Alice", content="Hello!", scene="1", emotion="happy", addressing="Bob")
    message = event.to_message()

    assert message["type"] == "dialog"
    assert message["from"] == "Alice"
    assert "speaker" not in message
    assert parse_message(message) == event


def test_dialog_event_accepts_from_alias():
    event = parse_message({"type": "dialog", "from": "Bob", "content": "Hi", "scene": "2", "timestamp": 1})
    assert event.speaker == "Bob"
    assert event.emotion is None
    assert event.addressing is None


def test_integer_scene_is_coerced_to_string():
    event = parse_message({"type": "dialog", "from": "Bob", "content": "Hi", "scene": 3, "timestamp": 1.5})
    assert event.scene == "3"

    control = parse_message({"type": "control", "scene": 3, "command": "stop"})
    assert control.scene == "3"


def test_timestamp_defaults_to_now():
    event = DialogEvent(speaker="Alice", content="Hi", scene="1")
    assert event.timestamp > 0


def test_control_event_wire_form():
    message = ControlEvent(scene="1", command=ControlCommand.STOP).to_message()
    assert message == {"type": "control", "scene": "1", "command": "stop"}

    parsed = parse_message(message)
    assert isinstance(parsed, ControlEvent)
    assert parsed.command == ControlCommand.STOP


def test_typed_events_pass_through():
    event = ControlEvent(scene="1", command=ControlCommand.START)
    assert parse_message(event) is event


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "dialog", "content": "no speaker", "scene": "1"},
        {"type": "dialog", "from": "Alice", "scene": "1"},
        {"type": "dialog", "from": "Alice", "content": "no scene"},
        {"type": "dialog", "from": "", "content": "empty speaker", "scene": "1"},
        {"type": "dialog", "from": "Alice", "content": "unstamped", "scene": "1"},
        {"type": "control", "scene": "1", "command": "pause"},
        {"type": "control", "command": "stop"},
        {"type": "shout", "scene": "1"},
        {"from": "Alice", "content": "untyped", "scene": "1"},
        "Alice: plain text",
        None,
    ],
)
def test_malformed_messages_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        parse_message(raw)


def test_dialog_events_are_immutable():
    event = DialogEvent(speaker="Alice", content="Hi", scene="1")
    with pytest.raises(Exception):
        event.content = "changed"


def test_sender_timestamp_is_kept():
    raw = {"type": "dialog", "from": "Alice", "content": "Hi", "scene": "1", "timestamp": 1700000000.25}
    assert parse_message(raw).timestamp == 1700000000.25


def test_missing_timestamp_is_rejected():
    with pytest.raises(ProtocolError, match="timestamp"):
        parse_message({"type": "dialog", "from": "A", "content": "x", "scene": "1"})
