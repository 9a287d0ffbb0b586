"""
Wire schema for the dialog channel.

Two event kinds travel on a channel: DialogEvent (one spoken line) and
ControlEvent (scene start/stop). On the wire both are plain JSON-able dicts
tagged with a ``type`` field. Scoping to a scene is carried in each event's
``scene`` field, never in the channel name, so several scenes may share one
channel.
"""

import time
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from writers_room.core.errors import WritersRoomError


class ProtocolError(WritersRoomError):
    """Raised when a message does not match the wire schema."""

    pass


def _scene_to_str(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


class DialogEvent(BaseModel):
    """A single line of dialog published by an Actor."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speaker: str = Field(alias="from", min_length=1)
    content: str
    scene: str
    timestamp: float = Field(default_factory=time.time)
    emotion: Optional[str] = None
    addressing: Optional[str] = None

    @field_validator("scene", mode="before")
    @classmethod
    def coerce_scene(cls, value: Any) -> Any:
        return _scene_to_str(value)

    def to_message(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True)
        data["type"] = "dialog"
        return data


class ControlCommand(str, Enum):
    START = "start"
    STOP = "stop"


class ControlEvent(BaseModel):
    """Scene lifecycle signal broadcast by the Director."""

    model_config = ConfigDict(frozen=True)

    scene: str
    command: ControlCommand

    @field_validator("scene", mode="before")
    @classmethod
    def coerce_scene(cls, value: Any) -> Any:
        return _scene_to_str(value)

    def to_message(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["type"] = "control"
        return data


Event = Union[DialogEvent, ControlEvent]

_EVENT_TYPES = {
    "dialog": DialogEvent,
    "control": ControlEvent,
}

# Stamped by the sender; a receiver never fills these in from its own clock
_REQUIRED_ON_WIRE = {
    "dialog": ("timestamp",),
}


def parse_message(raw: Any) -> Event:
    """
    Validate a raw channel message and return the typed event.

    Args:
        raw: A message as delivered by a Broker subscription.

    Returns:
        DialogEvent or ControlEvent.

    Raises:
        ProtocolError: If the message is not a mapping, has an unknown
            type, or misses required fields.
    """
    if isinstance(raw, (DialogEvent, ControlEvent)):
        return raw
    if not isinstance(raw, Mapping):
        raise ProtocolError(f"Expected a mapping, got {type(raw).__name__}")

    kind = raw.get("type")
    event_cls = _EVENT_TYPES.get(kind)
    if event_cls is None:
        raise ProtocolError(f"Unknown message type: {kind!r}")

    missing = [name for name in _REQUIRED_ON_WIRE.get(kind, ()) if name not in raw]
    if missing:
        raise ProtocolError(f"Malformed {kind} message: missing {', '.join(missing)}")

    payload = {k: v for k, v in raw.items() if k != "type"}
    try:
        return event_cls.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {kind} message: {e}") from e
