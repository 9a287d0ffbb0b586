"""
Production event log.

Every scene start and end, recorded line, cue, generation failure, cut and
LLM call is appended to ``<logs>/<run_id>/events.jsonl`` as it happens and
kept in memory for queries during the run.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class EventType(str, Enum):
    SCENE_START = "scene_start"
    SCENE_END = "scene_end"
    DIALOG = "dialog"
    CUE = "cue"
    GENERATION_ERROR = "generation_error"
    CUT = "cut"
    LLM_CALL = "llm_call"


@dataclass
class Event:
    """One entry of the production event log."""

    type: EventType
    scene_id: str
    run_id: str
    character: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["type"] = self.type.value
        record["timestamp"] = self.timestamp.isoformat()
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Event":
        return cls(
            type=EventType(record["type"]),
            scene_id=record.get("scene_id", ""),
            run_id=record.get("run_id", ""),
            character=record.get("character"),
            payload=record.get("payload") or {},
            timestamp=datetime.fromisoformat(record["timestamp"]),
        )


class EventLogger:
    """
    Append-only event log for one production run.

    With an ``output_dir`` each event is flushed to JSONL on ``log()``;
    without one the log lives in memory only.
    """

    def __init__(self, run_id: str, output_dir: Optional[str] = None):
        self.run_id = run_id
        self._events: List[Event] = []
        self._output_path: Optional[Path] = None

        if output_dir:
            run_dir = Path(output_dir) / run_id
            run_dir.mkdir(parents=True, exist_ok=True)
            self._output_path = run_dir / "events.jsonl"

    def log(self, event: Event) -> None:
        self._events.append(event)
        if self._output_path is None:
            return
        with open(self._output_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_record(), default=str) + "\n")

    def get_events(
        self,
        character: Optional[str] = None,
        event_type: Optional[EventType] = None,
        scene_id: Optional[str] = None,
    ) -> List[Event]:
        """Return logged events in order, narrowed by any filters given."""
        return [
            e for e in self._events
            if (character is None or e.character == character)
            and (event_type is None or e.type == event_type)
            and (scene_id is None or e.scene_id == scene_id)
        ]

    def character_activity(self, scene_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """
        Per-character counts of recorded lines, cues received and failed
        generations.
        """
        counters = {
            EventType.DIALOG: "lines",
            EventType.CUE: "cues",
            EventType.GENERATION_ERROR: "failures",
        }
        activity: Dict[str, Dict[str, int]] = {}
        for event in self.get_events(scene_id=scene_id):
            key = counters.get(event.type)
            if key is None or event.character is None:
                continue
            entry = activity.setdefault(event.character, {"lines": 0, "cues": 0, "failures": 0})
            entry[key] += 1
        return activity

    def clear(self) -> None:
        """Forget in-memory events; the JSONL file is left alone."""
        self._events.clear()

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def output_path(self) -> Optional[Path]:
        return self._output_path


def load_events(path: Union[str, Path]) -> List[Event]:
    """
    Read an events.jsonl file back into Events.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Events file not found: {path}")

    events: List[Event] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_record(json.loads(line)))
    return events
