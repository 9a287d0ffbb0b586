"""
Scene transcript and the plain-text transcript file format.

One line per DialogEvent, ``"<CharacterName>: <dialogue text>\\n"``, in
emission order. Reports attribute lines by matching a leading run of word
characters followed by a colon, so writers and readers must agree on this
format exactly.
"""

import re
from pathlib import Path
from typing import Dict, List, Union

from writers_room.core.types import SceneStatistics
from writers_room.messaging.protocol import DialogEvent

LINE_PATTERN = re.compile(r"^(\w+):")


class Transcript:
    """Ordered, append-only record of one scene's dialog."""

    def __init__(self, scene_id: str):
        self.scene_id = scene_id
        self._events: List[DialogEvent] = []
        self.finalized = False

    def append(self, event: DialogEvent) -> bool:
        """Record a line. Returns False once the transcript is finalized."""
        if self.finalized:
            return False
        self._events.append(event)
        return True

    def finalize(self) -> None:
        self.finalized = True

    @property
    def events(self) -> List[DialogEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def statistics(self) -> SceneStatistics:
        counts: Dict[str, int] = {}
        for event in self._events:
            counts[event.speaker] = counts.get(event.speaker, 0) + 1
        return SceneStatistics(total_lines=len(self._events), lines_by_character=counts)

    def to_text(self) -> str:
        return "".join(format_line(e.speaker, e.content) for e in self._events)

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_text(), encoding="utf-8")
        return path


def format_line(speaker: str, content: str) -> str:
    # Embedded newlines would split one line into several report entries
    flat = " ".join(content.splitlines())
    return f"{speaker}: {flat}\n"


def count_lines(text: str) -> SceneStatistics:
    """Attribute transcript lines to characters by their ``Name:`` prefix."""
    counts: Dict[str, int] = {}
    total = 0
    for line in text.splitlines():
        if not line.strip():
            continue
        match = LINE_PATTERN.match(line)
        if match is None:
            continue
        character = match.group(1)
        counts[character] = counts.get(character, 0) + 1
        total += 1
    return SceneStatistics(total_lines=total, lines_by_character=counts)


def read_transcript(path: Union[str, Path]) -> SceneStatistics:
    return count_lines(Path(path).read_text(encoding="utf-8"))
