"""
Text-generation contract used by Actors.

Actors only ever see ``TextGenerator.generate(prompt) -> str``. Everything
provider-specific (request shape, response unwrapping, retries) lives in
the concrete generator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List

from writers_room.core.errors import WritersRoomError


class GenerationError(WritersRoomError):
    """Raised when a generator fails or returns no usable dialog."""

    pass


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str

    def to_messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


class TextGenerator(ABC):
    @abstractmethod
    async def generate(self, prompt: Prompt) -> str:
        """Return the raw text produced for a prompt."""
        ...
