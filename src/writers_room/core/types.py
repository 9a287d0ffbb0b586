"""
Core type definitions for characters, scenes and production results.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Transcript lines are attributed by a leading run of word characters
CHARACTER_NAME = re.compile(r"\w+")


def sanitize_filename(name: str) -> str:
    """Lowercase a name and collapse anything non-alphanumeric to underscores."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


class CharacterProfile(BaseModel):
    """Immutable description of one character in the cast."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    personality: str = ""
    voice_pattern: str = ""
    relationships: Dict[str, str] = Field(default_factory=dict)
    current_arc: str = ""
    age: Optional[int] = None
    sport: Optional[str] = None
    background: str = ""

    @model_validator(mode="before")
    @classmethod
    def flatten_traits(cls, data: Any) -> Any:
        # Template files nest personality/speaking_style/background under "traits"
        if not isinstance(data, dict) or not isinstance(data.get("traits"), dict):
            return data
        data = dict(data)
        traits = data.pop("traits")
        data.setdefault("personality", traits.get("personality", ""))
        data.setdefault("voice_pattern", traits.get("speaking_style", ""))
        data.setdefault("background", traits.get("background", ""))
        return data

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not CHARACTER_NAME.fullmatch(value):
            raise ValueError(
                f"Character name {value!r} must be a single word of letters, digits or underscores"
            )
        return value

    @field_validator("relationships", mode="before")
    @classmethod
    def stringify_relationships(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class SceneDefinition(BaseModel):
    """Immutable description of one scene."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    scene_number: Optional[int] = None
    scene_name: str = Field(min_length=1)
    location: str = ""
    week: Optional[int] = None
    objectives: str = ""
    characters: List[str] = Field(default_factory=list)
    context: str = ""
    description: str = ""

    @field_validator("objectives", mode="before")
    @classmethod
    def join_objectives(cls, value: Union[str, List[str], None]) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return "; ".join(str(v) for v in value)
        return value

    @field_validator("characters", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def scene_id(self) -> str:
        """Identifier carried in every event of this scene."""
        if self.scene_number is not None:
            return str(self.scene_number)
        return sanitize_filename(self.scene_name)


@dataclass
class SceneStatistics:
    total_lines: int = 0
    lines_by_character: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "lines_by_character": dict(self.lines_by_character),
        }


class ProductionStatus(str, Enum):
    COMPLETED = "completed"
    CUT = "cut"
    FAILED = "failed"


@dataclass
class ProductionResult:
    """Outcome of producing a single scene."""

    scene: str
    status: ProductionStatus
    transcript_path: Optional[str] = None
    statistics: SceneStatistics = field(default_factory=SceneStatistics)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "scene": self.scene,
            "transcript_path": self.transcript_path,
            "statistics": self.statistics.to_dict(),
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error
        return data
