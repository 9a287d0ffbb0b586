"""
Configuration and YAML loading utilities.

Project settings live in ``config.yml`` at the project root. Character and
scene files are only read here; creating and editing them is left to the
project templates.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from writers_room.core.errors import WritersRoomError
from writers_room.core.types import CharacterProfile, SceneDefinition

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CHANNEL = "writers_room:dialog"
DEFAULT_MAX_LINES = 50


class ConfigError(WritersRoomError):
    """Exception raised for configuration errors."""

    pass


def get_env(key: str, default: str = None) -> str:
    """
    Get an environment variable or raise ConfigError if it's missing and no default is provided.
    """
    value = os.getenv(key, default)
    if value is None:
        raise ConfigError(f"Missing required environment variable: {key}")
    return value


# --- Config Models ---


class ModelConfig(BaseModel):
    name: str
    litellm_model: str
    api_key_env: Optional[str] = None
    api_base: Optional[str] = None
    max_tokens: int = 256
    temperature: float = 0.9
    timeout_seconds: int = 120
    max_retries: int = Field(default=3, ge=1)


class BrokerKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class BrokerConfig(BaseModel):
    kind: BrokerKind = BrokerKind.MEMORY
    url: str = "redis://localhost:6379/0"


class DirectorConfig(BaseModel):
    """Settings threaded into every Director and the Actors it creates."""

    max_lines: int = Field(default=DEFAULT_MAX_LINES, gt=0)
    channel: str = DEFAULT_CHANNEL
    transcript_dir: str = "transcripts"
    idle_timeout: float = Field(default=10.0, gt=0)
    max_generation_failures: int = Field(default=3, gt=0)
    strict: bool = False
    shutdown_grace: float = Field(default=5.0, ge=0)
    interjection_probability: float = Field(default=0.10, ge=0, le=1)
    history_window: int = Field(default=10, gt=0)
    seed: Optional[int] = None


class ProjectConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    provider: str = "ollama"
    model_name: str = "gpt-oss:20b"
    api_base: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.9
    max_tokens: int = 256
    timeout_seconds: int = 120
    max_retries: int = Field(default=3, ge=1)
    director: DirectorConfig = Field(default_factory=DirectorConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)

    def to_model_config(self) -> ModelConfig:
        """Build the LiteLLM model settings for this project."""
        api_base = self.api_base
        if api_base is None and self.provider == "ollama":
            api_base = "http://localhost:11434"
        return ModelConfig(
            name=self.model_name,
            litellm_model=f"{self.provider}/{self.model_name}",
            api_key_env=self.api_key_env,
            api_base=api_base,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
        )


# --- Loaders ---


def _load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except Exception as e:
        raise ConfigError(f"Failed to parse YAML file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


def load_project_config(path: Union[str, Path]) -> ProjectConfig:
    data = _load_yaml(path)
    try:
        return ProjectConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid project config {path}: {e}")


def load_character(path: Union[str, Path]) -> CharacterProfile:
    data = _load_yaml(path)
    try:
        return CharacterProfile(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid character file {path}: {e}")


def load_scene(path: Union[str, Path]) -> SceneDefinition:
    data = _load_yaml(path)
    try:
        return SceneDefinition(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid scene file {path}: {e}")


def _yaml_files(directory: Path) -> List[Path]:
    return sorted(list(directory.glob("*.yml")) + list(directory.glob("*.yaml")))


def load_characters(character_dir: Union[str, Path]) -> Dict[str, CharacterProfile]:
    """
    Load every character file in a directory, keyed by character name.

    Raises:
        ConfigError: If the directory is missing or two files share a name.
    """
    character_dir = Path(character_dir)
    if not character_dir.is_dir():
        raise ConfigError(f"Character directory not found: {character_dir}")

    cast: Dict[str, CharacterProfile] = {}
    for path in _yaml_files(character_dir):
        profile = load_character(path)
        if profile.name in cast:
            raise ConfigError(f"Duplicate character '{profile.name}' in {path}")
        cast[profile.name] = profile
    return cast


def find_scene_files(scene_dir: Union[str, Path]) -> List[Path]:
    """Return scene files in directory-glob order."""
    scene_dir = Path(scene_dir)
    if not scene_dir.is_dir():
        return []
    return _yaml_files(scene_dir)
