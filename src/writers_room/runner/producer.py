"""
Producer: runs a production scene by scene.

Manages the outer loop (project config, scene discovery, per-scene result
collection) while delegating each conversation to a Director. A failure in
one scene is recorded and never stops the remaining scenes.
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from writers_room.core.config import (
    BrokerKind,
    ConfigError,
    DirectorConfig,
    ProjectConfig,
    find_scene_files,
    load_characters,
    load_project_config,
    load_scene,
)
from writers_room.core.types import ProductionResult, ProductionStatus, SceneStatistics
from writers_room.director.director import Director, StopReason
from writers_room.director.transcript import read_transcript
from writers_room.messaging.broker import Broker, InMemoryBroker
from writers_room.models.generator import TextGenerator
from writers_room.models.provider import ModelProvider
from writers_room.observability.event_logger import EventLogger

logger = logging.getLogger(__name__)

_STATUS_BY_REASON = {
    StopReason.NORMAL: ProductionStatus.COMPLETED,
    StopReason.CUT: ProductionStatus.CUT,
    StopReason.ERROR: ProductionStatus.FAILED,
}


class Producer:
    """
    Runs every scene of a project through its own Director, in order.

    Project layout:
        <project>/config.yml
        <project>/characters/*.yml
        <project>/scenes/*.yml
        <project>/transcripts/   (written)
        <project>/logs/          (written)
    """

    def __init__(
        self,
        project_path: Union[str, Path] = ".",
        config: Optional[ProjectConfig] = None,
        generator: Optional[TextGenerator] = None,
        broker: Optional[Broker] = None,
        run_id: Optional[str] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        """
        Initialize the Producer.

        Args:
            project_path: Root directory of the production.
            config: Project configuration (defaults apply when omitted).
            generator: Text generator shared by all Actors. Built from the
                config's model settings when omitted.
            broker: Channel transport. Built from the config's broker
                settings when omitted.
            run_id: Identifier for this run's event log.
            event_logger: Override the JSONL event logger.
        """
        self.project_path = Path(project_path).resolve()
        self.config = config or ProjectConfig()
        self.run_id = run_id or datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        self.event_logger = event_logger or EventLogger(
            run_id=self.run_id,
            output_dir=str(self.logs_dir),
        )
        self.generator = generator
        self.broker = broker
        self._owns_broker = broker is None
        self.results: List[ProductionResult] = []
        self.current_director: Optional[Director] = None
        self._interrupted = False
        self._start_time: Optional[float] = None

    @classmethod
    def from_project(cls, project_path: Union[str, Path] = ".", **kwargs: Any) -> "Producer":
        """
        Create a Producer for a project directory containing config.yml.

        Raises:
            ConfigError: If config.yml is missing or invalid.
        """
        config_path = Path(project_path) / "config.yml"
        if not config_path.exists():
            raise ConfigError(f"No config.yml found in {Path(project_path).resolve()}")
        return cls(project_path, config=load_project_config(config_path), **kwargs)

    @property
    def characters_dir(self) -> Path:
        return self.project_path / "characters"

    @property
    def scenes_dir(self) -> Path:
        return self.project_path / "scenes"

    @property
    def transcripts_dir(self) -> Path:
        return self.project_path / "transcripts"

    @property
    def logs_dir(self) -> Path:
        return self.project_path / "logs"

    def discover_scenes(self) -> List[Path]:
        return find_scene_files(self.scenes_dir)

    def init_generator(self) -> TextGenerator:
        if self.generator is None:
            self.generator = ModelProvider(
                self.config.to_model_config(),
                event_logger=self.event_logger,
                run_id=self.run_id,
            )
        return self.generator

    def init_broker(self) -> Broker:
        if self.broker is None:
            if self.config.broker.kind == BrokerKind.REDIS:
                from writers_room.messaging.redis_broker import RedisBroker

                self.broker = RedisBroker(self.config.broker.url)
            else:
                self.broker = InMemoryBroker()
        return self.broker

    def _director_config(
        self,
        max_lines: Optional[int],
        output_dir: Optional[Union[str, Path]],
    ) -> DirectorConfig:
        update: Dict[str, Any] = {
            "transcript_dir": str(output_dir or self.transcripts_dir),
        }
        if max_lines is not None:
            if max_lines <= 0:
                raise ConfigError(f"max_lines must be positive, got {max_lines}")
            update["max_lines"] = max_lines
        return self.config.director.model_copy(update=update)

    async def produce(
        self,
        scene_files: Optional[Union[str, Path, Sequence[Union[str, Path]]]] = None,
        max_lines: Optional[int] = None,
        output_dir: Optional[Union[str, Path]] = None,
    ) -> List[ProductionResult]:
        """
        Produce scenes sequentially.

        Args:
            scene_files: Scene files in the order to run. Defaults to every
                scene in ``scenes/`` in glob order.
            max_lines: Override the per-scene line ceiling.
            output_dir: Override the transcript directory.

        Returns:
            One ProductionResult per scene attempted, in order.

        Raises:
            ConfigError: If there are no scenes or the run-wide settings are
                invalid. Raised before any scene starts.
        """
        if scene_files is None:
            scene_files = self.discover_scenes()
        elif isinstance(scene_files, (str, Path)):
            scene_files = [scene_files]
        scene_paths = [Path(f) for f in scene_files]
        if not scene_paths:
            raise ConfigError(f"No scene files found in {self.scenes_dir}")

        director_config = self._director_config(max_lines, output_dir)
        generator = self.init_generator()
        broker = self.init_broker()

        self._start_time = time.time()
        self._interrupted = False
        self.results = []
        logger.info(f"Starting production {self.run_id}: {len(scene_paths)} scenes")

        try:
            for i, scene_path in enumerate(scene_paths):
                if self._interrupted:
                    logger.warning(f"Production interrupted, skipping {len(scene_paths) - i} scenes")
                    break
                logger.info(f"Producing scene {i + 1}/{len(scene_paths)}: {scene_path.name}")
                result = await self._produce_scene(scene_path, generator, broker, director_config)
                self.results.append(result)
        finally:
            if self._owns_broker:
                await broker.close()
                self.broker = None

        elapsed = time.time() - self._start_time
        completed = sum(1 for r in self.results if r.status == ProductionStatus.COMPLETED)
        logger.info(
            f"Production complete: {completed}/{len(self.results)} scenes completed "
            f"in {elapsed:.1f}s"
        )
        return self.results

    async def _produce_scene(
        self,
        scene_path: Path,
        generator: TextGenerator,
        broker: Broker,
        director_config: DirectorConfig,
    ) -> ProductionResult:
        director: Optional[Director] = None
        try:
            scene = load_scene(scene_path)
            cast = load_characters(self.characters_dir)
            director = Director(
                scene,
                cast,
                generator,
                broker=broker,
                config=director_config,
                event_logger=self.event_logger,
                run_id=self.run_id,
            )
            if isinstance(generator, ModelProvider):
                generator.set_context(scene.scene_id, self.run_id)
            self.current_director = director

            reason = await director.action()
            transcript_path = director.save_transcript()
            status = _STATUS_BY_REASON[reason]
            return ProductionResult(
                scene=str(scene_path),
                status=status,
                transcript_path=str(transcript_path),
                statistics=director.statistics(),
                error=director.error if status == ProductionStatus.FAILED else None,
            )
        except Exception as e:
            logger.error(f"Error producing scene {scene_path.name}: {e}")
            return ProductionResult(
                scene=str(scene_path),
                status=ProductionStatus.FAILED,
                statistics=director.statistics() if director else SceneStatistics(),
                error=str(e),
            )
        finally:
            if director is not None:
                await director.cut()
            self.current_director = None

    async def cut(self) -> None:
        """Cut the scene in progress and skip the scenes that remain."""
        self._interrupted = True
        director = self.current_director
        if director is not None:
            await director.cut()

    def get_summary(self) -> Dict[str, Any]:
        """
        Return a summary of the last production run.

        Returns:
            Dict with per-status counts, the combined line total and the
            per-character activity taken from the event log.
        """
        by_status = {status: 0 for status in ProductionStatus}
        for result in self.results:
            by_status[result.status] += 1
        return {
            "run_id": self.run_id,
            "total_scenes": len(self.results),
            "completed": by_status[ProductionStatus.COMPLETED],
            "cut": by_status[ProductionStatus.CUT],
            "failed": by_status[ProductionStatus.FAILED],
            "total_lines": sum(r.statistics.total_lines for r in self.results),
            "activity": self.event_logger.character_activity(),
        }

    def generate_report(self) -> Dict[str, Any]:
        """
        Count lines per character across every transcript on disk.

        Returns:
            Dict with total_scenes, total_lines, lines_by_character and the
            transcript file names. Empty when there is no transcripts/ dir.
        """
        if not self.transcripts_dir.is_dir():
            return {}

        transcripts = sorted(self.transcripts_dir.glob("*.txt"))
        total_lines = 0
        lines_by_character: Dict[str, int] = {}
        for transcript in transcripts:
            stats = read_transcript(transcript)
            total_lines += stats.total_lines
            for character, count in stats.lines_by_character.items():
                lines_by_character[character] = lines_by_character.get(character, 0) + count

        return {
            "total_scenes": len(transcripts),
            "total_lines": total_lines,
            "lines_by_character": lines_by_character,
            "transcripts": [t.name for t in transcripts],
        }
