"""
Director: lifecycle owner for one scene's conversation.

The Director brings up one Actor per participant on a shared channel,
records every line of its scene into the Transcript, enforces the
``max_lines`` ceiling centrally, cues a participant whenever the
conversation stalls, and tears everything down on ``cut()``.

    IDLE --start()--> RUNNING --max_lines--> STOPPED(normal)
                              --cut()------> STOPPED(cut)
                              --failures---> STOPPED(error)
"""

import asyncio
import logging
import random
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from writers_room.agents.actor import Actor
from writers_room.core.config import DirectorConfig, ConfigError, load_characters, load_scene
from writers_room.core.errors import WritersRoomError
from writers_room.core.types import CharacterProfile, SceneDefinition, SceneStatistics, sanitize_filename
from writers_room.director.transcript import Transcript
from writers_room.messaging.broker import Broker, InMemoryBroker, Subscription
from writers_room.messaging.protocol import (
    ControlCommand,
    ControlEvent,
    DialogEvent,
    ProtocolError,
    parse_message,
)
from writers_room.models.generator import TextGenerator
from writers_room.observability.event_logger import Event, EventLogger, EventType

logger = logging.getLogger(__name__)

STALL_CONTEXT = "The conversation has stalled. Say something that moves the scene forward."


class DirectorError(WritersRoomError):
    """Raised when the Director is driven out of order."""

    pass


class SceneState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class StopReason(str, Enum):
    NORMAL = "normal"
    CUT = "cut"
    ERROR = "error"


class Director:
    """
    Supervises one scene.

    Actors react to each other independently; the Director only observes
    the channel, counts lines, and decides when the scene is over.
    Generation failures never crash the scene: each one is a turn with no
    line, and ``max_generation_failures`` consecutive failures (one when
    ``strict``) end the scene with StopReason.ERROR.
    """

    def __init__(
        self,
        scene: SceneDefinition,
        cast: Mapping[str, CharacterProfile],
        generator: TextGenerator,
        broker: Optional[Broker] = None,
        config: Optional[DirectorConfig] = None,
        rng: Optional[random.Random] = None,
        event_logger: Optional[EventLogger] = None,
        run_id: str = "",
    ):
        self.scene = scene
        self.cast = dict(cast)
        self.generator = generator
        self.broker = broker or InMemoryBroker()
        self.config = config or DirectorConfig()
        self.event_logger = event_logger
        self.run_id = run_id or f"scene-{scene.scene_id}"
        self._rng = rng or random.Random(self.config.seed)

        self.state = SceneState.IDLE
        self.stop_reason: Optional[StopReason] = None
        self.error: Optional[str] = None
        self.transcript = Transcript(scene.scene_id)
        self.actors: List[Actor] = []
        self.failures: List[str] = []

        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self._closed = asyncio.Event()
        self._closing = False
        self._consecutive_failures = 0
        self._last_activity = 0.0
        self._last_speaker: Optional[str] = None
        self._cue_index = 0

    @classmethod
    def from_files(
        cls,
        scene_file: Union[str, Path],
        character_dir: Union[str, Path],
        generator: TextGenerator,
        **kwargs: Any,
    ) -> "Director":
        """
        Create a Director from a scene file and a directory of characters.

        Raises:
            ConfigError: If either source cannot be loaded.
        """
        scene = load_scene(scene_file)
        cast = load_characters(character_dir)
        return cls(scene, cast, generator, **kwargs)

    @property
    def scene_id(self) -> str:
        return self.scene.scene_id

    @property
    def channel(self) -> str:
        return self.config.channel

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Bring the scene up: subscribe, create the Actors, start the cues.

        Raises:
            ConfigError: If the channel or a participant binding is invalid.
            DirectorError: If the scene was already started or cut.
        """
        if self.state is not SceneState.IDLE:
            raise DirectorError(f"Scene {self.scene_id} cannot start from state {self.state.value}")

        profiles = self._resolve_cast()

        self._subscriptions.append(await self.broker.subscribe(self.channel))
        pairs: List[Tuple[Actor, Subscription]] = []
        for profile in profiles:
            actor = Actor(
                profile,
                self.generator,
                self.broker,
                channel=self.channel,
                rng=random.Random(self._rng.getrandbits(64)),
                interjection_probability=self.config.interjection_probability,
                history_window=self.config.history_window,
                on_generation_error=self._on_generation_error,
            )
            actor.assign_scene(self.scene)
            subscription = await self.broker.subscribe(self.channel)
            self._subscriptions.append(subscription)
            self.actors.append(actor)
            pairs.append((actor, subscription))

        if self._closing:
            # cut() ran while we were subscribing
            await self._detach()
            return

        self.state = SceneState.RUNNING
        self._touch()
        logger.info(
            f"Scene {self.scene_id} '{self.scene.scene_name}' running with "
            f"{', '.join(a.name for a in self.actors)} (max {self.config.max_lines} lines)"
        )
        self._log_event(EventType.SCENE_START, payload={
            "scene_name": self.scene.scene_name,
            "characters": [a.name for a in self.actors],
            "max_lines": self.config.max_lines,
        })
        await self._broadcast(ControlCommand.START)

        self._tasks.append(asyncio.create_task(self._record_loop(self._subscriptions[0])))
        for actor, subscription in pairs:
            self._tasks.append(asyncio.create_task(actor.perform(subscription)))
        self._tasks.append(asyncio.create_task(self._watch()))

    async def wait(self) -> StopReason:
        """Block until the scene leaves RUNNING."""
        await self._stopped.wait()
        return self.stop_reason

    async def action(self) -> StopReason:
        """Start the scene, wait for it to stop, and always tear it down."""
        try:
            await self.start()
            await self.wait()
        finally:
            await self.cut()
        return self.stop_reason

    async def cut(self) -> None:
        """
        Stop the scene now and release its resources.

        Idempotent and safe to call concurrently or from an interrupt
        handler: later callers wait for the first teardown to finish. The
        transcript recorded so far is kept.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True

        try:
            if self.state is SceneState.RUNNING:
                self._stop(StopReason.CUT)
                self._log_event(EventType.CUT, payload={"lines": len(self.transcript)})
            elif self.state is SceneState.IDLE:
                self.state = SceneState.STOPPED
                self.stop_reason = StopReason.CUT
                self._stopped.set()

            for actor in self.actors:
                actor.stop()
            await self._broadcast(ControlCommand.STOP)
            await self._detach()
        finally:
            self.transcript.finalize()
            self._closed.set()
            stats = self.statistics()
            self._log_event(EventType.SCENE_END, payload={
                "reason": self.stop_reason.value if self.stop_reason else None,
                "total_lines": stats.total_lines,
                "error": self.error,
            })
            logger.info(
                f"Scene {self.scene_id} wrapped ({self.stop_reason.value}): "
                f"{stats.total_lines} lines"
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def statistics(self) -> SceneStatistics:
        """Line counts computed from the transcript; valid in any state."""
        return self.transcript.statistics()

    def default_transcript_path(self) -> Path:
        stem = sanitize_filename(self.scene.scene_name) or f"scene_{self.scene_id}"
        return Path(self.config.transcript_dir) / f"{stem}.txt"

    def save_transcript(self, path: Optional[Union[str, Path]] = None) -> Path:
        """
        Write the transcript file.

        Args:
            path: Target file. Defaults to
                ``<transcript_dir>/<sanitized scene name>.txt``.

        Returns:
            The path written.
        """
        target = Path(path) if path else self.default_transcript_path()
        saved = self.transcript.save(target)
        logger.info(f"Transcript for scene {self.scene_id} saved to {saved}")
        return saved

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_cast(self) -> List[CharacterProfile]:
        if not self.channel:
            raise ConfigError("Channel name must not be empty")
        if not self.scene.characters:
            raise ConfigError(f"Scene '{self.scene.scene_name}' lists no characters")

        missing = [name for name in self.scene.characters if name not in self.cast]
        if missing:
            raise ConfigError(
                f"Scene '{self.scene.scene_name}' references unknown characters: {', '.join(missing)}"
            )
        return [self.cast[name] for name in self.scene.characters]

    async def _record_loop(self, subscription: Subscription) -> None:
        async for raw in subscription:
            try:
                event = parse_message(raw)
            except ProtocolError as e:
                logger.debug(f"Director dropped malformed message: {e}")
                continue
            if isinstance(event, DialogEvent):
                self._record(event)

    def _record(self, event: DialogEvent) -> None:
        if event.scene != self.scene_id:
            return
        if self.state is not SceneState.RUNNING:
            logger.debug(f"Scene {self.scene_id} stopped, ignoring line from {event.speaker}")
            return

        self.transcript.append(event)
        self._consecutive_failures = 0
        self._last_speaker = event.speaker
        self._touch()
        logger.info(f"{event.speaker}: {event.content}")
        self._log_event(EventType.DIALOG, character=event.speaker, payload={
            "line": len(self.transcript),
            "content": event.content,
        })

        if len(self.transcript) >= self.config.max_lines:
            self._stop(StopReason.NORMAL)

    def _stop(self, reason: StopReason, error: Optional[str] = None) -> bool:
        if self.state is not SceneState.RUNNING:
            return False
        self.state = SceneState.STOPPED
        self.stop_reason = reason
        self.error = error
        for actor in self.actors:
            actor.stop()
        self._stopped.set()
        logger.info(f"Scene {self.scene_id} stopped: {reason.value}")
        return True

    def _on_generation_error(self, actor: Actor, error: Exception) -> None:
        self._touch()
        if self.state is not SceneState.RUNNING:
            return

        message = f"{actor.name}: {error}"
        self.failures.append(message)
        self._consecutive_failures += 1
        logger.warning(f"No line from {message}")
        self._log_event(EventType.GENERATION_ERROR, character=actor.name, payload={
            "error": str(error),
            "consecutive": self._consecutive_failures,
        })

        limit = 1 if self.config.strict else self.config.max_generation_failures
        if self._consecutive_failures >= limit:
            self._stop(
                StopReason.ERROR,
                error=f"{self._consecutive_failures} consecutive generation failures (last: {message})",
            )

    async def _watch(self) -> None:
        """
        Open the scene, then cue someone whenever nobody has spoken for a
        while. A reply still being generated counts as activity.
        """
        loop = asyncio.get_running_loop()
        await self._cue(opening=True)

        while self.state is SceneState.RUNNING:
            if any(actor.generating for actor in self.actors):
                self._touch()
            remaining = self._last_activity + self.config.idle_timeout - loop.time()
            if remaining > 0:
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
                continue
            await self._cue()

    async def _cue(self, opening: bool = False) -> None:
        actor = self._next_cue()
        if actor is None or self.state is not SceneState.RUNNING:
            return

        logger.debug(f"Cueing {actor.name}{' to open the scene' if opening else ''}")
        self._log_event(EventType.CUE, character=actor.name, payload={"opening": opening})
        try:
            await actor.speak(context=None if opening else STALL_CONTEXT)
        except Exception as e:
            self._on_generation_error(actor, e)
        finally:
            self._touch()

    def _next_cue(self) -> Optional[Actor]:
        count = len(self.actors)
        if count == 0:
            return None
        for offset in range(count):
            index = (self._cue_index + offset) % count
            actor = self.actors[index]
            if count > 1 and actor.name == self._last_speaker:
                continue
            self._cue_index = (index + 1) % count
            return actor
        return None

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    async def _broadcast(self, command: ControlCommand) -> None:
        message = ControlEvent(scene=self.scene_id, command=command).to_message()
        try:
            await self.broker.publish(self.channel, message)
        except Exception as e:
            logger.warning(f"Could not broadcast {command.value} for scene {self.scene_id}: {e}")

    async def _detach(self) -> None:
        for subscription in self._subscriptions:
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Error closing subscription on {subscription.channel}: {e}")

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        for task in self._tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                logger.error(f"Scene {self.scene_id} task failed: {task.exception()}")

    def _log_event(
        self,
        event_type: EventType,
        character: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.event_logger is None:
            return
        self.event_logger.log(Event(
            type=event_type,
            scene_id=self.scene_id,
            run_id=self.run_id,
            character=character,
            payload=payload or {},
        ))
