"""
Character-driven Actor that listens on the dialog channel and decides,
turn by turn, whether to speak.
"""

import logging
import random
import re
from typing import Callable, List, Optional

from writers_room.core.config import DEFAULT_CHANNEL
from writers_room.core.types import CharacterProfile, SceneDefinition
from writers_room.messaging.broker import Broker, Subscription
from writers_room.messaging.protocol import (
    ControlCommand,
    ControlEvent,
    DialogEvent,
    ProtocolError,
    parse_message,
)
from writers_room.models.generator import GenerationError, Prompt, TextGenerator

logger = logging.getLogger(__name__)

GenerationErrorHandler = Callable[["Actor", Exception], None]

_WRAPPING_QUOTES = re.compile(r"^[\"']|[\"']$")
_NAME_PREFIX = re.compile(r"^\w+:\s*")


def clean_dialog(text: str) -> str:
    """Strip whitespace, wrapping quotes and an echoed ``Name:`` prefix."""
    dialog = _WRAPPING_QUOTES.sub("", text.strip())
    dialog = _NAME_PREFIX.sub("", dialog)
    return dialog.strip()


class Actor:
    """
    One character's independent turn-taking and dialog-generation unit.

    The Actor keeps its own conversation history for the assigned scene and
    reacts to each observed line. It never waits on other Actors and has no
    view of the Director's line budget.
    """

    def __init__(
        self,
        profile: CharacterProfile,
        generator: TextGenerator,
        broker: Broker,
        channel: str = DEFAULT_CHANNEL,
        rng: Optional[random.Random] = None,
        interjection_probability: float = 0.10,
        history_window: int = 10,
        on_generation_error: Optional[GenerationErrorHandler] = None,
    ):
        self.profile = profile
        self.name = profile.name
        self.generator = generator
        self.broker = broker
        self.channel = channel
        self.interjection_probability = interjection_probability
        self.history_window = history_window
        self.on_generation_error = on_generation_error
        self._rng = rng or random.Random()

        self.scene: Optional[SceneDefinition] = None
        self.history: List[DialogEvent] = []
        self.stopped = False
        self.generating = False

    @property
    def scene_id(self) -> Optional[str]:
        return self.scene.scene_id if self.scene is not None else None

    # ------------------------------------------------------------------
    # Scene binding and observation
    # ------------------------------------------------------------------

    def assign_scene(self, scene: SceneDefinition) -> None:
        """Bind the Actor to a scene and start with an empty history."""
        self.scene = scene
        self.history = []
        self.stopped = False
        logger.debug(f"Scene '{scene.scene_name}' ({scene.scene_id}) set for {self.name}")

    def observe(self, event: DialogEvent) -> bool:
        """
        Append an event to the history if it belongs to the current scene.

        Returns:
            True if the event was recorded, False if it was discarded.
        """
        if self.scene is None or event.scene != self.scene.scene_id:
            return False
        self.history.append(event)
        return True

    def decide(self, trigger: DialogEvent) -> bool:
        """
        Turn-taking policy, evaluated right after observing ``trigger``.

        1. Addressed by name anywhere in the line: respond.
        2. The line before the trigger was not ours and we spoke fewer than
           two of the last three lines: respond.
        3. Otherwise interject with ``interjection_probability``.
        """
        if self.name in trigger.content:
            return True

        last_speaker = self.history[-2].speaker if len(self.history) >= 2 else None
        own_recent = sum(1 for entry in self.history[-3:] if entry.speaker == self.name)
        if last_speaker != self.name and own_recent < 2:
            return True

        return self._rng.random() < self.interjection_probability

    # ------------------------------------------------------------------
    # Dialog generation and publishing
    # ------------------------------------------------------------------

    async def generate(self, context: Optional[str] = None) -> str:
        """
        Generate the next line for this character.

        Args:
            context: Extra situational text appended to the prompt.

        Returns:
            Plain dialog text.

        Raises:
            GenerationError: If the generator returned nothing usable.
            Exception: Whatever the generator raised; no retry happens here.
        """
        if self.scene is None:
            raise RuntimeError(f"{self.name} has no scene assigned")

        prompt = Prompt(system=self._build_system_prompt(), user=self._build_user_prompt(context))
        logger.debug(
            f"Generating dialog for {self.name} "
            f"(system={len(prompt.system)}, user={len(prompt.user)} chars)"
        )

        raw = await self.generator.generate(prompt)
        dialog = clean_dialog(raw or "")
        if not dialog:
            raise GenerationError(f"Empty dialog generated for {self.name}")
        return dialog

    async def publish(
        self,
        text: str,
        emotion: Optional[str] = None,
        addressing: Optional[str] = None,
    ) -> Optional[DialogEvent]:
        """
        Publish a line on the shared channel.

        Returns:
            The published event, or None when the Actor has been stopped and
            the line was discarded.
        """
        if self.stopped or self.scene is None:
            logger.debug(f"{self.name} is off stage, discarding line: {text}")
            return None

        event = DialogEvent(
            speaker=self.name,
            content=text,
            scene=self.scene.scene_id,
            emotion=emotion,
            addressing=addressing,
        )
        await self.broker.publish(self.channel, event.to_message())
        logger.debug(f"{self.name} spoke: {text}")
        return event

    async def speak(
        self,
        context: Optional[str] = None,
        addressing: Optional[str] = None,
    ) -> Optional[DialogEvent]:
        """Generate a line and publish it."""
        self.generating = True
        try:
            dialog = await self.generate(context=context)
        finally:
            self.generating = False
        return await self.publish(dialog, addressing=addressing)

    async def react_to(self, event: DialogEvent) -> Optional[DialogEvent]:
        """
        Observe an incoming line and respond if the policy says so.

        Returns:
            The published response, or None if the Actor stayed silent.
        """
        if not self.observe(event):
            return None
        if event.speaker == self.name or self.stopped:
            return None
        if not self.decide(event):
            return None

        logger.debug(f"{self.name} deciding to respond to {event.speaker}")
        return await self.speak(
            context=f"Responding to {event.speaker}: '{event.content}'",
            addressing=event.speaker,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def perform(self, subscription: Subscription) -> None:
        """
        React to every message on the subscription until stopped.

        A stop ControlEvent for the current scene ends the performance.
        Malformed messages are dropped. Generation failures go to
        ``on_generation_error``.
        """
        logger.info(f"{self.name} performing on channel {subscription.channel}")

        async for raw in subscription:
            if self.stopped:
                break

            try:
                event = parse_message(raw)
            except ProtocolError as e:
                logger.debug(f"{self.name} dropped malformed message: {e}")
                continue

            if isinstance(event, ControlEvent):
                if event.scene == self.scene_id and event.command == ControlCommand.STOP:
                    self.stop()
                    break
                continue

            try:
                await self.react_to(event)
            except Exception as e:
                self._handle_generation_error(e)

        logger.info(f"{self.name} left the stage")

    def stop(self) -> None:
        """Stop reacting; any line still being generated is discarded."""
        if not self.stopped:
            self.stopped = True
            logger.debug(f"{self.name} stopping")

    def _handle_generation_error(self, error: Exception) -> None:
        if self.on_generation_error is not None:
            self.on_generation_error(self, error)
        else:
            logger.warning(f"{self.name} failed to generate a line: {error}")

    # ------------------------------------------------------------------
    # Prompt construction
    # ------------------------------------------------------------------

    def _build_system_prompt(self) -> str:
        profile = self.profile
        scene = self.scene
        others = ", ".join(c for c in scene.characters if c != self.name) or "none"
        lines = [
            f"You are {self.name}, a character in an ongoing play.",
            "",
            "CHARACTER PROFILE:",
            f"Name: {self.name}",
            f"Age: {profile.age if profile.age is not None else 16}",
            f"Personality: {profile.personality}",
            f"Voice Pattern: {profile.voice_pattern}",
        ]
        if profile.sport:
            lines.append(f"Sport/Activity: {profile.sport}")
        if profile.background:
            lines.append(f"Background: {profile.background}")
        lines += [
            "",
            "CURRENT CHARACTER ARC:",
            profile.current_arc or "Not specified",
            "",
            "RELATIONSHIPS:",
            self._format_relationships(),
            "",
            "SCENE CONTEXT:",
            f"Scene: {scene.scene_name} (Scene {scene.scene_id})",
            f"Location: {scene.location}",
        ]
        if scene.week is not None:
            lines.append(f"Week: {scene.week}")
        lines += [
            f"Your Objective: {scene.objectives}",
            f"Other Characters Present: {others}",
        ]
        if scene.context:
            lines.append(f"Context: {scene.context}")
        lines += [
            "",
            "INSTRUCTIONS:",
            "- Stay completely in character and use your voice pattern consistently",
            "- Respond naturally to the other characters based on your relationships",
            "- Do not narrate actions, only speak dialog",
            "- Keep responses concise (1-3 sentences typically)",
            "",
            "RESPONSE FORMAT:",
            "Respond with ONLY the dialog your character would say. No quotation marks, "
            f"no stage directions, no character name prefix. Just the words {self.name} would speak.",
        ]
        return "\n".join(lines)

    def _build_user_prompt(self, context: Optional[str] = None) -> str:
        prompt = "CONVERSATION SO FAR:\n"
        if not self.history:
            prompt += "(Scene just started - you may initiate conversation if appropriate)\n"
        else:
            for entry in self.history[-self.history_window:]:
                prompt += f"{entry.speaker}: {entry.content}\n"

        if context:
            prompt += f"\nADDITIONAL CONTEXT:\n{context}\n"

        prompt += f"\nWhat does {self.name} say?"
        return prompt

    def _format_relationships(self) -> str:
        if not self.profile.relationships:
            return "No specific relationships defined"
        return "\n".join(
            f"- {person}: {status}" for person, status in self.profile.relationships.items()
        )
