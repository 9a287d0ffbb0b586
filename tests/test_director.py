"""
Tests for the Director: line ceiling, cut semantics, failure handling and
transcript output.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest

from writers_room.core.config import ConfigError, DirectorConfig
from writers_room.core.types import CharacterProfile, SceneDefinition
from writers_room.director.director import (
    Director,
    DirectorError,
    SceneState,
    StopReason,
)
from writers_room.director.transcript import count_lines, read_transcript
from writers_room.messaging.broker import InMemoryBroker
from writers_room.messaging.protocol import DialogEvent
from writers_room.models.generator import GenerationError, Prompt, TextGenerator
from writers_room.observability.event_logger import EventLogger, EventType

CHANNEL = "writers_room:dialog"


# ── Helpers ──


class BlockingGenerator(TextGenerator):
    """Never returns, so only manually published lines reach the channel."""

    def __init__(self):
        self._never = asyncio.Event()

    async def generate(self, prompt: Prompt) -> str:
        await self._never.wait()
        return ""


class CyclingGenerator(TextGenerator):
    def __init__(self):
        self._counter = itertools.count(1)

    async def generate(self, prompt: Prompt) -> str:
        return f"Line number {next(self._counter)}."


class WarmUpGenerator(TextGenerator):
    """Fails the first call, then never finishes."""

    def __init__(self):
        self.calls = 0
        self._never = asyncio.Event()

    async def generate(self, prompt: Prompt) -> str:
        self.calls += 1
        if self.calls == 1:
            raise GenerationError("warming up")
        await self._never.wait()
        return ""


def _failing_generator() -> MagicMock:
    generator = MagicMock(spec=TextGenerator)
    generator.generate = AsyncMock(side_effect=RuntimeError("model offline"))
    return generator


def _scene(characters=("Alice", "Bob"), number=1) -> SceneDefinition:
    return SceneDefinition(
        scene_number=number,
        scene_name="Locker Room Talk",
        location="Gym",
        objectives="Plan the prank",
        characters=list(characters),
    )


def _cast(*names: str) -> dict:
    names = names or ("Alice", "Bob", "Carol")
    return {name: CharacterProfile(name=name, personality="Chatty") for name in names}


def _config(tmp_path=None, **overrides) -> DirectorConfig:
    settings = dict(
        max_lines=10,
        idle_timeout=5.0,
        shutdown_grace=0.05,
        seed=42,
    )
    if tmp_path is not None:
        settings["transcript_dir"] = str(tmp_path)
    settings.update(overrides)
    return DirectorConfig(**settings)


async def _say(broker: InMemoryBroker, speaker: str, content: str = "Hey.", scene: str = "1") -> None:
    await broker.publish(CHANNEL, DialogEvent(speaker=speaker, content=content, scene=scene).to_message())


async def _settle() -> None:
    await asyncio.sleep(0.02)


def _blocked_director(broker, tmp_path=None, **overrides) -> Director:
    return Director(
        _scene(),
        _cast(),
        BlockingGenerator(),
        broker=broker,
        config=_config(tmp_path, **overrides),
    )


# ── Line ceiling ──


class TestMaxLines:
    @pytest.mark.asyncio
    async def test_stops_exactly_at_max_lines(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker, max_lines=3)
        await director.start()

        await _say(broker, "Alice")
        await _say(broker, "Bob")
        await _settle()
        assert director.state == SceneState.RUNNING
        assert len(director.transcript) == 2

        await _say(broker, "Alice")
        await _settle()
        assert director.state == SceneState.STOPPED
        assert director.stop_reason == StopReason.NORMAL
        assert len(director.transcript) == 3

        await _say(broker, "Bob", "One more!")
        await _settle()
        assert len(director.transcript) == 3

        await director.cut()
        assert director.stop_reason == StopReason.NORMAL
        assert all(actor.stopped for actor in director.actors)

    @pytest.mark.asyncio
    async def test_three_actor_conversation_reaches_ceiling(self):
        director = Director(
            _scene(characters=("Alice", "Bob", "Carol")),
            _cast(),
            CyclingGenerator(),
            config=_config(max_lines=6, idle_timeout=0.05),
        )

        reason = await asyncio.wait_for(director.action(), timeout=5)

        assert reason == StopReason.NORMAL
        stats = director.statistics()
        assert stats.total_lines == 6
        assert sum(stats.lines_by_character.values()) == 6
        assert set(stats.lines_by_character) <= {"Alice", "Bob", "Carol"}

    @pytest.mark.asyncio
    async def test_lone_actor_is_cued_when_idle(self):
        director = Director(
            _scene(characters=("Alice",)),
            _cast("Alice"),
            CyclingGenerator(),
            config=_config(max_lines=3, idle_timeout=0.01),
        )

        reason = await asyncio.wait_for(director.action(), timeout=5)

        assert reason == StopReason.NORMAL
        assert director.statistics().lines_by_character == {"Alice": 3}


class TestStatistics:
    @pytest.mark.asyncio
    async def test_totals_match_per_character_counts(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        await director.start()

        for speaker in ["Alice", "Bob", "Alice", "Alice"]:
            await _say(broker, speaker)
        await _settle()
        await director.cut()

        stats = director.statistics()
        assert stats.total_lines == 4
        assert stats.lines_by_character == {"Alice": 3, "Bob": 1}
        assert stats.total_lines == sum(stats.lines_by_character.values())

    @pytest.mark.asyncio
    async def test_events_from_other_scenes_are_ignored(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        await director.start()

        await _say(broker, "Alice", scene="2")
        await _say(broker, "Bob", scene="1")
        await _settle()
        await director.cut()

        assert [e.speaker for e in director.transcript.events] == ["Bob"]

    @pytest.mark.asyncio
    async def test_malformed_messages_are_ignored(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        await director.start()

        await broker.publish(CHANNEL, {"type": "dialog", "from": "", "content": "?", "scene": "1"})
        await broker.publish(CHANNEL, {"type": "weather", "scene": "1"})
        await _say(broker, "Alice")
        await _settle()
        await director.cut()

        assert len(director.transcript) == 1


# ── Cut ──


class TestCut:
    @pytest.mark.asyncio
    async def test_cut_keeps_lines_recorded_so_far(self, tmp_path):
        broker = InMemoryBroker()
        director = _blocked_director(broker, tmp_path)
        await director.start()

        await _say(broker, "Alice", "Hello, how are you?")
        await _say(broker, "Bob", "I'm doing well, thanks!")
        await _settle()
        await director.cut()

        await _say(broker, "Alice", "Too late.")
        await _settle()

        assert director.stop_reason == StopReason.CUT
        assert len(director.transcript) == 2
        path = director.save_transcript()
        assert count_lines(path.read_text()).total_lines == 2

    @pytest.mark.asyncio
    async def test_concurrent_cut_is_idempotent(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        await director.start()
        await _say(broker, "Alice")
        await _settle()

        await asyncio.wait_for(asyncio.gather(director.cut(), director.cut(), director.cut()), timeout=2)
        await director.cut()

        assert director.state == SceneState.STOPPED
        assert director.stop_reason == StopReason.CUT
        assert len(director.transcript) == 1
        assert broker.subscriber_count(CHANNEL) == 0

    @pytest.mark.asyncio
    async def test_cut_before_start(self):
        director = _blocked_director(InMemoryBroker())
        await director.cut()

        assert director.stop_reason == StopReason.CUT
        with pytest.raises(DirectorError):
            await director.start()

    @pytest.mark.asyncio
    async def test_cut_during_action(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        running = asyncio.create_task(director.action())
        await _settle()

        await _say(broker, "Alice")
        await _say(broker, "Bob")
        await _settle()
        await director.cut()

        assert await asyncio.wait_for(running, timeout=2) == StopReason.CUT
        assert len(director.transcript) == 2

    @pytest.mark.asyncio
    async def test_cut_stops_actors_and_releases_subscriptions(self):
        broker = InMemoryBroker()
        director = _blocked_director(broker)
        await director.start()
        assert broker.subscriber_count(CHANNEL) == 3

        await director.cut()

        assert all(actor.stopped for actor in director.actors)
        assert broker.subscriber_count(CHANNEL) == 0
        assert director.transcript.finalized


# ── Failures and configuration ──


class TestFailures:
    @pytest.mark.asyncio
    async def test_consecutive_failures_end_scene_with_error(self):
        director = Director(
            _scene(characters=("Alice",)),
            _cast("Alice"),
            _failing_generator(),
            config=_config(idle_timeout=0.01, max_generation_failures=3),
        )

        reason = await asyncio.wait_for(director.action(), timeout=5)

        assert reason == StopReason.ERROR
        assert len(director.transcript) == 0
        assert len(director.failures) == 3
        assert "model offline" in director.error

    @pytest.mark.asyncio
    async def test_strict_mode_stops_on_first_failure(self):
        director = Director(
            _scene(characters=("Alice",)),
            _cast("Alice"),
            _failing_generator(),
            config=_config(idle_timeout=0.01, strict=True),
        )

        reason = await asyncio.wait_for(director.action(), timeout=5)

        assert reason == StopReason.ERROR
        assert len(director.failures) == 1

    @pytest.mark.asyncio
    async def test_unknown_character_raises_config_error(self):
        director = Director(
            _scene(characters=("Alice", "Zed")),
            _cast("Alice"),
            BlockingGenerator(),
            config=_config(),
        )

        with pytest.raises(ConfigError, match="Zed"):
            await director.action()
        assert director.state == SceneState.STOPPED

    @pytest.mark.asyncio
    async def test_empty_scene_raises_config_error(self):
        director = Director(_scene(characters=()), _cast(), BlockingGenerator(), config=_config())
        with pytest.raises(ConfigError):
            await director.start()

    @pytest.mark.asyncio
    async def test_empty_channel_raises_config_error(self):
        director = Director(_scene(), _cast(), BlockingGenerator(), config=_config(channel=""))
        with pytest.raises(ConfigError):
            await director.start()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        director = _blocked_director(InMemoryBroker())
        await director.start()
        with pytest.raises(DirectorError):
            await director.start()
        await director.cut()


# ── Output ──


class TestOutput:
    @pytest.mark.asyncio
    async def test_default_transcript_path_uses_scene_name(self, tmp_path):
        broker = InMemoryBroker()
        director = _blocked_director(broker, tmp_path)
        await director.start()
        await _say(broker, "Alice", "Line one\nstill line one")
        await _say(broker, "Bob", "Line two")
        await _settle()
        await director.cut()

        path = director.save_transcript()

        assert path == tmp_path / "locker_room_talk.txt"
        assert path.read_text() == "Alice: Line one still line one\nBob: Line two\n"

    @pytest.mark.asyncio
    async def test_explicit_transcript_path(self, tmp_path):
        director = _blocked_director(InMemoryBroker())
        await director.cut()
        target = tmp_path / "out" / "scene.txt"

        assert director.save_transcript(target) == target
        assert target.read_text() == ""

    @pytest.mark.asyncio
    async def test_lifecycle_events_are_logged(self):
        broker = InMemoryBroker()
        event_logger = EventLogger(run_id="run-1")
        director = Director(
            _scene(),
            _cast(),
            BlockingGenerator(),
            broker=broker,
            config=_config(max_lines=2),
            event_logger=event_logger,
            run_id="run-1",
        )
        await director.start()
        await _say(broker, "Alice")
        await _say(broker, "Bob")
        await _settle()
        await director.cut()

        types = [e.type for e in event_logger.get_events(scene_id="1")]
        assert types[0] == EventType.SCENE_START
        assert types[-1] == EventType.SCENE_END
        assert len(event_logger.get_events(event_type=EventType.DIALOG)) == 2
        assert event_logger.get_events(event_type=EventType.SCENE_END)[0].payload["reason"] == "normal"

    @pytest.mark.asyncio
    async def test_saved_transcript_reports_live_counts(self, tmp_path):
        broker = InMemoryBroker()
        director = Director(
            _scene(characters=("Mary_Jane", "Bob")),
            _cast("Mary_Jane", "Bob"),
            BlockingGenerator(),
            broker=broker,
            config=_config(tmp_path),
        )
        await director.start()
        for speaker in ["Mary_Jane", "Bob", "Mary_Jane"]:
            await _say(broker, speaker, "Well: that's one way: to put it")
        await _settle()
        await director.cut()

        path = director.save_transcript()

        assert read_transcript(path).lines_by_character == director.statistics().lines_by_character
        assert director.statistics().lines_by_character == {"Mary_Jane": 2, "Bob": 1}


class TestStallCues:
    @pytest.mark.asyncio
    async def test_no_stall_cue_while_a_reply_is_generating(self):
        broker = InMemoryBroker()
        generator = WarmUpGenerator()
        director = Director(
            _scene(),
            _cast(),
            generator,
            broker=broker,
            config=_config(idle_timeout=0.1),
        )
        await director.start()
        await asyncio.sleep(0.01)
        assert generator.calls == 1

        # Bob starts a reply that outlasts several idle timeouts
        await _say(broker, "Alice", "Bob, are you there?")
        await asyncio.sleep(0.5)

        assert generator.calls == 2
        assert any(actor.generating for actor in director.actors)
        await director.cut()
