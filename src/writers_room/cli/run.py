"""
CLI entry point for directing a single scene or producing a whole project.

Usage:
    writers-room direct <scene_file> [--characters DIR] [--output FILE] [--max-lines N]
    writers-room produce [scene_files ...] [--project DIR] [--output DIR] [--max-lines N]

Ctrl+C cuts the running scene; the transcript recorded so far is saved.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, List

from writers_room.core.config import ConfigError, ProjectConfig, load_project_config
from writers_room.core.errors import WritersRoomError
from writers_room.core.types import ProductionStatus, SceneStatistics
from writers_room.director.director import Director
from writers_room.runner.producer import Producer

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="writers-room",
        description="Run multi-character dialog scenes with AI actors.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    direct = commands.add_parser("direct", help="Direct a single scene.")
    direct.add_argument("scene_file", help="Path to the scene YAML file.")
    direct.add_argument(
        "--characters", "-c",
        default=None,
        help="Character directory (defaults to ../characters next to the scene).",
    )
    direct.add_argument("--output", "-o", default=None, help="Transcript output file.")
    direct.add_argument("--max-lines", "-l", type=int, default=None, help="Maximum lines before ending.")
    direct.add_argument("--channel", "-r", default=None, help="Dialog channel name.")
    direct.add_argument("--config", default="config.yml", help="Project config file.")

    produce = commands.add_parser("produce", help="Produce all (or the given) scenes.")
    produce.add_argument("scene_files", nargs="*", help="Scene files to produce, in order.")
    produce.add_argument("--project", "-p", default=".", help="Project directory.")
    produce.add_argument("--output", "-o", default=None, help="Transcript output directory.")
    produce.add_argument("--max-lines", "-l", type=int, default=None, help="Maximum lines per scene.")

    return parser.parse_args(argv)


def _log_cut_failure(task: "asyncio.Task[None]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Cut failed: {task.exception()}")


def _install_interrupt(cut: Callable[[], Awaitable[None]]) -> List["asyncio.Task[None]"]:
    """
    Route SIGINT through cut() instead of aborting the loop.

    Returns the list the spawned cut tasks are kept in.
    """
    loop = asyncio.get_running_loop()
    tasks: List["asyncio.Task[None]"] = []

    def on_interrupt() -> None:
        task = asyncio.ensure_future(cut())
        task.add_done_callback(_log_cut_failure)
        tasks.append(task)

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")
    return tasks


def _print_statistics(stats: SceneStatistics) -> None:
    print("\n" + "=" * 60)
    print("SCENE STATISTICS")
    print("=" * 60)
    print(f"Total lines: {stats.total_lines}")
    print("\nLines by character:")
    for character, count in sorted(stats.lines_by_character.items(), key=lambda kv: -kv[1]):
        print(f"  {character}: {count}")
    print("=" * 60)


async def direct_scene(args: argparse.Namespace) -> int:
    scene_file = Path(args.scene_file)
    if not scene_file.exists():
        raise ConfigError(f"Scene file not found: {scene_file}")

    config_path = Path(args.config)
    config = load_project_config(config_path) if config_path.exists() else ProjectConfig()
    update = {}
    if args.max_lines is not None:
        update["max_lines"] = args.max_lines
    if args.channel:
        update["channel"] = args.channel
    director_config = config.director.model_copy(update=update)

    character_dir = args.characters or scene_file.resolve().parent.parent / "characters"
    producer = Producer(scene_file.resolve().parent.parent, config=config)
    generator = producer.init_generator()
    broker = producer.init_broker()
    interrupts: List["asyncio.Task[None]"] = []
    try:
        director = Director.from_files(
            scene_file,
            character_dir,
            generator,
            broker=broker,
            config=director_config,
            event_logger=producer.event_logger,
            run_id=producer.run_id,
        )
        interrupts = _install_interrupt(director.cut)
        reason = await director.action()
        path = director.save_transcript(args.output)
    finally:
        await asyncio.gather(*interrupts, return_exceptions=True)
        await broker.close()

    _print_statistics(director.statistics())
    print(f"Transcript: {path}")
    if director.error:
        print(f"Scene ended with error: {director.error}")
    return 0 if reason is not None and director.error is None else 1


async def produce_scenes(args: argparse.Namespace) -> int:
    producer = Producer.from_project(args.project)
    interrupts = _install_interrupt(producer.cut)

    scene_files = [Path(f).resolve() for f in args.scene_files] or None
    try:
        results = await producer.produce(scene_files, max_lines=args.max_lines, output_dir=args.output)
    finally:
        await asyncio.gather(*interrupts, return_exceptions=True)
    summary = producer.get_summary()

    print("\n" + "=" * 60)
    print("PRODUCTION COMPLETE")
    print("=" * 60)
    print(f"Completed: {summary['completed']}")
    if summary["cut"]:
        print(f"Cut:       {summary['cut']}")
    if summary["failed"]:
        print(f"Failed:    {summary['failed']}")

    for result in results:
        name = Path(result.scene).name
        if result.status == ProductionStatus.FAILED:
            print(f"\n{name}: FAILED - {result.error}")
        else:
            print(f"\n{name}:")
            print(f"  Transcript: {result.transcript_path}")
            print(f"  Lines:      {result.statistics.total_lines}")

    return 0 if summary["failed"] == 0 else 1


async def async_main(args: argparse.Namespace) -> int:
    if args.command == "direct":
        return await direct_scene(args)
    return await produce_scenes(args)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(async_main(args))
    except WritersRoomError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
