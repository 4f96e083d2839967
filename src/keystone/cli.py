"""Command-line interface for KEYSTONE.

Runs intents through the query engine from the terminal.

Usage:
    keystone run intent.json
    keystone run intent.json --deadline-ms 3000
    keystone run - < intent.json
    keystone invalidate table:workforce --cache-dir data/cache
    keystone version
"""

import argparse
import asyncio
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional

from keystone import __version__
from keystone.config import Settings, settings
from keystone.pipeline.orchestrator import OrchestrationEngine

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1)


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser.

    Returns:
        Configured ArgumentParser with all commands and arguments.
    """
    parser = argparse.ArgumentParser(
        prog="keystone",
        description="KEYSTONE — Query Orchestration & Caching Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  keystone run intent.json
  keystone run intent.json --deadline-ms 3000
  keystone invalidate metric:headcount --cache-dir data/cache

Sources and cache are configured through KEYSTONE settings (.env).
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Answer one intent and print the response envelope",
        description="Plan, execute and cache one data-retrieval intent",
    )
    run_parser.add_argument(
        "intent",
        type=str,
        help="Path to an intent JSON file ('-' reads stdin)",
    )
    run_parser.add_argument(
        "--deadline-ms",
        type=int,
        default=None,
        help=f"Request deadline in milliseconds (default: {settings.request_timeout_ms})",
    )
    run_parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Use the Parquet cache in this directory (default: configured backend)",
    )

    # invalidate command
    invalidate_parser = subparsers.add_parser(
        "invalidate",
        help="Invalidate cached results by dependency tag",
        description="Tags look like metric:<name>, dimension:<name>, table:<name>, source:<kind>",
    )
    invalidate_parser.add_argument(
        "tag",
        type=str,
        help="Dependency tag (e.g., table:workforce)",
    )
    invalidate_parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Use the Parquet cache in this directory (default: configured backend)",
    )

    # version command
    subparsers.add_parser(
        "version",
        help="Show version information",
    )

    return parser


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context.

    Spins up a new event loop in a dedicated thread to avoid conflicts
    with any existing event loop.
    """
    def _target():
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    future = _executor.submit(_target)
    return future.result()


def _config_for(args: argparse.Namespace) -> Settings:
    if getattr(args, "cache_dir", None) is None:
        return settings
    return settings.model_copy(update={"cache_backend": "parquet", "cache_dir": str(args.cache_dir)})


def _load_intent(source: str) -> Any:
    if source == "-":
        return json.load(sys.stdin)
    with open(source, encoding="utf-8") as f:
        return json.load(f)


async def _run(config: Settings, payload: Any, deadline_ms: int | None) -> dict[str, Any]:
    async with OrchestrationEngine.from_settings(config) as engine:
        return await engine.handle(payload, deadline_ms=deadline_ms)


async def _invalidate(config: Settings, tag: str) -> int:
    async with OrchestrationEngine.from_settings(config) as engine:
        return await engine.invalidate(tag)


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for an error envelope or failure)
    """
    try:
        payload = _load_intent(args.intent)
        config = _config_for(args)

        logger.info(
            "Running intent from %s (cache=%s, deadline=%s)",
            args.intent, config.cache_backend, args.deadline_ms or config.request_timeout_ms,
        )

        envelope = _run_async(_run(config, payload, args.deadline_ms))
        print(json.dumps(envelope, indent=2, default=str))

        return 0 if envelope.get("status") == "success" else 1

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Run failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_invalidate(args: argparse.Namespace) -> int:
    """Execute the invalidate command.

    Only the Parquet cache is shared between processes, so the memory
    backend is refused.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        config = _config_for(args)
        if config.cache_backend == "memory":
            print(
                "Error: the memory cache backend cannot be invalidated from the CLI; "
                "pass --cache-dir or set CACHE_BACKEND=parquet",
                file=sys.stderr,
            )
            return 1

        affected = _run_async(_invalidate(config, args.tag))
        print(f"Invalidated tag {args.tag!r} ({affected} Parquet cache entries in {config.cache_dir})")
        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Invalidation failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_version(args: argparse.Namespace) -> int:
    """Execute the version command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    print(f"KEYSTONE v{__version__}")
    print("Query Orchestration & Caching Engine")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = create_parser()
    args = parser.parse_args(argv)

    # Route to command handler
    if args.command == "run":
        return cmd_run(args)
    elif args.command == "invalidate":
        return cmd_invalidate(args)
    elif args.command == "version":
        return cmd_version(args)
    else:
        # No command specified
        parser.print_help()
        return 0


def cli_entry() -> None:
    """Console script entry point for setuptools."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
