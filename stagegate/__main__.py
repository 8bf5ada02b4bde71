"""
StageGate CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from stagegate.config.settings import LoggingConfig, StageGateConfig
from stagegate.errors import StageGateError
from stagegate.logging_config import setup_console_logging
from stagegate.logging_config import setup_logging as setup_full_logging
from stagegate.models import TriggerEvent
from stagegate.output import format_json, format_run, format_runs

DEFAULT_CONFIG_PATH = "/etc/stagegate/config.yml"


def setup_logging(verbose: bool = False, settings: Optional[LoggingConfig] = None) -> None:
    """Setup file and console logging, falling back to console only."""
    settings = settings or LoggingConfig()
    console_level = "DEBUG" if verbose else settings.console_level

    # Use a per-user directory when the system one is not writable
    log_dir = settings.log_dir
    if not os.access(Path(log_dir).parent, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "stagegate")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level=settings.file_level,
            use_json=settings.use_json,
        )
    except PermissionError:
        setup_console_logging(verbose)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagegate",
        description="StageGate - progressive deployment with health-gated promotion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Promote an image through staging and production
  stagegate run ghcr.io/acme/app:1.4.0 --commit abc123

  # Allow automatic rollback if the production smoke gate fails
  stagegate run ghcr.io/acme/app:1.4.0 --message "Fix checkout [rollback]"

  # Serve the trigger API
  stagegate serve --config /etc/stagegate/config.yml
        """,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the pipeline for an image")
    run_parser.add_argument("image", help="Image reference to promote")
    run_parser.add_argument("--commit", help="Commit the image was built from")
    run_parser.add_argument("--message", default="", help="Change description")
    run_parser.add_argument("--actor", help="Who triggered the run")
    run_parser.add_argument(
        "--rollback-intent",
        action="store_true",
        help="Roll production back automatically if the smoke gate fails",
    )

    rollback_parser = subparsers.add_parser(
        "rollback", help="Roll production back to the previous revision"
    )
    rollback_parser.add_argument("--actor", help="Who requested the rollback")

    runs_parser = subparsers.add_parser("runs", help="Show pipeline run history")
    runs_parser.add_argument("run_id", nargs="?", help="Show one run with its stages")
    runs_parser.add_argument("--limit", type=int, default=20, help="Number of runs to list")

    serve_parser = subparsers.add_parser("serve", help="Serve the trigger API")
    serve_parser.add_argument("--host", help="Bind address (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default: from config)")

    return parser


async def _run(manager, args: argparse.Namespace) -> int:
    trigger = TriggerEvent(
        commit_sha=args.commit,
        message=args.message,
        actor=args.actor,
        source="cli",
        rollback_intent=args.rollback_intent,
    )
    try:
        run = await manager.run(args.image, trigger)
    finally:
        await manager.stop()
    print(format_run(run, args.format))
    return 0 if run.outcome == "succeeded" else 1


async def _rollback(manager, args: argparse.Namespace) -> int:
    try:
        result = await manager.manual_rollback(user=args.actor)
    finally:
        await manager.stop()
    if args.format == "json":
        print(format_json(result))
    else:
        print(
            f"Rolled back {result['family']} to revision {result['rollback_revision']} "
            f"(copy of revision {result['copied_from_revision']})"
        )
    return 0


def _runs(manager, args: argparse.Namespace) -> int:
    if args.run_id:
        run = manager.get_run(args.run_id)
        if run is None:
            print(f"Run not found: {args.run_id}", file=sys.stderr)
            return 1
        print(format_run(run, args.format))
    else:
        print(format_runs(manager.list_runs(args.limit), args.format))
    return 0


def _serve(manager, config: StageGateConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from stagegate.api import create_app

    uvicorn.run(
        create_app(manager),
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        log_level="info",
    )
    return 0


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle config generation
    if args.generate_config:
        config = StageGateConfig()
        config.save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    # Handle config validation
    if args.validate_config:
        try:
            StageGateConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except StageGateError as e:
            print(f"Configuration invalid: {e}")
            return 1

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = StageGateConfig.from_file(args.config)
    except StageGateError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Generate one with: stagegate --generate-config --config {args.config}")
        return 1

    setup_logging(args.verbose, config.logging)
    logger = logging.getLogger(__name__)

    from stagegate.manager import PipelineManager

    try:
        manager = PipelineManager(config)
        if args.command == "run":
            return asyncio.run(_run(manager, args))
        if args.command == "rollback":
            return asyncio.run(_rollback(manager, args))
        if args.command == "runs":
            return _runs(manager, args)
        return _serve(manager, config, args)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except StageGateError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running StageGate: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
