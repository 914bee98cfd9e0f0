"""Command line entry point: run a task, serve the relay, maintain patterns."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import uvicorn

from portal_agent.config.settings import Settings, get_settings
from portal_agent.errors import ConfigurationError
from portal_agent.models import load_task_config
from portal_agent.orchestrator import TaskOrchestrator
from portal_agent.patterns import PatternStore, build_pattern_backend

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_CONFIG_ERROR = 2


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="portal-agent",
        description="Drive an authenticated web portal through a configured task.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one task from a JSON config file.")
    run_parser.add_argument("config", type=Path, help="Path to the task config JSON.")

    relay_parser = subparsers.add_parser("relay", help="Serve the one-time-code relay.")
    relay_parser.add_argument("--host", default=None, help="Bind host (default from settings).")
    relay_parser.add_argument("--port", type=int, default=None, help="Bind port.")

    patterns_parser = subparsers.add_parser("patterns", help="Inspect or maintain learned patterns.")
    patterns_parser.add_argument(
        "action",
        choices=("stats", "prune", "export", "import"),
        help="Maintenance action to perform.",
    )
    patterns_parser.add_argument("--file", type=Path, default=None, help="Export/import path.")
    patterns_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace existing patterns with the same id on import.",
    )
    return parser.parse_args(argv)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _run(args: argparse.Namespace, settings: Settings) -> int:
    try:
        config = load_task_config(args.config)
        orchestrator = TaskOrchestrator.from_settings(settings)
        result = asyncio.run(orchestrator.run(config))
    except ConfigurationError as exc:
        logger.error("event=configuration_error reason=%s", exc)
        print(json.dumps({"success": False, "error": str(exc)}), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    print(result.model_dump_json(indent=2))
    return EXIT_OK if result.success else EXIT_TASK_FAILED


def _relay(args: argparse.Namespace, settings: Settings) -> int:
    uvicorn.run(
        "portal_agent.api.main:app",
        host=args.host or settings.relay_host,
        port=args.port or settings.relay_port,
        log_level=settings.log_level.lower(),
    )
    return EXIT_OK


def _patterns(args: argparse.Namespace, settings: Settings) -> int:
    store = PatternStore(
        build_pattern_backend(
            settings.pattern_backend,
            path=settings.patterns_path,
            database_url=settings.resolved_database_url(),
        )
    )
    if args.action == "stats":
        print(json.dumps(store.statistics(), indent=2))
    elif args.action == "prune":
        print(json.dumps({"removed": store.prune()}, indent=2))
    else:
        if args.file is None:
            print("--file is required for export/import", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        if args.action == "export":
            print(json.dumps({"exported": store.export_patterns(args.file)}))
        else:
            count = store.import_patterns(args.file, overwrite=args.overwrite)
            print(json.dumps({"imported": count}))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)
    handlers = {"run": _run, "relay": _relay, "patterns": _patterns}
    return handlers[args.command](args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
