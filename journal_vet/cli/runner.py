"""Command-line entry point for the journal-vet workspace core."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, List, Optional

import structlog

from . import commands
from .config import RuntimeConfig, bootstrap, build_runtime_config

CommandHandler = Callable[[argparse.Namespace, RuntimeConfig], None]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="journal-vet",
        description="Workspace, invite and journal processing service.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (CRITICAL, ERROR, WARNING, INFO, DEBUG). Default: INFO",
    )
    parser.add_argument(
        "--log-json",
        dest="log_json",
        action="store_true",
        help="Emit JSON log lines instead of console output",
    )
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Override the database URL (env: JOURNAL_VET_DB_URL or DATABASE_URL)",
    )
    parser.add_argument(
        "--env-file",
        dest="env_file",
        help="Additional .env file to load before the default search location",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    commands.register(subparsers)
    return parser


def configure_logging(level_name: str, *, json_output: bool = False) -> None:
    """Route structlog and stdlib records (uvicorn, SQLAlchemy) through one renderer."""

    level_value = logging.getLevelName(level_name.upper())
    if not isinstance(level_value, int):
        level_value = logging.INFO

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    renderers = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer(colors=False)]
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *renderers,
            ],
        )
    )
    logging.basicConfig(level=level_value, handlers=[handler], force=True)


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    bootstrap(args.env_file)

    level_name = str(args.log_level).upper()
    configure_logging(level_name, json_output=args.log_json)

    runtime = build_runtime_config(log_level=level_name, database_url=args.database_url)
    handler: CommandHandler = args.handler
    try:
        handler(args, runtime)
    except ValueError as exc:
        parser.exit(2, f"journal-vet: error: {exc}\n")


if __name__ == "__main__":  # pragma: no cover
    main()
