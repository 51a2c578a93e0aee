"""Schema and account bootstrap commands."""

from __future__ import annotations

import uuid
from argparse import ArgumentTypeError, _SubParsersAction, Namespace

import structlog

from ...workspace.service import (
    WorkspaceDatabase,
    bootstrap_account,
    init_engine,
    seed_reference_data,
)
from ..config import RuntimeConfig

__all__ = ["register", "initialise", "run_init_db", "run_bootstrap_account"]

logger = structlog.get_logger(__name__)


def _uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ArgumentTypeError(f"not a valid UUID: {value!r}") from None


def register(subparsers: _SubParsersAction) -> None:
    init_parser = subparsers.add_parser(
        "init-db", help="Create tables and seed standard templates and languages"
    )
    init_parser.set_defaults(handler=run_init_db)

    account_parser = subparsers.add_parser(
        "bootstrap-account",
        help="Create the profile, default workspace and owner membership for an account",
    )
    account_parser.add_argument("account_id", type=_uuid, help="Externally issued account id")
    account_parser.add_argument("--email", default=None)
    account_parser.add_argument("--full-name", dest="full_name", default=None)
    account_parser.set_defaults(handler=run_bootstrap_account)


def initialise(database: WorkspaceDatabase) -> None:
    database.create_all()
    with database.session() as session:
        seed_reference_data(session)
    logger.info("database.initialised")


def run_init_db(args: Namespace, config: RuntimeConfig) -> None:
    database = WorkspaceDatabase(init_engine(config.workspace_settings()))
    try:
        initialise(database)
    finally:
        database.engine.dispose()


def run_bootstrap_account(args: Namespace, config: RuntimeConfig) -> None:
    database = WorkspaceDatabase(init_engine(config.workspace_settings()))
    try:
        with database.session() as session:
            workspace = bootstrap_account(
                session, args.account_id, args.email, full_name=args.full_name
            )
            print(f"{workspace.id}\t{workspace.name}")
    finally:
        database.engine.dispose()
