"""HTTP server command."""

from __future__ import annotations

from argparse import _SubParsersAction, Namespace

import structlog
import uvicorn

from ..config import RuntimeConfig

__all__ = ["register", "run"]

logger = structlog.get_logger(__name__)


def register(subparsers: _SubParsersAction) -> None:
    parser = subparsers.add_parser("serve", help="Start the workspace API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8082, help="Port to bind (default: 8082)")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables and seed reference data before serving",
    )
    parser.set_defaults(handler=run)


def run(args: Namespace, config: RuntimeConfig) -> None:
    from ...workspace.api import create_app

    settings = config.workspace_settings()
    app = create_app(settings)
    if getattr(args, "create_tables", False):
        from .database import initialise

        initialise(app.state.database)

    host = getattr(args, "host", "127.0.0.1")
    port = int(getattr(args, "port", 8082))
    logger.info("server.starting", host=host, port=port, docs=f"http://{host}:{port}/docs")
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())
