"""Command line entry point for the MindBridge server."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TextIO

from aiohttp import web

from .config import configure_logging, load_config_from_env
from .sqlite_backend import SQLiteBackend
from .ws_transport import create_app


logger = logging.getLogger(__name__)


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env().with_overrides(
        host=args.host,
        port=args.port,
        db_path=args.db,
        ping_interval_s=args.ping_interval,
        log_level=args.log_level,
    )
    configure_logging(config.log_level)
    logger.info("starting on %s:%d (db=%s)", config.host, config.port, config.db_path or "memory")
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
    return 0


def _run_init_db(args: argparse.Namespace, output: TextIO) -> int:
    backend = SQLiteBackend(args.db)
    try:
        version = backend.connection.execute("PRAGMA user_version").fetchone()[0]
    finally:
        backend.close()
    output.write(f"{args.db}: schema version {version}\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="MindBridge server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database")
    serve_parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Root log level",
    )

    init_parser = subparsers.add_parser("init-db", help="Create or migrate a SQLite database")
    init_parser.add_argument("db", help="Path to SQLite database")

    args = parser.parse_args(argv)

    if args.command == "init-db":
        return _run_init_db(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
