#!/usr/bin/env python3
"""
Master Server - Main entry point for python -m master_server
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, List, Optional

from . import __version__
from .server import run_server, close_server
from .utils.config import MasterServerConfig, load_config
from .utils.errors import ConfigurationError, MasterServerError
from .utils.logging import setup_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Master Server - game server registry")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--config", type=str, help="Config file path")
    parser.add_argument("--host", type=str, help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--database", type=str, help="Registry database path")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    return parser


def cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate command line flags into a configuration overlay."""
    overrides: Dict[str, Any] = {}

    server: Dict[str, Any] = {}
    if args.host:
        server["host"] = args.host
    if args.port is not None:
        server["port"] = args.port
    if server:
        overrides["server"] = server

    if args.database:
        overrides["database"] = {"path": args.database}

    if args.debug:
        overrides["debug"] = True
        overrides["logging"] = {"level": "DEBUG"}

    return overrides


async def serve(config: MasterServerConfig) -> None:
    """Run until SIGINT/SIGTERM, then shut down cleanly."""
    handle = await run_server(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    installed = []
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)

    try:
        await stop_event.wait()
        logger.info("shutdown_signal_received")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await close_server(handle)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for python -m master_server"""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"Master Server v{__version__}")
        return 0

    try:
        config = load_config(
            config_paths=[args.config] if args.config else None,
            extra_config=cli_overrides(args),
        )
    except ConfigurationError as e:
        print(f"Master Server configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        max_bytes=config.logging.max_size,
        backup_count=config.logging.backup_count,
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("server_stopped_by_user")
    except MasterServerError as e:
        logger.error("server_error", error=str(e), error_code=e.code, exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
