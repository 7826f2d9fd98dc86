"""
Logging setup for the master server.

Events are emitted through structlog and routed into stdlib logging, which
fans them out to a rich console handler and, when a log directory is
configured, to rotating JSON files. Sentry picks up ERROR records when a
DSN is supplied.
"""

import logging
import logging.handlers
import sys
import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
import structlog
from rich.logging import RichHandler
from rich.console import Console
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


console = Console(file=sys.stderr)

# Attributes every LogRecord carries; anything else was passed as `extra`
_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any `extra` fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
            'pid': record.process,
        }

        extras = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        payload.update(extras)

        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _processors(enable_json: bool) -> List[Any]:
    renderer = (
        structlog.processors.JSONRenderer()
        if enable_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def _rotating_file(path: Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    app_name: str = "master-server",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Configure structlog and the root logger.

    Args:
        app_name: Used as the main logger name and the log file stem
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_dir: Where `<app_name>.log` and `<app_name>-errors.log` go; console only when None
        enable_json: Render events as JSON instead of key=value
        max_bytes: Rotation size for each log file
        backup_count: Rotated files kept per log
        enable_sentry: Forward ERROR records to Sentry (needs sentry_dsn)
        sentry_dsn: Sentry project DSN

    Returns:
        Dictionary with the main logger, the log directory and the effective settings
    """
    structlog.configure(
        processors=_processors(enable_json),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.getLevelName(log_level.upper()))

    rich_handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_suppress=["aiohttp", "asyncio"],
    )
    rich_handler.setFormatter(logging.Formatter('%(message)s'))
    root.addHandler(rich_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating_file(
            log_dir / f"{app_name}.log", logging.DEBUG, max_bytes, backup_count
        ))
        root.addHandler(_rotating_file(
            log_dir / f"{app_name}-errors.log", logging.ERROR, max_bytes, backup_count
        ))

    sentry_enabled = bool(enable_sentry and sentry_dsn)
    if sentry_enabled:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=0.0,
        )

    main_logger = structlog.get_logger(app_name)
    main_logger.info(
        "logging_initialized",
        log_level=log_level,
        log_dir=str(log_dir) if log_dir else None,
        sentry=sentry_enabled,
        pid=os.getpid(),
    )

    return {
        'logger': main_logger,
        'log_dir': log_dir,
        'console': console,
        'config': {
            'app_name': app_name,
            'log_level': log_level,
            'enable_json': enable_json,
            'enable_sentry': sentry_enabled,
        }
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


__all__ = [
    'setup_logging',
    'get_logger',
    'JSONFormatter',
]
