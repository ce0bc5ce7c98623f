"""Structured logging configuration using structlog.

Why this exists:
- Provides consistent, structured logging across the system
- Lets sync passes and bulk operations be followed per repository
- Supports file output with rotation

How to use:
    from superclone.observability.logging import get_logger

    logger = get_logger(__name__)
    logger.info("sync_page_merged", owner="acme", page=2, upserted=100)
"""

import logging
import logging.handlers
import os
import sys
import time
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from superclone.config.schema import LoggingConfig

LOG_FILE_NAME = "super-clone.log"


class TimedRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """Rolls over at midnight and prunes files older than max_days."""

    def __init__(self, filename: str, max_days: int = 30, **kwargs):
        super().__init__(filename, when="midnight", interval=1, **kwargs)
        self.max_days = max_days

    def doRollover(self) -> None:
        super().doRollover()
        self._cleanup_old_files()

    def _cleanup_old_files(self) -> None:
        """Remove rotated log files older than max_days."""
        base_dir, base_name = os.path.split(self.baseFilename)
        cutoff_time = time.time() - (self.max_days * 86400)

        for filename in os.listdir(base_dir):
            if not filename.startswith(base_name + "."):
                continue
            file_path = os.path.join(base_dir, filename)
            try:
                if os.path.getmtime(file_path) < cutoff_time:
                    os.remove(file_path)
            except OSError as e:
                logging.getLogger(__name__).debug("Failed to prune %s: %s", file_path, e)


def _stderr_logger_factory(*args: Any) -> structlog.PrintLogger:
    """Print to whatever sys.stderr is at call time (the CLI runner swaps it)."""
    return structlog.PrintLogger(sys.stderr)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every event with the application name."""
    event_dict["app"] = "super-clone"
    return event_dict


def _build_processors(json_logs: bool) -> list[Processor]:
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    return [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def _route_to_file(log_dir: Path, level: int, max_days: int) -> None:
    """Send stdlib logging, and therefore structlog, to a rotating file.

    Raises:
        OSError: If the log directory or file cannot be created
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        str(log_dir / LOG_FILE_NAME), max_days=max_days, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.setLevel(level)
    # Reconfiguring must not duplicate the file handler
    for existing in [h for h in root.handlers if isinstance(h, logging.FileHandler)]:
        root.removeHandler(existing)
        existing.close()
    root.addHandler(handler)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(console)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_dir: Optional[Path] = None,
    max_days: int = 30,
    enable_file: bool = False,
) -> None:
    """Configure structured logging for the application.

    Console output goes to stderr so command output on stdout stays clean.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render events as JSON lines instead of console format
        log_dir: Directory for super-clone.log; required for file logging
        max_days: Number of days to keep rotated log files
        enable_file: Whether to write logs to log_dir
    """
    numeric_level = getattr(logging, level.upper())
    logger_factory: Any = _stderr_logger_factory

    if enable_file and log_dir:
        try:
            _route_to_file(log_dir, numeric_level, max_days)
            logger_factory = structlog.stdlib.LoggerFactory()
        except OSError as e:
            print(f"super-clone: file logging disabled ({e})", file=sys.stderr)

    structlog.configure(
        processors=_build_processors(json_logs),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)


def configure_from_config(config: LoggingConfig) -> None:
    """Configure logging from the [logging] configuration section."""
    configure_logging(
        level=config.level.value,
        json_logs=config.json_logs,
        log_dir=config.log_dir,
        max_days=config.max_days,
        enable_file=config.enable_file,
    )
