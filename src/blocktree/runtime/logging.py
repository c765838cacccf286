"""
Blocktree logging.

Two outputs share one logger hierarchy rooted at ``blocktree``:

- Console: short human-readable lines tagged with the emitting component
- File: JSON Lines at ``<log_dir>/blocktree.log`` with structured context

Services obtain a component logger via ``get_logger("Children")`` and
attach structured fields with ``log_with_context``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

# =============================================================================
# Terminal Colors (respects NO_COLOR)
# =============================================================================

_NO_COLOR = bool(os.environ.get("NO_COLOR")) or not sys.stdout.isatty()


def _ansi(code: str) -> str:
    return "" if _NO_COLOR else f"\033[{code}m"


class Colors:
    """ANSI color codes for terminal output."""

    RESET = _ansi("0")
    DIM = _ansi("2")

    DEBUG = _ansi("36")
    INFO = _ansi("32")
    WARNING = _ansi("33")
    ERROR = _ansi("31")
    CRITICAL = _ansi("35")

    # Components
    API = _ansi("34")
    SERVICE = _ansi("35")
    RENDER = _ansi("36")


# =============================================================================
# Formatters
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    One JSON object per line.

    Keys: timestamp, level, component, message, plus ``context`` when the
    record carries structured data, ``source`` for warnings and above, and
    ``exception`` when exc_info is set.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "component": getattr(record, "component", "Blocktree"),
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.INFO: Colors.INFO,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, "component", "Blocktree")
        component_color = getattr(record, "component_color", Colors.SERVICE)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        prefix = (
            f"{Colors.DIM}{timestamp}{Colors.RESET} "
            f"{component_color}[{component}]{Colors.RESET}"
        )
        if record.levelno != logging.INFO:
            level_color = self.LEVEL_COLORS.get(record.levelno, "")
            prefix = f"{prefix} {level_color}{record.levelname}{Colors.RESET}:"

        line = f"{prefix} {record.getMessage()}"
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line = f"{line} {Colors.DIM}{pairs}{Colors.RESET}"
        return line


# =============================================================================
# Logger Setup
# =============================================================================


ROOT_LOGGER_NAME = "blocktree"

_loggers: dict[str, logging.Logger] = {}


def setup_logging(
    log_dir: Path | str | None = ".blocktree/logs",
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> Path | None:
    """
    Initialize console and JSONL file logging.

    Args:
        log_dir: Directory for the JSONL log file; None disables file output
        level: Minimum log level (int or name)
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Path to the log directory, or None when file output is disabled
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_dir is None:
        return None

    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    log_file = path / "blocktree.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONLFormatter())
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)

    log_with_context(
        get_logger("Blocktree"),
        logging.INFO,
        "Logging initialized",
        log_format="jsonl",
        log_file=str(log_file),
    )
    return path


def get_logger(component: str, color: str = Colors.SERVICE) -> logging.Logger:
    """
    Get a logger for a component.

    Args:
        component: Component tag shown in output (e.g. "Children", "Refs")
        color: ANSI color code for the component tag

    Returns:
        Logger under the ``blocktree`` hierarchy
    """
    if component in _loggers:
        return _loggers[component]

    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.lower().replace(' ', '_')}")

    class ComponentFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if not hasattr(record, "component"):
                record.component = component
            if not hasattr(record, "component_color"):
                record.component_color = color
            return True

    logger.addFilter(ComponentFilter())
    _loggers[component] = logger
    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a message with structured context data.

    Args:
        logger: Logger instance
        level: Logging level
        message: Human-readable message
        context: Structured fields included in the JSONL entry
        **kwargs: Additional context fields
    """
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)


def get_api_logger() -> logging.Logger:
    """Logger for the HTTP surface."""
    return get_logger("API", Colors.API)


def get_render_logger() -> logging.Logger:
    """Logger for linting and render evaluation."""
    return get_logger("Render", Colors.RENDER)
