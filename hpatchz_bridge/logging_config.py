#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
Logging setup for hpatchz-bridge.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed by the application entry point through :func:`setup_logging`.

Features:
- Level-specific console formats with optional ANSI colours
- Structured JSON output (one object per record)
- Rotating main log plus a separate warnings/errors log
"""

import copy
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAMESPACE = "hpatchz_bridge"
DEFAULT_MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB

# =====================================================================================================
# Formatters
# =====================================================================================================

class FastFormatter(logging.Formatter):
    """Formatter with a pre-built format string per level."""

    def __init__(self, enable_colors: bool = False):
        super().__init__()
        self.enable_colors = enable_colors

        self._formatters = {
            level: logging.Formatter(fmt, style='{', datefmt='%H:%M:%S')
            for level, fmt in {
                logging.ERROR: "[{asctime}] ERROR   [{name}] {message}",
                logging.WARNING: "[{asctime}] WARNING [{name}] {message}",
                logging.INFO: "[{asctime}] INFO    {message}",
                logging.DEBUG: "[{asctime}] DEBUG   {name}:{lineno} - {message}",
            }.items()
        }

        self.colors = {
            'ERROR': '\033[91m',     # Red
            'WARNING': '\033[93m',   # Yellow
            'INFO': '\033[92m',      # Green
            'DEBUG': '\033[94m',     # Blue
            'RESET': '\033[0m'
        } if enable_colors else {}

    def format(self, record: logging.LogRecord) -> str:
        formatter = self._formatters.get(record.levelno)
        if formatter is None:
            formatter = self._formatters[logging.ERROR if record.levelno > logging.ERROR else logging.INFO]

        if self.enable_colors and record.levelname in self.colors:
            # Other handlers share the record.
            record = copy.copy(record)
            record.levelname = f"{self.colors[record.levelname]}{record.levelname}{self.colors['RESET']}"

        return formatter.format(record)


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pathname": record.pathname,
            "lineno": record.lineno,
            "thread": record.threadName,
            "process": record.process,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

# =====================================================================================================
# Setup
# =====================================================================================================

def parse_size(size_str: str) -> int:
    """Parse a size string such as ``"10MB"`` into bytes."""
    size_str = str(size_str).upper().strip()

    multipliers = {
        'KB': 1024,
        'MB': 1024 ** 2,
        'GB': 1024 ** 3,
        'B': 1,
    }

    for suffix, multiplier in multipliers.items():
        if size_str.endswith(suffix):
            try:
                return int(float(size_str[:-len(suffix)].strip()) * multiplier)
            except ValueError:
                continue

    try:
        return int(float(size_str))
    except ValueError:
        return DEFAULT_MAX_LOG_SIZE


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_console: bool = True,
    structured_json: Optional[bool] = None,
    colors: Optional[bool] = None,
    max_log_size: str = "10MB",
    backup_count: int = 3,
) -> Dict[str, Any]:
    """Install console and (optionally) rotating file handlers on the root logger.

    File logging is enabled only when ``log_dir`` is given. JSON output can
    also be switched on through ``HPATCHZ_BRIDGE_LOG_JSON=1``.

    Returns a dict with the installed handlers and the log directory.
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    use_json = structured_json if structured_json is not None else _env_bool("HPATCHZ_BRIDGE_LOG_JSON")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    handlers: Dict[str, logging.Handler] = {}

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)

        if colors is None:
            colors = (hasattr(sys.stderr, 'isatty') and
                      sys.stderr.isatty() and
                      os.environ.get('TERM') != 'dumb')

        console_handler.setFormatter(JsonFormatter() if use_json else FastFormatter(enable_colors=bool(colors)))
        root_logger.addHandler(console_handler)
        handlers['console'] = console_handler

    log_dir_path: Optional[Path] = None
    if log_dir:
        log_dir_path = Path(log_dir)
        log_dir_path.mkdir(parents=True, exist_ok=True)
        size_bytes = parse_size(max_log_size)

        main_handler = logging.handlers.RotatingFileHandler(
            str(log_dir_path / "hpatchz_bridge.log"),
            maxBytes=size_bytes,
            backupCount=backup_count,
            encoding='utf-8',
        )
        main_handler.setLevel(numeric_level)
        main_handler.setFormatter(JsonFormatter() if use_json else FastFormatter())
        root_logger.addHandler(main_handler)
        handlers['main_file'] = main_handler

        error_handler = logging.handlers.RotatingFileHandler(
            str(log_dir_path / "errors.log"),
            maxBytes=size_bytes // 2,
            backupCount=backup_count,
            encoding='utf-8',
        )
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(JsonFormatter() if use_json else FastFormatter())
        root_logger.addHandler(error_handler)
        handlers['error_file'] = error_handler

    get_logger("logging").debug(
        "Logging initialised: level=%s json=%s log_dir=%s", level, use_json, log_dir_path
    )

    return {
        'handlers': handlers,
        'log_dir': log_dir_path,
    }


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Get a logger below the package namespace."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def cleanup_logging() -> None:
    """Close and remove all root handlers."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    get_logger.cache_clear()
