"""
Global Logger - Centralized JSON structured logging for all components.

Provides unified logging functionality across the movie night bot with:
- Standardized JSON output format with correlation ID support
- PII masking for production compliance
- Component-specific logging with version tracking
- Daily rotating log file plus console output
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Optional
from contextvars import ContextVar

correlation_id_context: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)

_PII_KEYS = (
    "guild_id",
    "user_id",
    "user_ids",
    "member_id",
    "channel_id",
    "actor_id",
    "role_id",
)

def log_json(component: str, level: str, event: str, **fields) -> None:
    """
    Log structured JSON message with correlation ID and PII masking.

    Args:
        component: Component name (e.g., "sessions", "persistence")
        level: Log level ("debug", "info", "warning", "error", "critical")
        event: Event identifier
        **fields: Additional fields to log
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": level.upper(),
        "event": event,
        "component": component,
        "version": "1.0",
    }

    correlation_id = correlation_id_context.get(None)
    if correlation_id:
        log_entry["correlation_id"] = str(correlation_id)[:8]

    is_production = os.environ.get("PRODUCTION", "False").lower() == "true"
    for key, value in fields.items():
        lowered = key.lower()
        if "password" in lowered or "token" in lowered or "secret" in lowered:
            log_entry[key] = "REDACTED"
        elif is_production and key in _PII_KEYS:
            log_entry[key] = "REDACTED"
        elif key == "exc_info":
            if not is_production:
                log_entry[key] = value if not isinstance(value, BaseException) else repr(value)
                continue
            if isinstance(value, tuple) and len(value) >= 2:
                log_entry["exception_type"] = value[0].__name__ if value[0] else "Unknown"
                log_entry["exception_message"] = str(value[1]) if value[1] else "No message"
            elif value is True:
                exc_type, exc_value, _ = sys.exc_info()
                if exc_type:
                    log_entry["exception_type"] = exc_type.__name__
                    log_entry["exception_message"] = str(exc_value)
        else:
            log_entry[key] = value

    json_str = json.dumps(log_entry, separators=(",", ":"), default=str)
    getattr(logging, level.lower())(json_str)

def setup_logging(log_file: str, debug: bool = False) -> None:
    """
    Install the daily rotating file handler and console handler on the root logger.

    Args:
        log_file: Path of the log file, rotated at midnight with 7 backups
        debug: Whether DEBUG records are emitted
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = TimedRotatingFileHandler(
        log_file, when="midnight", interval=1, backupCount=7, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.captureWarnings(True)

class ComponentLogger:
    """
    Component-specific logger wrapper for consistent logging.

    Automatically includes component name in all log calls.
    """

    def __init__(self, component_name: str):
        self.component_name = component_name

    def debug(self, event: str, **fields) -> None:
        """Log debug message."""
        log_json(self.component_name, "debug", event, **fields)

    def info(self, event: str, **fields) -> None:
        """Log info message."""
        log_json(self.component_name, "info", event, **fields)

    def warning(self, event: str, **fields) -> None:
        """Log warning message."""
        log_json(self.component_name, "warning", event, **fields)

    def error(self, event: str, **fields) -> None:
        """Log error message."""
        log_json(self.component_name, "error", event, **fields)

    def critical(self, event: str, **fields) -> None:
        """Log critical message."""
        log_json(self.component_name, "critical", event, **fields)
