"""Centralized logging configuration."""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, List, Optional

PACKAGE_LOGGER_NAME = "menu_extraction"

# Identifies the extraction run that owns the currently executing task
current_run_id: ContextVar[Optional[str]] = ContextVar("current_run_id", default=None)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
        level: Optional log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    log_level = level or "INFO"
    logger.setLevel(getattr(logging, log_level.upper()))

    # Avoid duplicate handlers
    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))

        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        console_handler.setFormatter(formatter)

        logger.addHandler(console_handler)

    return logger


class ExtractionLogCollector(logging.Handler):
    """Collects log records emitted on behalf of a single extraction run.

    The handler is attached to the package logger for the duration of a run.
    Records are kept only when ``current_run_id`` matches, so concurrent runs
    sharing the process do not see each other's entries. Tasks spawned by the
    run inherit the context variable and are attributed correctly.
    """

    def __init__(self, run_id: str, level: int = logging.INFO):
        super().__init__(level=level)
        self.run_id = run_id
        self.entries: List[Dict[str, Any]] = []

    def emit(self, record: logging.LogRecord) -> None:
        if current_run_id.get() != self.run_id:
            return
        self.entries.append(
            {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
                "level": record.levelname,
                "phase": getattr(record, "phase", None),
                "logger": record.name,
                "message": record.getMessage(),
            }
        )

    def warnings(self) -> List[str]:
        return [e["message"] for e in self.entries if e["level"] in ("WARNING", "ERROR", "CRITICAL")]

    def export_text(self) -> str:
        """Render collected entries as plain text, one line per entry."""
        lines = []
        for entry in self.entries:
            phase = f"[phase {entry['phase']}] " if entry["phase"] is not None else ""
            lines.append(f"{entry['timestamp']} {entry['level']:<7} {phase}{entry['message']}")
        return "\n".join(lines)

    def attach(self) -> "ExtractionLogCollector":
        logging.getLogger(PACKAGE_LOGGER_NAME).addHandler(self)
        return self

    def detach(self) -> None:
        logging.getLogger(PACKAGE_LOGGER_NAME).removeHandler(self)
