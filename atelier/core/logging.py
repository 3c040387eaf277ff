"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in any log aggregator.
Every log includes: version, timestamp and, when bound, slot_id,
preview_key and stage.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

from atelier import __version__

# Context variables for task-scoped logging.
# asyncio tasks copy the context on creation, so values bound inside a
# task never leak into sibling tasks.
slot_id_var: ContextVar[Optional[str]] = ContextVar("slot_id", default=None)
preview_key_var: ContextVar[Optional[str]] = ContextVar("preview_key", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = __version__

    slot_id = slot_id_var.get()
    if slot_id:
        event_dict.setdefault("slot_id", slot_id)

    preview_key = preview_key_var.get()
    if preview_key:
        event_dict.setdefault("preview_key", preview_key)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(slot_id="variant-1", stage="analyzing"):
            logger.info("analysis_started")
    """

    def __init__(
        self,
        slot_id: Optional[str] = None,
        preview_key: Optional[str] = None,
        stage: Optional[str] = None
    ):
        self.slot_id = slot_id
        self.preview_key = preview_key
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.slot_id:
            self._tokens.append((slot_id_var, slot_id_var.set(self.slot_id)))
        if self.preview_key:
            self._tokens.append((preview_key_var, preview_key_var.set(self.preview_key)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


def set_log_context(
    slot_id: Optional[str] = None,
    preview_key: Optional[str] = None,
    stage: Optional[str] = None
):
    """Bind logging context for the current task."""
    if slot_id:
        slot_id_var.set(slot_id)
    if preview_key:
        preview_key_var.set(preview_key)
    if stage:
        stage_var.set(stage)


def clear_log_context():
    """Clear the logging context of the current task."""
    slot_id_var.set(None)
    preview_key_var.set(None)
    stage_var.set(None)


# Example log output structure:
# {
#   "timestamp": "2025-05-20T10:00:00+00:00",
#   "level": "info",
#   "event": "ingestion_stage_changed",
#   "slot_id": "variant-1",
#   "from_stage": "Analyzing",
#   "to_stage": "Selecting",
#   "version": "1.0.0"
# }
