"""
Structured Logging

structlog configuration for careflow services.

Features:
- JSON or console output
- Level filtering through the stdlib logging bridge
- Redaction of intake answer content before anything is rendered
"""

import logging
import sys
from typing import Any

import structlog


# Keys whose values are patient-authored content and never belong in logs
REDACTED_KEYS = frozenset({
    "answers",
    "answer",
    "notes",
    "free_text",
    "intake_answers",
})

REDACTED = "[REDACTED]"

# Keys that carry ids or enum values and are always safe
_SAFE_KEYS = frozenset({"event", "level", "logger", "timestamp"})


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if k in REDACTED_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def intake_redaction_processor(logger, method_name, event_dict):
    """Mask intake answers and clinician notes in a log event."""
    for key in list(event_dict):
        if key in _SAFE_KEYS:
            continue
        if key in REDACTED_KEYS:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = True):
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Minimum level name, e.g. "INFO"
        json_logs: Render JSON lines when True, console output otherwise
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            intake_redaction_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
