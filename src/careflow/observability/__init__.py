"""
Careflow Observability Module

structlog setup with intake-answer redaction.
"""

from careflow.observability.logging import (
    configure_logging,
    intake_redaction_processor,
    REDACTED,
    REDACTED_KEYS,
)

__all__ = [
    "configure_logging",
    "intake_redaction_processor",
    "REDACTED",
    "REDACTED_KEYS",
]
