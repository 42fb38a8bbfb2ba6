"""
Shared utilities used across the core: logging and time helpers.
"""

from chatbot_resilience.core.shared.logger import (
    ContextLogger,
    LogCategory,
    configure_logging,
    get_category_logger,
    get_logger,
)
from chatbot_resilience.core.shared.timing import (
    Clock,
    elapsed_since,
    has_elapsed,
    is_expired,
    remaining_ttl,
    system_clock,
    to_millis,
)

__all__ = [
    "Clock",
    "ContextLogger",
    "LogCategory",
    "configure_logging",
    "elapsed_since",
    "get_category_logger",
    "get_logger",
    "has_elapsed",
    "is_expired",
    "remaining_ttl",
    "system_clock",
    "to_millis",
]
