"""
Logging processors for structlog event processing.

This module provides processors for sanitizing sensitive data, adding
correlation IDs and attaching client session context.
"""

import re
import uuid
from typing import Any

# Sensitive patterns that should be redacted
# These patterns match whole words or specific suffixes/prefixes
_SENSITIVE_PATTERNS = [
    r"\bpassword\b",
    r"\btoken\b",
    r"_token\b",
    r"\bsecret\b",
    r"_key\b",
    r"^key$",
    r"\bcredential\b",
    r"\bauth\b",
    r"\bjwt\b",
    r"\bbearer\b",
    r"\bauthorization\b",
]

# Field names that look sensitive but carry no secrets
_SAFE_FIELDS = {
    "storage_key",
    "dedupe_key",
}


class _SessionHolder:  # pylint: disable=too-few-public-methods  # Reason: Holder class with focused responsibility, minimal public interface
    session_id: str | None = None


_session_holder = _SessionHolder()


def set_session_id(session_id: str | None) -> None:
    """
    Set the game session id that is stamped onto every log entry.

    Args:
        session_id: Identifier of the current game session, or None to clear it
    """
    _session_holder.session_id = session_id


def sanitize_sensitive_data(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Remove sensitive data from log entries.

    Redacts auth tokens, credentials and similar values so that a
    misplaced keyword argument never leaks a session credential into logs.

    Args:
        _logger: Logger instance (unused)
        _name: Logger name (unused)
        event_dict: Event dictionary to sanitize

    Returns:
        Sanitized event dictionary
    """

    def sanitize_dict(d: dict[str, Any]) -> dict[str, Any]:
        """Recursively sanitize dictionary values."""
        sanitized: dict[str, Any] = {}
        for key, value in d.items():
            if isinstance(value, dict):
                sanitized[key] = sanitize_dict(value)
                continue
            key_lower = str(key).lower()
            if key_lower in _SAFE_FIELDS:
                sanitized[key] = value
            elif any(re.search(pattern, key_lower) for pattern in _SENSITIVE_PATTERNS):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = value
        return sanitized

    return sanitize_dict(event_dict)


def add_correlation_id(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add correlation ID to log entries if not already present.

    Args:
        _logger: Logger instance (unused)
        _name: Logger name (unused)
        event_dict: Event dictionary to enhance

    Returns:
        Enhanced event dictionary with correlation ID
    """
    if "correlation_id" not in event_dict:
        event_dict["correlation_id"] = str(uuid.uuid4())

    return event_dict


def add_session_context(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current game session id, when one is set."""
    if _session_holder.session_id and "session_id" not in event_dict:
        event_dict["session_id"] = _session_holder.session_id
    return event_dict
