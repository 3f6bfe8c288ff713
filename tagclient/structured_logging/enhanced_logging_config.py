"""
Enhanced structlog-based logging configuration for the tag client.

This is the main entry point for the logging system. Every module obtains
its logger through get_logger() and logs with structured key/value pairs.
"""

# pylint: disable=too-few-public-methods  # Reason: Logging configuration classes with focused responsibility, minimal public interface

import json
import logging
import re
from logging.handlers import RotatingFileHandler
from typing import Any

import structlog
from structlog.contextvars import merge_contextvars
from structlog.stdlib import BoundLogger, LoggerFactory

from .logging_processors import add_correlation_id, add_session_context, sanitize_sensitive_data
from .logging_utilities import detect_environment, ensure_log_directory, resolve_log_base

# NOTE: Infrastructure files may use structlog.get_logger() directly to avoid
# circular imports during logging system initialization.
logger = structlog.get_logger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

_SIZE_UNITS = {"KB": 1024, "MB": 1024 * 1024, "GB": 1024 * 1024 * 1024}


class _LoggingState:
    """State container for logging initialization to avoid global statements."""

    initialized: bool = False
    signature: str | None = None
    file_handler: logging.Handler | None = None


_logging_state = _LoggingState()


def _convert_max_size_to_bytes(max_size: str | int) -> int:
    """Convert a size such as '10MB' into a byte count."""
    if isinstance(max_size, int):
        return max_size
    value = max_size.strip().upper()
    for suffix, multiplier in _SIZE_UNITS.items():
        if value.endswith(suffix):
            return int(float(value[: -len(suffix)]) * multiplier)
    return int(value)


def _build_renderer(log_format: str) -> Any:
    """Pick the final renderer for the configured format."""
    if log_format == "json":
        return structlog.processors.JSONRenderer(default=str)

    key_value = structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "logger", "event"])

    def strip_ansi_renderer(bound_logger: Any, name: str, event_dict: dict[str, Any]) -> str | bytes:
        """Custom renderer that strips ANSI escape sequences."""
        try:
            formatted = key_value(bound_logger, name, event_dict)
            return _ANSI_ESCAPE.sub("", formatted)
        except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: a renderer failure must not crash the caller that tried to log
            return f"Logging renderer error: {type(e).__name__}: {str(e)}"

    return strip_ansi_renderer


def _setup_file_logging(environment: str, log_config: dict[str, Any], log_level: str) -> None:
    """Attach a rotating file handler under <log_base>/<environment>/client.log."""
    log_path = resolve_log_base(log_config.get("log_base", "logs")) / environment / "client.log"
    ensure_log_directory(log_path)

    rotation = log_config.get("rotation", {})
    try:
        handler = RotatingFileHandler(
            log_path,
            maxBytes=_convert_max_size_to_bytes(rotation.get("max_size", "10MB")),
            backupCount=rotation.get("backup_count", 5),
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning("Could not open client log file", log_path=str(log_path), error=str(e))
        return

    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    if _logging_state.file_handler is not None:
        root_logger.removeHandler(_logging_state.file_handler)
        _logging_state.file_handler.close()
    root_logger.addHandler(handler)
    _logging_state.file_handler = handler


def configure_enhanced_structlog(
    environment: str | None = None,
    log_level: str = "INFO",
    log_config: dict[str, Any] | None = None,
) -> None:
    """
    Configure structlog with security sanitization and correlation ids.

    Args:
        environment: Environment name (auto-detected if None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_config: Logging configuration dictionary
    """
    if environment is None:
        environment = detect_environment()
    log_config = log_config or {}

    base_processors = [
        # Security first - sanitize sensitive data
        sanitize_sensitive_data,
        add_correlation_id,
        add_session_context,
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())

    if not log_config.get("disable_logging", False) and log_config.get("log_base"):
        _setup_file_logging(environment, log_config, log_level)

    try:
        structlog.configure(
            processors=base_processors + [_build_renderer(log_config.get("format", "human"))],
            context_class=dict,
            logger_factory=LoggerFactory(),
            wrapper_class=BoundLogger,
            cache_logger_on_first_use=False,
        )
    except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: fall back to a basic configuration so logging keeps working
        logger.warning(
            "Enhanced structlog configuration failed, using basic configuration",
            error=str(e),
            error_type=type(e).__name__,
        )
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.format_exc_info,
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=BoundLogger,
            logger_factory=LoggerFactory(),
        )


def setup_enhanced_logging(config: dict[str, Any], *, force_reconfigure: bool = False) -> None:
    """
    Set up enhanced logging configuration.

    Calling this more than once is a no-op unless force_reconfigure is set.

    Args:
        config: Client configuration dictionary (see AppConfig.to_logging_dict)
        force_reconfigure: When True, reconfigure even if already initialized
    """
    config_signature = json.dumps(config, sort_keys=True, default=str)

    if _logging_state.initialized and not force_reconfigure:
        get_logger("tagclient.structured_logging.setup").debug(
            "setup_enhanced_logging skipped; logging system already initialized",
            config_signature=_logging_state.signature,
        )
        return

    logging_config = config.get("logging", {})
    environment = logging_config.get("environment", detect_environment())
    log_level = logging_config.get("level", "INFO")

    if logging_config.get("disable_logging", False):
        configure_enhanced_structlog(environment, "CRITICAL", {"disable_logging": True})
    else:
        configure_enhanced_structlog(environment, log_level, logging_config)
        get_logger("tagclient.structured_logging.enhanced").info(
            "Enhanced logging system initialized",
            environment=environment,
            log_level=log_level,
            log_base=logging_config.get("log_base", "logs"),
            security_sanitization=True,
            correlation_ids=True,
        )

    _logging_state.initialized = True
    _logging_state.signature = config_signature


def get_logger(name: str) -> Any:  # Returns BoundLogger but typed as Any for flexibility
    """
    Get a Structlog logger with the specified name.

    This is the public API for obtaining loggers. All application code
    should use this function rather than calling structlog.get_logger()
    directly.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured Structlog logger instance
    """
    return structlog.get_logger(name)
