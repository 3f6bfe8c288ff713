"""
Logging utilities for directory management, path resolution, and environment detection.
"""

import os
import sys
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

VALID_ENVIRONMENTS = ["local", "unit_test", "e2e_test", "production"]


def ensure_log_directory(log_path: Path) -> None:
    """
    Ensure the parent directory of a log file exists.

    Failures are logged and swallowed; logging must not take the client down
    because a directory could not be created.

    Args:
        log_path: Path to the log file (directory will be created for parent)
    """
    if not log_path or not log_path.parent:
        return

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, PermissionError) as e:
        logger.warning(
            "Failed to create log directory",
            directory=str(log_path.parent),
            error=str(e),
            error_type=type(e).__name__,
        )


def resolve_log_base(log_base: str) -> Path:
    """
    Resolve log_base path to absolute path relative to project root.

    Args:
        log_base: Relative or absolute path to log directory

    Returns:
        Absolute path to log directory
    """
    log_path = Path(log_base)

    if log_path.is_absolute():
        return log_path

    # Find the project root (where pyproject.toml is located)
    current_dir = Path.cwd()
    for parent in [current_dir] + list(current_dir.parents):
        if (parent / "pyproject.toml").exists():
            return parent / log_path

    return current_dir / log_path


def detect_environment() -> str:
    """
    Detect the current environment based on various indicators.

    Returns:
        Environment name: "e2e_test", "unit_test", "local", or "production"
    """
    if "pytest" in sys.modules or "pytest" in sys.argv[0]:
        return "unit_test"

    env = os.getenv("TAGCLIENT_ENV")
    if env and env in VALID_ENVIRONMENTS:
        return env

    logging_env = os.getenv("LOGGING_ENVIRONMENT", "")
    if logging_env in VALID_ENVIRONMENTS:
        return logging_env

    return "local"
