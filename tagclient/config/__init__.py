"""
Configuration module for the tag client.

Provides type-safe, validated configuration using Pydantic BaseSettings.

Usage:
    from tagclient.config import get_config

    config = get_config()
    logger.info("Realtime configuration", url=config.realtime.url)
"""

import sys
import threading
from functools import lru_cache
from os import getenv

from .models import AntiCheatConfig, AppConfig, LoggingConfig, OfflineQueueConfig, RealtimeConfig

__all__ = [
    "get_config",
    "reset_config",
    "AppConfig",
    "RealtimeConfig",
    "OfflineQueueConfig",
    "AntiCheatConfig",
    "LoggingConfig",
]

# Module-level config cache
_config_instance: AppConfig | None = None
_config_lock = threading.Lock()


def _is_test_mode() -> bool:
    """
    Detect if running in test environment.

    Returns:
        bool: True if running under pytest, False otherwise
    """
    if "pytest" in sys.modules:
        return True
    return bool(getenv("PYTEST_CURRENT_TEST"))


@lru_cache(maxsize=1)
def _get_config_cached() -> AppConfig:
    """Production config loader with caching."""
    global _config_instance  # pylint: disable=global-statement  # Reason: module-level singleton cache
    with _config_lock:
        if _config_instance is None:
            _config_instance = AppConfig()
    return _config_instance


def get_config() -> AppConfig:
    """
    Get client configuration (singleton in production, fresh in tests).

    Configuration is loaded from environment variables and an optional .env file.

    Returns:
        AppConfig: The client configuration

    Raises:
        ValidationError: If configuration is invalid
    """
    if _is_test_mode():
        return AppConfig()
    return _get_config_cached()


def reset_config() -> None:
    """Reset the configuration cache so the next get_config() reloads it."""
    global _config_instance  # pylint: disable=global-statement  # Reason: module-level singleton cache
    with _config_lock:
        _get_config_cached.cache_clear()
        _config_instance = None
