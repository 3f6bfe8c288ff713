"""Shared helpers: geodesy and time sources."""

from .clock import Clock, SystemClock
from .geo import coordinate_variance, haversine_distance, implied_speed

__all__ = ["Clock", "SystemClock", "coordinate_variance", "haversine_distance", "implied_speed"]
