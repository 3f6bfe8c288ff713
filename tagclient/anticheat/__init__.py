"""Client-side position validation and violation reporting."""

from .models import (
    LocationSample,
    PositionValidationResult,
    Severity,
    SuspicionLevel,
    TagRejectReason,
    TagVerification,
    Violation,
    ViolationType,
)
from .reporter import ViolationReporter
from .validator import AntiCheatValidator

__all__ = [
    "AntiCheatValidator",
    "LocationSample",
    "PositionValidationResult",
    "Severity",
    "SuspicionLevel",
    "TagRejectReason",
    "TagVerification",
    "Violation",
    "ViolationReporter",
    "ViolationType",
]
