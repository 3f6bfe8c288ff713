"""
Data types for position validation.

LocationSample is a validated pydantic model because it arrives from the
platform location source; Violation is an immutable record the validator
appends to its log.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LocationSample(BaseModel):
    """One GPS reading. timestamp is epoch seconds."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0, description="Horizontal accuracy radius in meters")
    speed: float | None = Field(default=None, description="Platform-reported speed in m/s")
    timestamp: float = Field(..., description="Epoch seconds")
    is_mock: bool = Field(default=False, description="Platform reported a mock location provider")

    def to_payload(self) -> dict[str, Any]:
        """Wire payload for a location:update message."""
        return self.model_dump()


class ViolationType(str, Enum):
    """Kinds of anomaly the validator can detect."""

    TELEPORT = "teleport"
    SPEED_HACK = "speed_hack"
    FAKE_GPS = "fake_gps"
    STATIC_LOCATION = "static_location"
    MOCK_PROVIDER = "mock_provider"


class Severity(IntEnum):
    """Violation severity, ordered so HIGH and above can be compared."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class SuspicionLevel(str, Enum):
    """Coarse bucket of the suspicion score."""

    CLEAN = "clean"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BANNED = "banned"


class TagRejectReason(str, Enum):
    """Why a tag attempt was rejected locally."""

    FLAGGED = "flagged"
    TOO_FAR = "too far"


VIOLATION_SEVERITY: dict[ViolationType, Severity] = {
    ViolationType.TELEPORT: Severity.HIGH,
    ViolationType.SPEED_HACK: Severity.MEDIUM,
    ViolationType.FAKE_GPS: Severity.LOW,
    ViolationType.STATIC_LOCATION: Severity.LOW,
    ViolationType.MOCK_PROVIDER: Severity.CRITICAL,
}


@dataclass(frozen=True)
class Violation:
    """One detected anomaly."""

    type: ViolationType
    severity: Severity
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.name.lower(),
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


@dataclass
class PositionValidationResult:
    """Outcome of validate_position()."""

    valid: bool
    violations: list[Violation]
    suspicion_score: float


@dataclass
class TagVerification:
    """Outcome of verify_tag()."""

    accepted: bool
    distance_m: float
    reason: TagRejectReason | None = None
