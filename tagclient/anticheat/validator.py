"""
Position and tag validation.

Scores each incoming GPS sample for physically implausible movement and
keeps a decaying suspicion score for the session. The output is advisory:
the server re-validates everything, so nothing here ever raises on bad
input data. Violations are published on the event bus and handed to the
upstream reporter.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

from ..config.models import AntiCheatConfig
from ..events.event_bus import EventBus
from ..events.event_types import ViolationDetected
from ..structured_logging.enhanced_logging_config import get_logger
from ..utils.geo import coordinate_variance, haversine_distance, implied_speed
from .models import (
    VIOLATION_SEVERITY,
    LocationSample,
    PositionValidationResult,
    Severity,
    SuspicionLevel,
    TagRejectReason,
    TagVerification,
    Violation,
    ViolationType,
)

logger = get_logger(__name__)

_VIOLATION_LOG_LIMIT = 500


@dataclass
class SuspicionRecord:
    """Per-session suspicion state. Mutated only by the validator."""

    score: float = 0.0
    violations: deque[Violation] = field(default_factory=lambda: deque(maxlen=_VIOLATION_LOG_LIMIT))
    totals_by_type: Counter = field(default_factory=Counter)
    totals_by_severity: Counter = field(default_factory=Counter)
    last_decay_time: float | None = None

    def decay(self, amount: float, at: float) -> None:
        self.score = max(0.0, self.score - amount)
        self.last_decay_time = at

    def record(self, violation: Violation) -> None:
        self.violations.append(violation)
        self.totals_by_type[violation.type.value] += 1
        self.totals_by_severity[violation.severity.name.lower()] += 1


class AntiCheatValidator:
    """
    Flags and progressively distrusts implausible movement.

    Only samples that pass the movement checks become the reference for the
    next comparison, so a single spoofed jump cannot drag the baseline along
    with it.
    """

    def __init__(
        self,
        config: AntiCheatConfig | dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
        reporter: Any = None,
    ):
        if config is None:
            config = AntiCheatConfig()
        elif isinstance(config, dict):
            config = AntiCheatConfig(**config)
        self.config = config
        self.event_bus = event_bus
        self.reporter = reporter

        self._weights: dict[ViolationType, float] = {
            ViolationType.TELEPORT: config.teleport_weight,
            ViolationType.SPEED_HACK: config.speed_hack_weight,
            ViolationType.FAKE_GPS: config.fake_gps_weight,
            ViolationType.STATIC_LOCATION: config.static_location_weight,
            ViolationType.MOCK_PROVIDER: config.mock_provider_weight,
        }

        self._record = SuspicionRecord()
        self._history: deque[LocationSample] = deque(maxlen=config.history_size)
        self._last_accepted: LocationSample | None = None
        self._precise_run = 0
        self._static_cooldown = 0

    @property
    def suspicion_score(self) -> float:
        return self._record.score

    @property
    def history(self) -> tuple[LocationSample, ...]:
        return tuple(self._history)

    def validate_position(self, sample: LocationSample) -> PositionValidationResult:
        """
        Score one GPS sample.

        Decay is applied first on every call, then the weight of each
        detected violation is added.

        Args:
            sample: The reading to validate

        Returns:
            PositionValidationResult; valid is False for teleports and mock providers
        """
        cfg = self.config
        self._record.decay(cfg.decay_per_sample, sample.timestamp)

        violations: list[Violation] = []
        valid = True

        if sample.is_mock:
            violations.append(self._violation(ViolationType.MOCK_PROVIDER, sample, reason="mock location provider"))
            valid = False

        last = self._last_accepted
        out_of_order = last is not None and sample.timestamp < last.timestamp

        if last is not None and not out_of_order:
            elapsed = sample.timestamp - last.timestamp
            distance = haversine_distance(last.lat, last.lng, sample.lat, sample.lng)

            if distance > cfg.teleport_distance_m and elapsed < cfg.teleport_window_seconds:
                violations.append(
                    self._violation(
                        ViolationType.TELEPORT,
                        sample,
                        distance_m=round(distance, 2),
                        elapsed_s=round(elapsed, 3),
                    )
                )
                valid = False
            else:
                speed = implied_speed(distance, elapsed)
                if speed > cfg.max_speed_mps:
                    violations.append(
                        self._violation(
                            ViolationType.SPEED_HACK,
                            sample,
                            speed_mps=round(speed, 2),
                            max_speed_mps=cfg.max_speed_mps,
                            distance_m=round(distance, 2),
                        )
                    )

        if sample.accuracy is not None and sample.accuracy < cfg.min_gps_accuracy_m:
            self._precise_run += 1
        else:
            self._precise_run = 0
        if self._precise_run >= cfg.fake_gps_run_length:
            violations.append(
                self._violation(
                    ViolationType.FAKE_GPS,
                    sample,
                    accuracy_m=sample.accuracy,
                    consecutive_samples=self._precise_run,
                )
            )
            self._precise_run = 0

        if out_of_order:
            logger.debug(
                "Out-of-order location sample not used as reference",
                sample_timestamp=sample.timestamp,
                last_timestamp=last.timestamp if last else None,
            )
        elif valid:
            self._accept(sample)
            static = self._check_static(sample)
            if static is not None:
                violations.append(static)

        for violation in violations:
            self._apply(violation)

        if violations:
            self._publish(violations)

        return PositionValidationResult(valid=valid, violations=violations, suspicion_score=self._record.score)

    def _accept(self, sample: LocationSample) -> None:
        self._last_accepted = sample
        self._history.append(sample)
        if self._static_cooldown > 0:
            self._static_cooldown -= 1

    def _check_static(self, sample: LocationSample) -> Violation | None:
        """Frozen coordinates while time keeps moving suggest a replayed or pinned position."""
        window_size = self.config.static_window
        if len(self._history) < window_size or self._static_cooldown > 0:
            return None

        window = list(self._history)[-window_size:]
        timestamps = [s.timestamp for s in window]
        if any(later <= earlier for earlier, later in zip(timestamps, timestamps[1:], strict=False)):
            return None

        variance = coordinate_variance((s.lat, s.lng) for s in window)
        if variance >= self.config.static_variance_threshold:
            return None

        self._static_cooldown = window_size
        return self._violation(ViolationType.STATIC_LOCATION, sample, variance=variance, window=window_size)

    def _violation(self, violation_type: ViolationType, sample: LocationSample, **details: Any) -> Violation:
        return Violation(
            type=violation_type,
            severity=VIOLATION_SEVERITY[violation_type],
            timestamp=sample.timestamp,
            details=details,
        )

    def _apply(self, violation: Violation) -> None:
        weight = self._weights[violation.type]
        if violation.type is ViolationType.MOCK_PROVIDER:
            self._record.score = max(self._record.score + weight, self.config.block_threshold)
        else:
            self._record.score += weight
        self._record.record(violation)

        log = logger.warning if violation.severity >= Severity.HIGH else logger.info
        log(
            "Anti-cheat violation detected",
            violation_type=violation.type.value,
            severity=violation.severity.name.lower(),
            suspicion_score=round(self._record.score, 2),
            **violation.details,
        )

    def _publish(self, violations: list[Violation]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(ViolationDetected(violations=list(violations), suspicion_score=self._record.score))
        if self.reporter is not None:
            self.reporter.report(violations)

    def verify_tag(
        self,
        tagger_pos: LocationSample,
        target_pos: LocationSample,
        max_distance: float | None = None,
    ) -> TagVerification:
        """
        Check a tag attempt before it is sent.

        Args:
            tagger_pos: Position of the tagging player
            target_pos: Last known position of the target
            max_distance: Tag range in meters; GPS tolerance is added on top

        Returns:
            TagVerification with accepted False and a reason when rejected
        """
        if max_distance is None:
            max_distance = self.config.default_tag_distance_m

        distance = haversine_distance(tagger_pos.lat, tagger_pos.lng, target_pos.lat, target_pos.lng)

        if self.is_blocked():
            logger.info("Tag rejected for blocked player", suspicion_score=round(self._record.score, 2))
            return TagVerification(accepted=False, distance_m=distance, reason=TagRejectReason.FLAGGED)

        allowed = max_distance + self.config.tag_gps_tolerance_m
        if distance > allowed:
            logger.info("Tag rejected, target out of range", distance_m=round(distance, 2), allowed_m=allowed)
            return TagVerification(accepted=False, distance_m=distance, reason=TagRejectReason.TOO_FAR)

        return TagVerification(accepted=True, distance_m=distance)

    def is_flagged(self) -> bool:
        return self._record.score >= self.config.flag_threshold

    def is_blocked(self) -> bool:
        return self._record.score >= self.config.block_threshold

    def get_suspicion_level(self) -> SuspicionLevel:
        score = self._record.score
        cfg = self.config
        if score >= cfg.banned_threshold:
            return SuspicionLevel.BANNED
        if score >= cfg.block_threshold:
            return SuspicionLevel.HIGH
        if score >= cfg.flag_threshold:
            return SuspicionLevel.MEDIUM
        if score >= cfg.low_threshold:
            return SuspicionLevel.LOW
        return SuspicionLevel.CLEAN

    def get_violation_report(self) -> dict[str, Any]:
        """Read-only summary of the session's suspicion state."""
        recent = list(self._record.violations)[-self.config.recent_violation_limit :]
        return {
            "suspicion_score": round(self._record.score, 2),
            "suspicion_level": self.get_suspicion_level().value,
            "is_flagged": self.is_flagged(),
            "is_blocked": self.is_blocked(),
            "total_violations": sum(self._record.totals_by_type.values()),
            "by_type": dict(self._record.totals_by_type),
            "by_severity": dict(self._record.totals_by_severity),
            "recent_violations": [v.to_dict() for v in recent],
            "history_length": len(self._history),
            "last_decay_time": self._record.last_decay_time,
        }

    def reset(self) -> None:
        """Clear history, violations and score for a new game session."""
        self._record = SuspicionRecord()
        self._history.clear()
        self._last_accepted = None
        self._precise_run = 0
        self._static_cooldown = 0
        logger.info("Anti-cheat state reset")
