"""
Pydantic-based configuration models for the tag client.

Every tunable constant of the connection manager, offline queue and
anti-cheat validator lives here so it can be overridden from the
environment without touching code.
"""

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..structured_logging.enhanced_logging_config import get_logger
from ..structured_logging.logging_utilities import VALID_ENVIRONMENTS

logger = get_logger(__name__)


class RealtimeConfig(BaseSettings):
    """Realtime channel, reconnection and health-check configuration."""

    url: str = Field(default="ws://localhost:3000/realtime", description="Realtime server endpoint")
    connect_timeout: float = Field(default=20.0, description="Seconds to wait for the channel to open")
    reconnect_base_delay: float = Field(default=1.0, description="Base reconnect delay in seconds")
    reconnect_max_delay: float = Field(default=10.0, description="Cap on the reconnect delay in seconds")
    reconnect_jitter: float = Field(default=0.25, description="Jitter ratio applied to each reconnect delay")
    max_reconnect_attempts: int = Field(default=10, description="Failed attempts before giving up")
    min_connect_interval: float = Field(default=2.0, description="Minimum seconds between connection attempts")
    health_check_interval: float = Field(default=25.0, description="Seconds between ping probes")
    health_check_timeout: float = Field(default=5.0, description="Seconds to wait for a pong")
    latency_good_ms: float = Field(default=100.0, description="Latency below this is 'good'")
    latency_fair_ms: float = Field(default=300.0, description="Latency below this is 'fair'")
    latency_ema_alpha: float = Field(default=0.3, description="Weight of the newest sample in the latency average")
    critical_buffer_size: int = Field(default=50, description="Critical emits held in memory while disconnected")
    resync_event: str = Field(default="game:sync", description="Event requesting a full state resync")
    ping_event: str = Field(default="ping", description="Health probe request event")
    pong_event: str = Field(default="pong", description="Health probe reply event")

    @field_validator("connect_timeout", "reconnect_base_delay", "health_check_interval", "health_check_timeout")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate that timing values are positive."""
        if v <= 0:
            raise ValueError(f"Timing values must be positive, got {v}")
        return v

    @field_validator("reconnect_jitter", "latency_ema_alpha")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Validate values expressed as a fraction."""
        if not 0 <= v <= 1:
            raise ValueError(f"Ratio must be between 0 and 1, got {v}")
        return v

    @field_validator("max_reconnect_attempts", "critical_buffer_size")
    @classmethod
    def validate_counts(cls, v: int) -> int:
        """Validate count limits."""
        if v < 1:
            raise ValueError(f"Count must be at least 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "RealtimeConfig":
        """Ensure the reconnect cap is not below the base delay."""
        if self.reconnect_max_delay < self.reconnect_base_delay:
            logger.error(
                "Reconnect delay cap below base delay",
                reconnect_base_delay=self.reconnect_base_delay,
                reconnect_max_delay=self.reconnect_max_delay,
            )
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.latency_fair_ms < self.latency_good_ms:
            raise ValueError("latency_fair_ms must be >= latency_good_ms")
        return self

    model_config = {"env_prefix": "REALTIME_", "case_sensitive": False, "extra": "ignore"}


class OfflineQueueConfig(BaseSettings):
    """Offline action queue configuration."""

    capacity: int = Field(default=100, description="Maximum queued actions")
    dedupe_distance_m: float = Field(default=5.0, description="Location samples closer than this collapse")
    max_attempts: int = Field(default=3, description="Delivery attempts for location and generic actions")
    tag_max_attempts: int = Field(default=4, description="Delivery attempts for tag actions")
    tag_ack_timeout: float = Field(default=5.0, description="Seconds to wait for a tag acknowledgment")
    staleness_window_seconds: float = Field(default=86400.0, description="Persisted actions older than this are purged")
    storage_key: str = Field(default="tag-offline-queue", description="Key the queue is persisted under")
    storage_dir: str = Field(default=".tagclient", description="Directory for the file-backed store")
    degraded_capacity: int = Field(default=50, description="Capacity while persistence is failing")
    sync_interval: float = Field(default=30.0, description="Seconds between queue retries while connected")
    game_state_key: str = Field(default="tag-game-state", description="Key the last game state is cached under")

    @field_validator("capacity", "max_attempts", "tag_max_attempts", "degraded_capacity")
    @classmethod
    def validate_counts(cls, v: int) -> int:
        """Validate count limits."""
        if v < 1:
            raise ValueError(f"Count must be at least 1, got {v}")
        return v

    @field_validator("dedupe_distance_m")
    @classmethod
    def validate_dedupe_distance(cls, v: float) -> float:
        """Validate dedupe distance."""
        if v < 0:
            raise ValueError(f"Dedupe distance must be non-negative, got {v}")
        return v

    @field_validator("sync_interval", "tag_ack_timeout")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate intervals and timeouts."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def validate_degraded_capacity(self) -> "OfflineQueueConfig":
        """Degraded capacity may not exceed the normal capacity."""
        if self.degraded_capacity > self.capacity:
            self.degraded_capacity = self.capacity
        return self

    model_config = {"env_prefix": "OFFLINE_QUEUE_", "case_sensitive": False, "extra": "ignore"}


class AntiCheatConfig(BaseSettings):
    """Thresholds and weights for position validation."""

    max_speed_mps: float = Field(default=15.0, description="Maximum plausible speed in m/s")
    teleport_distance_m: float = Field(default=100.0, description="Jump distance treated as a teleport")
    teleport_window_seconds: float = Field(default=1.0, description="Window in which a jump counts as a teleport")
    min_gps_accuracy_m: float = Field(default=1.0, description="Accuracy below this is unrealistically good")
    fake_gps_run_length: int = Field(default=5, description="Consecutive too-accurate samples before flagging")
    static_window: int = Field(default=10, description="Samples inspected for a frozen position")
    static_variance_threshold: float = Field(default=1e-5, description="Coordinate variance treated as frozen")
    history_size: int = Field(default=100, description="Accepted samples kept in history")
    decay_per_sample: float = Field(default=0.1, description="Suspicion decay applied on every validation")
    flag_threshold: float = Field(default=20.0, description="Score at which the player is flagged")
    block_threshold: float = Field(default=50.0, description="Score at which the player is blocked")
    banned_threshold: float = Field(default=100.0, description="Score reported as 'banned'")
    low_threshold: float = Field(default=5.0, description="Score reported as 'low'")
    teleport_weight: float = Field(default=50.0, description="Score added for a teleport")
    speed_hack_weight: float = Field(default=20.0, description="Score added for a speed hack")
    fake_gps_weight: float = Field(default=5.0, description="Score added for fake GPS accuracy")
    static_location_weight: float = Field(default=3.0, description="Score added for a frozen position")
    mock_provider_weight: float = Field(default=100.0, description="Score added for a mock location provider")
    tag_gps_tolerance_m: float = Field(default=10.0, description="GPS slack added to the tag range")
    default_tag_distance_m: float = Field(default=20.0, description="Default tag range in meters")
    recent_violation_limit: int = Field(default=10, description="Violations included in reports")
    report_batch_size: int = Field(default=10, description="Low severity violations per upstream batch")
    report_flush_interval: float = Field(default=60.0, description="Seconds between batch flushes")

    @field_validator("max_speed_mps", "teleport_distance_m", "teleport_window_seconds", "report_flush_interval")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate positive thresholds."""
        if v <= 0:
            raise ValueError(f"Threshold must be positive, got {v}")
        return v

    @field_validator("fake_gps_run_length", "static_window", "history_size", "report_batch_size")
    @classmethod
    def validate_counts(cls, v: int) -> int:
        """Validate window sizes."""
        if v < 1:
            raise ValueError(f"Window size must be at least 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "AntiCheatConfig":
        """Suspicion thresholds must be ordered."""
        ordered = [self.low_threshold, self.flag_threshold, self.block_threshold, self.banned_threshold]
        if ordered != sorted(ordered):
            logger.error("Suspicion thresholds out of order", thresholds=ordered)
            raise ValueError("Suspicion thresholds must satisfy low <= flag <= block <= banned")
        if self.static_window > self.history_size:
            raise ValueError("static_window cannot exceed history_size")
        return self

    model_config = {"env_prefix": "ANTICHEAT_", "case_sensitive": False, "extra": "ignore"}


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    environment: str = Field(default="local", description="Logging environment")
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="human", description="Log format")
    log_base: str = Field(default="logs", description="Base log directory")
    rotation_max_size: str = Field(default="10MB", description="Log rotation max size")
    rotation_backup_count: int = Field(default=5, description="Number of backup log files")
    disable_logging: bool = Field(default=False, description="Disable all logging")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate logging environment."""
        if v not in VALID_ENVIRONMENTS:
            logger.error("Invalid logging environment", environment=v, valid_environments=VALID_ENVIRONMENTS)
            raise ValueError(f"Environment must be one of {VALID_ENVIRONMENTS}, got '{v}'")
        return v

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got '{v}'")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "human"]
        if v not in valid_formats:
            raise ValueError(f"Log format must be one of {valid_formats}, got '{v}'")
        return v

    model_config = {"env_prefix": "LOGGING_", "case_sensitive": False, "extra": "ignore"}

    def to_dict(self) -> dict:
        """Convert to the dict shape expected by setup_enhanced_logging."""
        return {
            "environment": self.environment,
            "level": self.level,
            "format": self.format,
            "log_base": self.log_base,
            "rotation": {
                "max_size": self.rotation_max_size,
                "backup_count": self.rotation_backup_count,
            },
            "disable_logging": self.disable_logging,
        }


class AppConfig(BaseSettings):
    """
    Composite client configuration.

    Aggregates all other configs. Access via get_config().
    """

    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    offline_queue: OfflineQueueConfig = Field(default_factory=OfflineQueueConfig)
    anticheat: AntiCheatConfig = Field(default_factory=AntiCheatConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}

    def to_logging_dict(self) -> dict:
        """Logging settings in the shape setup_enhanced_logging consumes."""
        return {"logging": self.logging.to_dict()}
