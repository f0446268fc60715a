"""Central configuration for the depth liveness controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .analysis.thresholds import DepthBounds

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class EngineSettings(BaseModel):
    """Per-frame decision engine tuning."""
    min_valid_points: int = Field(30, description="Valid depth cells required before a frame is evaluated")
    required_optional_checks: int = Field(4, description="Optional checks (out of 7) that must pass for a Live verdict")
    gradient_history_size: int = Field(10, description="Gradient vectors kept for micro-movement analysis")
    micro_movement_min_span_s: float = Field(0.5, description="Time the stored gradient history must span (seconds)")
    temporal_min_delta_m: float = Field(0.0005, description="Mean depth change below this is too static (meters)")
    temporal_max_delta_m: float = Field(1.5, description="Mean depth change above this is too erratic (meters)")
    linear_step_ratio: float = Field(0.3, description="Sorted-step std dev below this fraction of the mean step is linear")
    micro_movement_ratio: float = Field(0.5, description="Variance std dev below this fraction of the mean variance is uniform")


class CalibrationSettings(BaseModel):
    """Enrollment capture and threshold calibration."""
    k_multiplier: float = Field(2.0, description="Standard deviations between the enrolled mean and a bound")
    min_center_samples: int = Field(5, description="Center-pose samples required to calibrate")
    frames_per_pose: int = Field(7, description="Frames captured for each enrollment pose")
    pose_timeout_s: float = Field(10.0, description="Time allowed to complete one pose capture (seconds)")
    closer_delta_m: float = Field(0.15, description="Required Center -> Closer mean depth decrease (meters)")
    further_delta_m: float = Field(0.25, description="Required Closer -> Further mean depth increase (meters)")


class ChallengeSettings(BaseModel):
    """Head-turn challenge fallback."""
    p1_threshold_deg: float = Field(5.0, description="Centered yaw bound for the start and return milestones")
    p2_threshold_deg: float = Field(25.0, description="Yaw that must be exceeded at the far end of the turn")
    timeout_s: float = Field(10.0, description="Challenge session time limit (seconds)")


class VerificationSettings(BaseModel):
    """Primary depth verification window."""
    window_seconds: float = Field(5.0, description="Time allowed for depth checks to confirm liveness")
    required_consecutive_frames: int = Field(3, description="Consecutive Live frames needed to confirm")
    retry_with_default_bounds: bool = Field(True, description="Re-check the last frame with default bounds when personalized bounds fail")
    challenge_enabled: bool = Field(True, description="Fall back to the head-turn challenge when a face was seen")


class Settings(BaseSettings):
    """Environment-driven settings for the liveness controller."""

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Storage
    data_directory: Path = Field(ROOT_DIR / "data", description="Directory holding thresholds and result log")
    result_log_capacity: int = Field(20, description="Completed verification records kept on disk")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")
    analysis_log_level: Optional[str] = Field(
        None,
        description="Level for the analysis loggers (DEBUG shows per-check diagnostics); defaults to log_level",
    )

    # Nested Configuration Objects
    thresholds: DepthBounds = Field(default_factory=DepthBounds, description="Fixed default decision bounds")
    engine: EngineSettings = Field(default_factory=EngineSettings, description="Decision engine tuning")
    calibration: CalibrationSettings = Field(default_factory=CalibrationSettings, description="Enrollment and calibration")
    challenge: ChallengeSettings = Field(default_factory=ChallengeSettings, description="Head-turn challenge")
    verification: VerificationSettings = Field(default_factory=VerificationSettings, description="Verification window")

    @field_validator("log_level", "analysis_log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
