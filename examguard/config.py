"""
Engine Configuration

Every tunable of the capture, detection and session layers lives here.
Values can be overridden through EXAMGUARD_* environment variables or a .env file.
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration for the proctoring engine and its HTTP service."""

    model_config = SettingsConfigDict(env_prefix="EXAMGUARD_", env_file=".env", extra="ignore")

    # Camera
    camera_index: int = 0
    preferred_width: int = 1280
    preferred_height: int = 720
    frame_rate: int = 30
    mirror_sink: bool = True
    bind_timeout_seconds: float = 5.0

    # Capture health
    health_check_interval_seconds: float = 2.0
    stall_timeout_seconds: float = 3.0
    max_recovery_attempts: int = 3

    # Detection
    detection_interval_seconds: float = 2.0
    detection_strategy: str = "random"  # 'random' or 'face_model'
    random_violation_probability: float = 0.03
    head_rotation_threshold_degrees: float = 30.0
    min_detection_confidence: float = 0.5

    # Session policy
    violation_threshold: int = 1
    countdown_tick_seconds: float = 1.0
    finished_session_retention: int = 100

    # Service
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8081


def configure_logging(settings: Settings) -> None:
    """Install the root handler used by the service entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
