"""Simplified configuration management using environment variables."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from dotenv import load_dotenv

if TYPE_CHECKING:
    from ..monitoring.monitor import MonitoringConfig
    from ..orchestration.workflow_engine.core import EngineConfig
    from ..queue.models import JobOptions
    from ..queue.worker import WorkerConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONDUCTOR_"


def _parse_bool(value: str | bool | None) -> bool:
    """Parse boolean value from various formats."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


def _parse_list(value: str | List[str] | None, delimiter: str = ",") -> List[str]:
    """Parse list value from string or return as-is if already a list."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [item.strip() for item in value.split(delimiter) if item.strip()]
    return [] if value is None else [value]


def _getenv(key: str, default: str = "") -> str:
    """Get a prefixed environment variable with default."""
    return os.getenv(ENV_PREFIX + key, default)


def _getenv_int(key: str, default: int) -> int:
    """Get integer environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as integer
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid integer value for {ENV_PREFIX}{key}='{value}'. "
            f"Expected integer, got: {value}"
        ) from e


def _getenv_float(key: str, default: float) -> float:
    """Get float environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as float
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid float value for {ENV_PREFIX}{key}='{value}'. "
            f"Expected float, got: {value}"
        ) from e


@dataclass
class Config:
    """Application configuration loaded from ``CONDUCTOR_*`` environment variables."""

    # ========== Application Settings ==========
    app_name: str = field(default_factory=lambda: _getenv("APP_NAME", "pipeline-conductor"))
    environment: str = field(default_factory=lambda: _getenv("ENVIRONMENT", "production"))

    # ========== Paths ==========
    data_dir: Path = field(default_factory=lambda: Path(_getenv("DATA_DIR", "./data")))
    queue_db: Optional[Path] = field(
        default_factory=lambda: Path(_getenv("QUEUE_DB")) if _getenv("QUEUE_DB") else None
    )
    state_db: Optional[Path] = field(
        default_factory=lambda: Path(_getenv("STATE_DB")) if _getenv("STATE_DB") else None
    )
    # In-memory execution records kept when no state_db is set
    state_max_records: int = field(default_factory=lambda: _getenv_int("STATE_MAX_RECORDS", 1000))

    # ========== Logging ==========
    log_level: str = field(default_factory=lambda: _getenv("LOG_LEVEL", "INFO").upper())
    log_format: str = field(
        default_factory=lambda: _getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    log_dir: Path = field(default_factory=lambda: Path(_getenv("LOG_DIR", "./logs")))
    log_to_file: bool = field(default_factory=lambda: _parse_bool(_getenv("LOG_TO_FILE", "false")))

    # ========== Engine ==========
    execution_mode: str = field(default_factory=lambda: _getenv("EXECUTION_MODE", "parallel").lower())
    max_concurrency: int = field(default_factory=lambda: _getenv_int("MAX_CONCURRENCY", 4))

    # ========== Queue ==========
    queue_name: str = field(default_factory=lambda: _getenv("QUEUE_NAME", "workflow-queue"))
    job_attempts: int = field(default_factory=lambda: _getenv_int("JOB_ATTEMPTS", 3))
    job_backoff_delay: float = field(default_factory=lambda: _getenv_float("JOB_BACKOFF_DELAY", 2.0))
    job_max_backoff_delay: float = field(default_factory=lambda: _getenv_float("JOB_MAX_BACKOFF_DELAY", 300.0))
    job_lease_seconds: float = field(default_factory=lambda: _getenv_float("JOB_LEASE_SECONDS", 600.0))

    # ========== Worker ==========
    worker_concurrency: int = field(default_factory=lambda: _getenv_int("WORKER_CONCURRENCY", 2))
    worker_poll_interval: float = field(default_factory=lambda: _getenv_float("WORKER_POLL_INTERVAL", 0.5))

    # ========== Monitoring ==========
    health_check_interval: float = field(default_factory=lambda: _getenv_float("HEALTH_CHECK_INTERVAL", 30.0))
    error_rate_threshold: float = field(default_factory=lambda: _getenv_float("ERROR_RATE_THRESHOLD", 5.0))
    alert_cooldown: float = field(default_factory=lambda: _getenv_float("ALERT_COOLDOWN", 900.0))
    dead_letter_threshold: int = field(default_factory=lambda: _getenv_int("DEAD_LETTER_THRESHOLD", 10))
    dead_letter_enabled: bool = field(default_factory=lambda: _parse_bool(_getenv("DEAD_LETTER_ENABLED", "true")))
    recent_jobs_window: int = field(default_factory=lambda: _getenv_int("RECENT_JOBS_WINDOW", 100))

    # ========== UI Settings ==========
    verbose: bool = field(default_factory=lambda: _parse_bool(_getenv("VERBOSE", "false")))
    json_output: bool = field(default_factory=lambda: _parse_bool(_getenv("JSON_OUTPUT", "false")))
    disabled_providers: List[str] = field(
        default_factory=lambda: _parse_list(_getenv("DISABLED_PROVIDERS", ""))
    )

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a setting is out of range
        """
        if self.execution_mode not in ("parallel", "sequential"):
            raise ValueError(
                f"Invalid execution mode '{self.execution_mode}'. Expected 'parallel' or 'sequential'"
            )
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")
        if self.job_attempts < 1:
            raise ValueError("job_attempts must be at least 1")
        if self.state_max_records < 1:
            raise ValueError("state_max_records must be at least 1")
        if not 0 <= self.error_rate_threshold <= 100:
            raise ValueError("error_rate_threshold must be a percentage between 0 and 100")

    # ========== Component configuration builders ==========

    def engine_config(self) -> "EngineConfig":
        # Import here to avoid circular imports
        from ..orchestration.workflow_engine.core import EngineConfig

        return EngineConfig(execution_mode=self.execution_mode, max_concurrency=self.max_concurrency)

    def job_options(self) -> "JobOptions":
        from ..queue.models import JobOptions

        return JobOptions(
            attempts=self.job_attempts,
            backoff_delay=self.job_backoff_delay,
            max_backoff_delay=self.job_max_backoff_delay,
        )

    def worker_config(self) -> "WorkerConfig":
        from ..queue.worker import WorkerConfig

        return WorkerConfig(
            queue_name=self.queue_name,
            concurrency=self.worker_concurrency,
            poll_interval=self.worker_poll_interval,
        )

    def monitoring_config(self) -> "MonitoringConfig":
        from ..monitoring.monitor import MonitoringConfig

        return MonitoringConfig(
            health_check_interval=self.health_check_interval,
            error_rate_threshold=self.error_rate_threshold,
            alert_cooldown=self.alert_cooldown,
            dead_letter_threshold=self.dead_letter_threshold,
            dead_letter_enabled=self.dead_letter_enabled,
            recent_jobs_window=self.recent_jobs_window,
        )


# Singleton instance with thread-safe initialization
_config_instance: Optional[Config] = None
_config_lock = threading.Lock()


def load_environment(search_paths: Optional[List[Path]] = None) -> Optional[Path]:
    """Load the first .env file found into the environment.

    Variables already set in the environment win over the file.

    Returns:
        The file that was loaded, or None
    """
    for env_path in search_paths or [Path(".env"), Path("../.env"), Path.home() / ".env"]:
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment from {env_path}")
            return env_path
    return None


def get_config() -> Config:
    """Get global config instance (singleton pattern, thread-safe)."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                load_environment()
                _config_instance = Config()
    return _config_instance


__all__ = ["Config", "get_config", "load_environment"]
