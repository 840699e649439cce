"""Application configuration for data paths and gateway settings."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


def get_app_root() -> Path:
    """
    Get the application root directory.

    Returns /plangen in production, or project root in development.
    """
    # Check if we're in production (Docker environment)
    if os.path.exists("/plangen"):
        return Path("/plangen")

    # Development: return project root
    return Path(__file__).parent.parent


def get_data_dir() -> Path:
    """
    Get the data directory for the settings database and model artifacts.

    Checks PLANGEN_DATA_DIR environment variable first, then falls back to:
    - /plangen/data in production (Docker)
    - {project_root}/data in development
    """
    # Check environment variable first
    if env_data_dir := os.getenv("PLANGEN_DATA_DIR"):
        return Path(env_data_dir)

    # Fall back to default behavior
    return get_app_root() / "data"


def get_bundled_model_path() -> Path:
    """Path of the model artifact shipped with the package."""
    return Path(__file__).parent / "catalog" / "plan_model.json"


def get_model_path() -> Path:
    """
    Get the model artifact path with priority order:
    1. Database settings
    2. Environment variable (PLANGEN_MODEL_PATH)
    3. Default (bundled artifact)

    Returns:
        Path to the model artifact handed to every worker
    """
    # Avoid circular import by importing here
    from plangen.db.settings import get_setting

    # Priority 1: Database settings
    db_path = get_setting("model_path")
    if db_path:
        return Path(db_path)

    # Priority 2: Environment variable
    env_path = os.getenv("PLANGEN_MODEL_PATH")
    if env_path:
        return Path(env_path)

    # Priority 3: Default
    return get_bundled_model_path()


def default_worker_command(model_path: Path) -> List[str]:
    """Command line for the reference plan worker."""
    return [
        sys.executable,
        "-m",
        "plangen.worker.workers.plan_worker",
        "--model-path",
        str(model_path),
    ]


QUEUE_POLICIES = ("wait", "shed")


@dataclass
class GatewayConfig:
    """Everything the worker pool and orchestrator need at startup."""

    worker_command: List[str]
    worker_env: Dict[str, str] = field(default_factory=dict)  # Added on top of os.environ
    worker_cwd: Optional[str] = None
    pool_size: int = 2
    request_timeout: float = 30.0  # Overall budget per generate_plan call
    acquire_timeout: float = 5.0  # Max wait for an idle worker
    max_requests_per_worker: int = 500  # 0 = never retire
    respawn_backoff: float = 1.0
    respawn_backoff_max: float = 30.0
    startup_timeout: float = 120.0  # Model load + handshake
    terminate_grace: float = 5.0  # SIGTERM -> SIGKILL window
    health_check_interval: float = 10.0
    queue_policy: str = "wait"  # "wait" or "shed"
    max_queue: int = 0  # 0 = bounded only by acquire_timeout
    max_frame_bytes: int = 16 * 1024 * 1024
    degraded_after_failures: int = 3
    max_worker_rss_mb: Optional[float] = None
    record_exchanges: bool = False

    def validate(self) -> "GatewayConfig":
        """Raise ValueError if the configuration cannot work."""
        if not self.worker_command:
            raise ValueError("worker_command must not be empty")
        if self.pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        for name in ("request_timeout", "acquire_timeout", "startup_timeout", "health_check_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.respawn_backoff < 0 or self.respawn_backoff_max < self.respawn_backoff:
            raise ValueError("respawn_backoff must be >= 0 and <= respawn_backoff_max")
        if self.terminate_grace < 0:
            raise ValueError("terminate_grace must not be negative")
        if self.queue_policy not in QUEUE_POLICIES:
            raise ValueError(f"queue_policy must be one of {', '.join(QUEUE_POLICIES)}")
        if self.max_requests_per_worker < 0 or self.max_queue < 0:
            raise ValueError("max_requests_per_worker and max_queue must not be negative")
        if self.max_frame_bytes < 1 or self.max_frame_bytes > 0xFFFFFFFF:
            raise ValueError("max_frame_bytes must fit in a 4-byte length prefix")
        if self.degraded_after_failures < 1:
            raise ValueError("degraded_after_failures must be at least 1")
        return self


def _setting(key: str) -> Optional[str]:
    """Database setting, then PLANGEN_<KEY> environment variable."""
    from plangen.db.settings import get_setting

    value = get_setting(key)
    if value is not None and value.strip() != "":
        return value
    env_value = os.getenv(f"PLANGEN_{key.upper()}")
    if env_value is not None and env_value.strip() != "":
        return env_value
    return None


def _as_float(key: str, default: Optional[float]) -> Optional[float]:
    value = _setting(key)
    if value is None:
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def _as_int(key: str, default: int) -> int:
    value = _setting(key)
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def load_gateway_config() -> GatewayConfig:
    """
    Build the gateway configuration from settings.

    Each key is resolved with priority database setting > PLANGEN_<KEY>
    environment variable > dataclass default.

    Returns:
        Validated GatewayConfig
    """
    defaults = GatewayConfig(worker_command=["unused"])

    command = _setting("worker_command")
    worker_command = shlex.split(command) if command else default_worker_command(get_model_path())

    record = _setting("record_exchanges")

    config = GatewayConfig(
        worker_command=worker_command,
        worker_cwd=_setting("worker_cwd"),
        pool_size=_as_int("pool_size", defaults.pool_size),
        request_timeout=_as_float("request_timeout_seconds", defaults.request_timeout),
        acquire_timeout=_as_float("acquire_timeout_seconds", defaults.acquire_timeout),
        max_requests_per_worker=_as_int("max_requests_per_worker", defaults.max_requests_per_worker),
        respawn_backoff=_as_float("respawn_backoff_seconds", defaults.respawn_backoff),
        respawn_backoff_max=_as_float("respawn_backoff_max_seconds", defaults.respawn_backoff_max),
        startup_timeout=_as_float("worker_startup_timeout_seconds", defaults.startup_timeout),
        terminate_grace=_as_float("terminate_grace_seconds", defaults.terminate_grace),
        health_check_interval=_as_float("health_check_interval_seconds", defaults.health_check_interval),
        queue_policy=(_setting("queue_policy") or defaults.queue_policy).strip().lower(),
        max_queue=_as_int("max_queue", defaults.max_queue),
        max_frame_bytes=_as_int("max_frame_bytes", defaults.max_frame_bytes),
        degraded_after_failures=_as_int("degraded_after_failures", defaults.degraded_after_failures),
        max_worker_rss_mb=_as_float("max_worker_rss_mb", None),
        record_exchanges=record is None or record.lower() in ("true", "1", "yes", "on"),
    )
    return config.validate()
