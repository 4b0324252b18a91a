"""Configuration management for the enrollment engine.

This module loads configuration from environment variables (.env file) and
provides a centralized Config class for accessing application settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_PRESCAN_BACKENDS = ["haar", "insightface", "none"]
VALID_MODEL_PACKS = ["buffalo_l", "buffalo_m", "buffalo_s", "buffalo_sc"]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        device_gateway_url: Base URL of the device gateway the adapter talks to
        device_timeout: Per-request timeout for device gateway calls (seconds)
        backend_url: Base URL of the business backend receiving sync callbacks
        backend_enabled: Whether backend notifications are sent at all
        backend_auth_key: Service auth key sent as X-Service-Auth
        backend_timeout: Per-request timeout for backend callbacks (seconds)
        queue_timeout: How long a caller waits for its device task (seconds)
        queue_max_size: Pending tasks accepted before submissions are rejected
        shutdown_grace: Seconds the queue may drain during shutdown
        retry_max_attempts: Face-merge attempts before giving up
        retry_base_delay: First backoff delay (seconds)
        retry_max_delay: Backoff cap (seconds)
        image_min_bytes: Smallest decoded face image accepted
        image_max_bytes: Largest decoded face image accepted
        prescan_backend: Face prescan detector ("haar", "insightface", "none")
        ctx_id: InsightFace device context ID (-1 for CPU, 0+ for GPU)
        model_pack: InsightFace model pack name
        treat_null_as_success: Accept a missing device response as success
    """

    log_level: str
    device_gateway_url: str
    device_timeout: float
    backend_url: str
    backend_enabled: bool
    backend_auth_key: str
    backend_timeout: float
    queue_timeout: float
    queue_max_size: int
    shutdown_grace: float
    retry_max_attempts: int
    retry_base_delay: float
    retry_max_delay: float
    image_min_bytes: int
    image_max_bytes: int
    prescan_backend: str
    ctx_id: int
    model_pack: str
    treat_null_as_success: bool

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Returns:
            Config instance with values from environment or defaults.

        Raises:
            ValueError: If required environment variables are invalid.
        """
        # Logging configuration
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}, got {log_level}")

        # Device gateway
        device_gateway_url = os.getenv("DEVICE_GATEWAY_URL", "http://localhost:8081").rstrip("/")
        device_timeout = float(os.getenv("DEVICE_TIMEOUT", "120"))
        if device_timeout <= 0:
            raise ValueError(f"DEVICE_TIMEOUT must be > 0, got {device_timeout}")

        # Backend notifications
        backend_url = os.getenv("BACKEND_URL", "http://localhost:5000").rstrip("/")
        backend_enabled = _env_bool("BACKEND_ENABLED", "0")
        backend_auth_key = os.getenv("BACKEND_AUTH_KEY", "")
        backend_timeout = float(os.getenv("BACKEND_TIMEOUT", "30"))
        if backend_timeout <= 0:
            raise ValueError(f"BACKEND_TIMEOUT must be > 0, got {backend_timeout}")

        # Device operation queue
        queue_timeout = float(os.getenv("QUEUE_TIMEOUT", "900"))
        if queue_timeout <= 0:
            raise ValueError(f"QUEUE_TIMEOUT must be > 0, got {queue_timeout}")

        queue_max_size = int(os.getenv("QUEUE_MAX_SIZE", "150"))
        if queue_max_size < 1:
            raise ValueError(f"QUEUE_MAX_SIZE must be >= 1, got {queue_max_size}")

        shutdown_grace = float(os.getenv("SHUTDOWN_GRACE", "30"))
        if shutdown_grace < 0:
            raise ValueError(f"SHUTDOWN_GRACE must be >= 0, got {shutdown_grace}")

        # Face-merge retry
        retry_max_attempts = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
        if retry_max_attempts < 1:
            raise ValueError(f"RETRY_MAX_ATTEMPTS must be >= 1, got {retry_max_attempts}")

        retry_base_delay = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
        retry_max_delay = float(os.getenv("RETRY_MAX_DELAY", "10.0"))
        if retry_base_delay < 0 or retry_max_delay < retry_base_delay:
            raise ValueError(
                f"Need 0 <= RETRY_BASE_DELAY <= RETRY_MAX_DELAY, "
                f"got {retry_base_delay} and {retry_max_delay}"
            )

        # Image bounds
        image_min_bytes = int(os.getenv("IMAGE_MIN_BYTES", "5000"))
        image_max_bytes = int(os.getenv("IMAGE_MAX_BYTES", "500000"))
        if image_min_bytes < 0 or image_max_bytes < image_min_bytes:
            raise ValueError(
                f"Need 0 <= IMAGE_MIN_BYTES <= IMAGE_MAX_BYTES, "
                f"got {image_min_bytes} and {image_max_bytes}"
            )

        # Face prescan
        prescan_backend = os.getenv("PRESCAN_BACKEND", "haar").lower()
        if prescan_backend not in VALID_PRESCAN_BACKENDS:
            raise ValueError(
                f"PRESCAN_BACKEND must be one of {VALID_PRESCAN_BACKENDS}, got {prescan_backend}"
            )

        ctx_id = int(os.getenv("CTX_ID", "-1"))

        model_pack = os.getenv("MODEL_PACK", "buffalo_s")
        if model_pack not in VALID_MODEL_PACKS:
            raise ValueError(f"MODEL_PACK must be one of {VALID_MODEL_PACKS}, got {model_pack}")

        treat_null_as_success = _env_bool("TREAT_NULL_AS_SUCCESS", "1")

        return cls(
            log_level=log_level,
            device_gateway_url=device_gateway_url,
            device_timeout=device_timeout,
            backend_url=backend_url,
            backend_enabled=backend_enabled,
            backend_auth_key=backend_auth_key,
            backend_timeout=backend_timeout,
            queue_timeout=queue_timeout,
            queue_max_size=queue_max_size,
            shutdown_grace=shutdown_grace,
            retry_max_attempts=retry_max_attempts,
            retry_base_delay=retry_base_delay,
            retry_max_delay=retry_max_delay,
            image_min_bytes=image_min_bytes,
            image_max_bytes=image_max_bytes,
            prescan_backend=prescan_backend,
            ctx_id=ctx_id,
            model_pack=model_pack,
            treat_null_as_success=treat_null_as_success,
        )

    def __repr__(self) -> str:
        """Return string representation of config."""
        return (
            f"Config(\n"
            f"  Device gateway: {self.device_gateway_url} (timeout {self.device_timeout}s),\n"
            f"  Backend: {self.backend_url if self.backend_enabled else 'disabled'},\n"
            f"  Queue: timeout {self.queue_timeout}s, max {self.queue_max_size} pending,\n"
            f"  Retry: {self.retry_max_attempts} attempts, "
            f"{self.retry_base_delay}s..{self.retry_max_delay}s,\n"
            f"  Image bounds: {self.image_min_bytes}..{self.image_max_bytes} bytes,\n"
            f"  Prescan: {self.prescan_backend},\n"
            f"  Log Level: {self.log_level}\n"
            f")"
        )


# Global config instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get global config instance (singleton pattern).

    Returns:
        Config instance loaded from environment.
    """
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
