"""Factory for enrollment engine components.

This module wires the engine's collaborators from configuration:
- Device client: GatewayDeviceClient (REST adapter over the vendor SDK)
- Notifier: HttpBackendNotifier, or NullNotifier when the backend is disabled
- Prescanner: Haar cascade (default), InsightFace SCRFD, or none

Usage:
    # Everything from .env
    service = create_service()

    # Injected device client (tests, simulators)
    service = create_service(config, device=FakeDevice())
"""

from __future__ import annotations

from typing import Literal, Optional

from enrollment_engine.config import Config
from enrollment_engine.interfaces import BackendNotifier, DeviceClient, FacePrescanner
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

PrescanBackend = Literal["haar", "insightface", "none"]


def create_device_client(config: Config | None = None) -> DeviceClient:
    """Create the gateway-backed device client."""
    if config is None:
        from enrollment_engine.config import get_config
        config = get_config()

    from enrollment_engine.backends.gateway_client import GatewayDeviceClient

    client = GatewayDeviceClient(config.device_gateway_url, timeout=config.device_timeout)
    logger.info(f"Device client created: {client}")
    return client


def create_notifier(config: Config | None = None, async_mode: bool = True) -> BackendNotifier:
    """Create the backend notifier, or a no-op one when BACKEND_ENABLED is off."""
    if config is None:
        from enrollment_engine.config import get_config
        config = get_config()

    from enrollment_engine.backends.notifier import HttpBackendNotifier, NullNotifier

    if not config.backend_enabled:
        logger.info("Backend notifications disabled")
        return NullNotifier()

    return HttpBackendNotifier(
        config.backend_url,
        auth_key=config.backend_auth_key,
        timeout=config.backend_timeout,
        async_mode=async_mode,
    )


def create_prescanner(
    config: Config | None = None,
    backend: Optional[PrescanBackend] = None,
) -> Optional[FacePrescanner]:
    """Create the advisory face prescanner.

    Args:
        config: Configuration object. If None, loads from .env
        backend: Override for config.prescan_backend

    Returns:
        DetectorFacePrescanner, or None when prescan is disabled.

    Raises:
        ValueError: Unknown backend name.

    Example:
        >>> prescanner = create_prescanner(config, backend="haar")
        >>> prescanner.prescan(jpeg_bytes).count
        1
    """
    if config is None:
        from enrollment_engine.config import get_config
        config = get_config()

    backend = backend or config.prescan_backend

    if backend == "none":
        logger.info("Face prescan disabled")
        return None

    from enrollment_engine.prescan import DetectorFacePrescanner

    if backend == "haar":
        from enrollment_engine.backends.haar import HaarCascadeDetector

        detector = HaarCascadeDetector()
    elif backend == "insightface":
        # Heavy optional dependency; only imported when selected
        from enrollment_engine.backends.scrfd import SCRFDDetector

        detector = SCRFDDetector(config)
    else:
        raise ValueError(
            f"Unknown prescan backend: '{backend}'. "
            f"Supported backends: 'haar', 'insightface', 'none'"
        )

    logger.info(f"Face prescanner created with {detector}")
    return DetectorFacePrescanner(detector)


def create_service(
    config: Config | None = None,
    *,
    device: Optional[DeviceClient] = None,
    notifier: Optional[BackendNotifier] = None,
    prescanner: Optional[FacePrescanner] = None,
    prescan_backend: Optional[PrescanBackend] = None,
):
    """Build an EnrollmentService from configuration.

    Components passed explicitly are used as-is; the rest are created from
    ``config``. The returned service is not started.
    """
    if config is None:
        from enrollment_engine.config import get_config
        config = get_config()

    from enrollment_engine.image_validator import ImageValidator
    from enrollment_engine.services.enrollment import EnrollmentService

    if device is None:
        device = create_device_client(config)
    if notifier is None:
        notifier = create_notifier(config)
    if prescanner is None:
        prescanner = create_prescanner(config, backend=prescan_backend)

    validator = ImageValidator(
        min_bytes=config.image_min_bytes,
        max_bytes=config.image_max_bytes,
        prescanner=prescanner,
    )

    return EnrollmentService(
        device=device,
        notifier=notifier,
        validator=validator,
        queue_timeout=config.queue_timeout,
        queue_max_size=config.queue_max_size,
        shutdown_grace=config.shutdown_grace,
        retry_max_attempts=config.retry_max_attempts,
        retry_base_delay=config.retry_base_delay,
        retry_max_delay=config.retry_max_delay,
        treat_null_as_success=config.treat_null_as_success,
    )
