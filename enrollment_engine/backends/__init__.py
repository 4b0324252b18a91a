"""Backend implementations for the enrollment engine.

This package contains the adapters to external systems:
- gateway_client: REST adapter to the terminal's device gateway
- notifier: business backend callbacks
- haar / scrfd: face detectors used by the advisory prescan

Use the factory module to create configured components.
"""

from enrollment_engine.backends.factory import (
    PrescanBackend,
    create_device_client,
    create_notifier,
    create_prescanner,
    create_service,
)

__all__ = [
    "create_device_client",
    "create_notifier",
    "create_prescanner",
    "create_service",
    "PrescanBackend",
]
