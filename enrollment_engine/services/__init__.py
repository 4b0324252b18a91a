"""High-level services for device enrollment.

This package contains the device operation queue, the enrollment saga
orchestrator and the public EnrollmentService built on both.
"""

from enrollment_engine.services.device_queue import (
    DeviceOperationQueue,
    GuardedDeviceClient,
    QueueStats,
    ShutdownReport,
    WorkerThreadError,
)
from enrollment_engine.services.enrollment import EnrollmentService
from enrollment_engine.services.orchestrator import (
    EnrollmentOrchestrator,
    EnrollmentOutcome,
    EnrollmentState,
)

__all__ = [
    "DeviceOperationQueue",
    "EnrollmentOrchestrator",
    "EnrollmentOutcome",
    "EnrollmentService",
    "EnrollmentState",
    "GuardedDeviceClient",
    "QueueStats",
    "ShutdownReport",
    "WorkerThreadError",
]
