"""Enrollment orchestration engine for biometric attendance terminals.

Sequences "create/merge identity" and "merge face" as a two-step saga with
compensation, serializes all device access through one worker, retries
rejected face images with backoff and normalizes device responses.
"""

from enrollment_engine.errors import (
    DeviceCommunicationError,
    DeviceOperationError,
    DuplicateError,
    EnrollmentError,
    IdentityNotFoundError,
    ImageError,
    IndeterminateStateError,
    QueueClosedError,
    QueueFullError,
    QueueTimeoutError,
    ValidationError,
)
from enrollment_engine.interfaces import (
    Credentials,
    DeviceOperationResult,
    EmployeeRecord,
    EnrollmentRequest,
)
from enrollment_engine.result import Result

__version__ = "0.1.0"

__all__ = [
    "Credentials",
    "DeviceCommunicationError",
    "DeviceOperationError",
    "DeviceOperationResult",
    "DuplicateError",
    "EmployeeRecord",
    "EnrollmentError",
    "EnrollmentRequest",
    "IdentityNotFoundError",
    "ImageError",
    "IndeterminateStateError",
    "QueueClosedError",
    "QueueFullError",
    "QueueTimeoutError",
    "Result",
    "ValidationError",
]
