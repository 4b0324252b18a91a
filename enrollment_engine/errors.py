"""Error taxonomy for the enrollment engine.

Validation-class errors fail before any device call. Device-class errors
carry the device's response code and message through unchanged.
"""

from __future__ import annotations

from typing import Optional


class EnrollmentError(Exception):
    """Base class for every error surfaced by the enrollment engine.

    Attributes:
        code: Stable short error code suitable for API responses
        message: Human-readable description
    """

    code = "ENROLLMENT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(EnrollmentError):
    """Bad credentials or payload; raised before any device call."""

    code = "VALIDATION_ERROR"


class IndeterminateStateError(ValidationError):
    """Existence on the device could not be determined and the caller did not allow proceeding."""

    code = "INDETERMINATE_STATE"


class DuplicateError(EnrollmentError):
    """Identity already exists on the device and force_update was not set."""

    code = "DUPLICATE_EMPLOYEE"


class DeviceCommunicationError(EnrollmentError):
    """Device (or its gateway) could not be reached, or the connection probe failed."""

    code = "DEVICE_COMMUNICATION"


class DeviceOperationError(EnrollmentError):
    """Device returned a terminal non-success code.

    Attributes:
        device_code: Raw code returned by the device (None if no response)
        device_message: Raw message returned by the device, passed through
        operation: Device operation that failed (e.g. "merge_face")
    """

    code = "DEVICE_OPERATION"

    def __init__(
        self,
        message: str,
        device_code: Optional[str] = None,
        device_message: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.device_code = device_code
        self.device_message = device_message
        self.operation = operation


class IdentityNotFoundError(DeviceOperationError):
    """Device reported that the identity does not exist."""

    code = "NOT_FOUND"


class ImageError(ValidationError):
    """Face image payload is invalid."""

    code = "IMAGE_ERROR"


class ImageFormatError(ImageError):
    """Payload is not valid base64."""

    code = "IMAGE_FORMAT"


class UnsupportedFormatError(ImageError):
    """Decoded bytes are not a recognized image format."""

    code = "IMAGE_UNSUPPORTED_FORMAT"


class ImageSizeError(ImageError):
    """Decoded image is outside the device's size bounds."""

    code = "IMAGE_SIZE"


class QueueTimeoutError(EnrollmentError, TimeoutError):
    """Caller's deadline passed before its device task delivered a result."""

    code = "QUEUE_TIMEOUT"


class QueueFullError(EnrollmentError):
    """Device queue is at capacity; the submission was rejected."""

    code = "QUEUE_FULL"


class QueueClosedError(EnrollmentError):
    """Device queue is shut down (or shutting down) and no longer runs tasks."""

    code = "QUEUE_CLOSED"
