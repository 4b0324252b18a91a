"""Core interfaces and data structures for the enrollment engine.

This module defines the abstract interfaces (Protocols) and data classes
shared by the orchestration engine and its collaborators: the device
client, the backend notifier and the face prescanner.

Following the Dependency Inversion Principle, the orchestrator depends on
these abstractions rather than on the vendor gateway or the HTTP backend.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, List, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np

from enrollment_engine.logging_config import mask_key

SUCCESS_CODE = "000"
MIN_DEVICE_KEY_LENGTH = 16


class VerificationStyle(IntEnum):
    """How the terminal verifies an identity."""

    FACE = 1
    FINGERPRINT = 2
    FACE_AND_FINGERPRINT = 3


def default_verification_style(has_face: bool) -> int:
    """Verification style applied when the caller does not pick one."""
    return int(VerificationStyle.FACE_AND_FINGERPRINT if has_face else VerificationStyle.FACE)


def style_implies_biometric(style: Optional[int]) -> bool:
    """Whether a verification style means a face is enrolled."""
    if style is None:
        return False
    return style in (1, 3) or style >= 5


@dataclass(frozen=True)
class Credentials:
    """Per-request device credentials.

    Attributes:
        device_key: Terminal key (at least 16 characters)
        secret: Terminal secret (non-blank)
    """

    device_key: str
    secret: str

    def __repr__(self) -> str:
        # Never leak the secret through repr/logging
        return f"Credentials(device_key={mask_key(self.device_key)}, secret=***)"


@dataclass
class EnrollmentRequest:
    """Caller request to enroll or update one identity.

    Attributes:
        employee_id: Identity key on the device (device field "sn")
        display_name: Person name shown on the terminal
        credentials: Device credentials authorizing the call
        face_image: Base64 text (optionally a data URL) or raw image bytes.
                    Required when a new identity is created.
        verification_style: Optional verification style (see VerificationStyle)
        force_update: Authorizes mutation of an identity that already exists
        allow_indeterminate: Authorizes proceeding when existence cannot be
                    determined. None means "same as force_update".
    """

    employee_id: str
    display_name: str
    credentials: Credentials
    face_image: Optional[Union[str, bytes]] = None
    verification_style: Optional[int] = None
    force_update: bool = False
    allow_indeterminate: Optional[bool] = None

    @property
    def proceed_if_indeterminate(self) -> bool:
        if self.allow_indeterminate is None:
            return self.force_update
        return self.allow_indeterminate


class ImageFormat(str, Enum):
    """Image container formats recognized from magic bytes."""

    JPEG = "JPEG"
    PNG = "PNG"
    GIF = "GIF"
    BMP = "BMP"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class FacePrescan:
    """Advisory face-presence result.

    Attributes:
        count: Number of faces found
        ratio: Largest face area divided by image area (0.0 to 1.0)
    """

    count: int
    ratio: float


@dataclass
class ImageAsset:
    """Validated face image ready for transmission.

    Attributes:
        raw_bytes: Decoded image bytes
        detected_format: Format detected from magic bytes
        size_bytes: Length of raw_bytes
        face_prescan: Advisory prescan result, None if prescan was skipped or failed
    """

    raw_bytes: bytes
    detected_format: ImageFormat
    size_bytes: int
    face_prescan: Optional[FacePrescan] = None

    @property
    def base64(self) -> str:
        """Base64 text sent to the device."""
        return base64.b64encode(self.raw_bytes).decode("ascii")

    def __repr__(self) -> str:
        return (
            f"ImageAsset(format={self.detected_format.value}, size={self.size_bytes}, "
            f"prescan={self.face_prescan})"
        )


@dataclass(frozen=True)
class DeviceOperationResult:
    """Canonical envelope returned by every device operation.

    ``code == "000"`` is the only success sentinel.
    """

    code: str
    message: str = ""
    data: Any = None

    @property
    def succeeded(self) -> bool:
        return self.code == SUCCESS_CODE


@dataclass
class EmployeeRecord:
    """Normalized identity record as stored on the device."""

    employee_id: Optional[str]
    display_name: Optional[str] = None
    has_biometric: bool = False
    last_updated: Optional[datetime] = None
    verification_style: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "employeeId": self.employee_id,
            "fullName": self.display_name,
            "hasPhoto": self.has_biometric,
            "updateTime": self.last_updated.isoformat() if self.last_updated else None,
            "verifyStyle": self.verification_style,
        }


@dataclass(frozen=True)
class IdentityPayload:
    """Identity fields sent to create_identity / merge_identity."""

    employee_id: str
    display_name: str
    verification_style: int
    person_type: int = 1
    face_image: Optional[str] = None


@runtime_checkable
class DeviceClient(Protocol):
    """Protocol for the biometric terminal.

    Every operation takes the caller's credentials first and returns the
    canonical result envelope, or None when the vendor SDK produced no
    response (treated as an ambiguous success by the orchestrator).

    Implementations may raise on transport failure; callers map exceptions
    to DeviceCommunicationError or an indeterminate verdict.
    """

    def test_connection(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        ...

    def get_identity(
        self, credentials: Credentials, employee_id: str
    ) -> Optional[DeviceOperationResult]:
        ...

    def query_identity(
        self, credentials: Credentials, employee_id: str
    ) -> Optional[DeviceOperationResult]:
        ...

    def create_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        ...

    def merge_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        ...

    def delete_identity(
        self, credentials: Credentials, employee_id: str
    ) -> Optional[DeviceOperationResult]:
        ...

    def merge_face(
        self, credentials: Credentials, employee_id: str, image_base64: str
    ) -> Optional[DeviceOperationResult]:
        ...

    def delete_face(
        self, credentials: Credentials, employee_id: str
    ) -> Optional[DeviceOperationResult]:
        ...

    def list_identities(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        ...


@runtime_checkable
class BackendNotifier(Protocol):
    """Protocol for fire-and-forget callbacks to the business backend."""

    def notify_success(self, record: EmployeeRecord, detail: str) -> None:
        ...

    def notify_failure(self, identity: EmployeeRecord, error: Exception) -> None:
        ...


@runtime_checkable
class FacePrescanner(Protocol):
    """Protocol for advisory face-presence checks on an encoded image."""

    def prescan(self, image_bytes: bytes) -> FacePrescan:
        ...


@dataclass
class BBox:
    """Bounding box for a detected face.

    Attributes:
        x1: Left edge x-coordinate (pixels)
        y1: Top edge y-coordinate (pixels)
        x2: Right edge x-coordinate (pixels)
        y2: Bottom edge y-coordinate (pixels)
    """

    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def clamp(self, img_width: int, img_height: int) -> BBox:
        """Clamp bounding box coordinates to image boundaries."""
        return BBox(
            x1=max(0, min(self.x1, img_width - 1)),
            y1=max(0, min(self.y1, img_height - 1)),
            x2=max(0, min(self.x2, img_width - 1)),
            y2=max(0, min(self.y2, img_height - 1)),
        )


@dataclass
class Detection:
    """Face detection result with bounding box and confidence."""

    bbox: BBox
    score: float
    kps: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Detection score must be in [0, 1], got {self.score}")


@runtime_checkable
class Detector(Protocol):
    """Protocol for face detection models used by the prescanner."""

    def detect(self, frame_bgr: np.ndarray) -> List[Detection]:
        """Detect faces in a BGR image, shape [H, W, 3]."""
        ...


def image_shape(frame: np.ndarray) -> Tuple[int, int]:
    """Return (height, width) of an image array."""
    return int(frame.shape[0]), int(frame.shape[1])
