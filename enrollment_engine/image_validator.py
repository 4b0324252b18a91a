"""Face image validation and normalization.

This module turns caller-supplied face image payloads (base64 text, data
URLs or raw bytes) into an ImageAsset the device will accept: the base64
text is cleaned, the container format is checked from magic bytes, the
decoded size is bounded, and an advisory face prescan is attached.

It also provides the re-encoding pass applied between face-merge retries
when the device rejects an image.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Optional, Union

import cv2
import numpy as np

from enrollment_engine.errors import (
    ImageFormatError,
    ImageSizeError,
    UnsupportedFormatError,
    ValidationError,
)
from enrollment_engine.interfaces import FacePrescan, FacePrescanner, ImageAsset, ImageFormat
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_BYTES = 5_000
DEFAULT_MAX_BYTES = 500_000
REENCODE_MAX_SIDE = 640

_WHITESPACE = re.compile(r"\s+")

# Magic-byte signatures, checked in order
_SIGNATURES = (
    (ImageFormat.JPEG, b"\xff\xd8\xff"),
    (ImageFormat.PNG, b"\x89PNG"),
    (ImageFormat.GIF, b"GIF"),
    (ImageFormat.BMP, b"BM"),
)


def normalize(raw: Union[str, bytes, bytearray]) -> str:
    """Normalize a base64 image payload.

    Strips a data-URL prefix up to the first comma, removes whitespace and
    pads to a multiple of 4. The operation is idempotent.

    Args:
        raw: Base64 text, optionally prefixed ("data:image/jpeg;base64,...")

    Returns:
        Clean, padded base64 text.

    Raises:
        ImageFormatError: If the result is empty or not valid base64.

    Example:
        >>> normalize("data:image/jpeg;base64,/9j/4A AQ")
        '/9j/4AAQ'
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("ascii")
        except UnicodeDecodeError as e:
            raise ImageFormatError(f"Image payload is not base64 text: {e}") from e

    text = raw.strip()
    if "," in text:
        text = text[text.index(",") + 1 :]

    text = _WHITESPACE.sub("", text)

    remainder = len(text) % 4
    if remainder:
        text += "=" * (4 - remainder)

    if not text:
        raise ImageFormatError("Image payload is empty")

    try:
        base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageFormatError(f"Invalid base64 image data: {e}") from e

    return text


def decode(normalized: str) -> bytes:
    """Decode normalized base64 text into image bytes."""
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageFormatError(f"Invalid base64 image data: {e}") from e


def sniff_format(data: bytes) -> ImageFormat:
    """Detect the image format from magic bytes without raising."""
    for fmt, signature in _SIGNATURES:
        if data.startswith(signature):
            return fmt
    return ImageFormat.UNKNOWN


def classify_format(data: bytes) -> ImageFormat:
    """Classify decoded image bytes by magic number.

    Args:
        data: Decoded image bytes

    Returns:
        Detected ImageFormat (never UNKNOWN).

    Raises:
        UnsupportedFormatError: If the bytes match no known signature.
    """
    fmt = sniff_format(data)
    if fmt is ImageFormat.UNKNOWN:
        raise UnsupportedFormatError(
            "Unsupported image format. Use JPEG for best device compatibility."
        )

    if fmt is not ImageFormat.JPEG:
        logger.warning(f"{fmt.value} image detected; terminals work best with JPEG")

    return fmt


def enforce_bounds(data: bytes, min_bytes: int, max_bytes: int) -> None:
    """Check decoded image size against device bounds.

    Raises:
        ImageSizeError: If len(data) is outside [min_bytes, max_bytes].
    """
    size = len(data)
    if size < min_bytes:
        raise ImageSizeError(
            f"Image too small for face recognition: {size} bytes (minimum {min_bytes})"
        )
    if size > max_bytes:
        raise ImageSizeError(f"Image too large for device: {size} bytes (maximum {max_bytes})")


def prescan_face(data: bytes, prescanner: Optional[FacePrescanner]) -> Optional[FacePrescan]:
    """Run the advisory face prescan.

    A failed or negative prescan never blocks enrollment; the device runs
    its own authoritative face check.
    """
    if prescanner is None:
        return None

    try:
        result = prescanner.prescan(data)
    except Exception as e:
        logger.warning(f"Face prescan failed (advisory only): {e}")
        return None

    if result.count == 0:
        logger.warning("Face prescan found no face (advisory only, continuing)")
    elif result.count > 1:
        logger.warning(f"Face prescan found {result.count} faces (advisory only, continuing)")
    else:
        logger.debug(f"Face prescan: count={result.count}, ratio={result.ratio:.3f}")

    return result


def _fit_within(image: np.ndarray, max_side: int) -> np.ndarray:
    """Downscale so the longer side is at most max_side, keeping aspect ratio."""
    h, w = image.shape[:2]
    longest = max(h, w)
    if longest <= max_side:
        return image

    scale = max_side / float(longest)
    new_size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)


def reencode(data: bytes, attempt: int, max_side: int = REENCODE_MAX_SIDE) -> bytes:
    """Re-encode an image after the device rejected it.

    The image is decoded, downscaled so its longer side fits max_side and
    written back as JPEG. Quality drops with each attempt.

    Args:
        data: Image bytes the device rejected
        attempt: 1-based number of the attempt that was rejected
        max_side: Longest side allowed after re-encoding (pixels)

    Returns:
        Re-encoded JPEG bytes, or the original bytes if they cannot be decoded.
    """
    quality = max(90 - 15 * attempt, 50)

    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        logger.warning("Could not decode rejected image for re-encoding; resending as-is")
        return data

    image = _fit_within(image, max_side)
    ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        logger.warning("JPEG re-encoding failed; resending original image")
        return data

    encoded = buffer.tobytes()
    logger.info(
        f"Re-encoded rejected image (attempt {attempt}): {len(data)} -> {len(encoded)} bytes, "
        f"quality={quality}, size={image.shape[1]}x{image.shape[0]}"
    )
    return encoded


class ImageValidator:
    """Prepares face images for transmission to the terminal.

    Attributes:
        min_bytes: Smallest decoded image accepted
        max_bytes: Largest decoded image accepted
        prescanner: Optional advisory face prescanner

    Example:
        >>> validator = ImageValidator(prescanner=create_prescanner(config))
        >>> asset = validator.prepare(request.face_image)
        >>> asset.detected_format
        <ImageFormat.JPEG: 'JPEG'>
    """

    def __init__(
        self,
        min_bytes: int = DEFAULT_MIN_BYTES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        prescanner: Optional[FacePrescanner] = None,
    ):
        if min_bytes < 0 or max_bytes < min_bytes:
            raise ValueError(f"Invalid image bounds: [{min_bytes}, {max_bytes}]")

        self.min_bytes = min_bytes
        self.max_bytes = max_bytes
        self.prescanner = prescanner

    def to_bytes(self, raw: Union[str, bytes, bytearray]) -> bytes:
        """Decode a payload to image bytes.

        Raw image bytes (recognized by magic number) pass through; anything
        else is treated as base64 text.
        """
        if raw is None:
            raise ValidationError("Face image is required")

        if isinstance(raw, (bytes, bytearray)) and sniff_format(bytes(raw)) is not ImageFormat.UNKNOWN:
            return bytes(raw)

        return decode(normalize(raw))

    def prepare(self, raw: Union[str, bytes, bytearray]) -> ImageAsset:
        """Normalize, classify, bound and prescan a face image.

        Args:
            raw: Base64 text, data URL or raw image bytes

        Returns:
            ImageAsset ready for face merge.

        Raises:
            ImageFormatError: Invalid base64
            UnsupportedFormatError: Unknown image container
            ImageSizeError: Outside device size bounds
        """
        data = self.to_bytes(raw)
        fmt = classify_format(data)
        enforce_bounds(data, self.min_bytes, self.max_bytes)
        prescan = prescan_face(data, self.prescanner)

        asset = ImageAsset(
            raw_bytes=data,
            detected_format=fmt,
            size_bytes=len(data),
            face_prescan=prescan,
        )
        logger.debug(f"Prepared face image: {asset}")
        return asset

    def renormalize(self, asset: ImageAsset, attempt: int) -> ImageAsset:
        """Produce the asset to send after the device rejected ``asset``."""
        data = reencode(asset.raw_bytes, attempt)
        if data is asset.raw_bytes:
            return asset
        return ImageAsset(
            raw_bytes=data,
            detected_format=sniff_format(data),
            size_bytes=len(data),
            face_prescan=asset.face_prescan,
        )

    def __repr__(self) -> str:
        return (
            f"ImageValidator(bounds=[{self.min_bytes}, {self.max_bytes}], "
            f"prescanner={type(self.prescanner).__name__ if self.prescanner else None})"
        )
