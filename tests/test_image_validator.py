"""Unit tests for face image validation."""

from __future__ import annotations

import base64
from unittest.mock import Mock

import cv2
import numpy as np
import pytest

from conftest import encode_image
from enrollment_engine.errors import (
    ImageError,
    ImageFormatError,
    ImageSizeError,
    UnsupportedFormatError,
    ValidationError,
)
from enrollment_engine.image_validator import (
    ImageValidator,
    classify_format,
    enforce_bounds,
    normalize,
    reencode,
)
from enrollment_engine.interfaces import FacePrescan, ImageFormat


@pytest.fixture
def validator():
    return ImageValidator()


def test_normalize_strips_data_url_and_whitespace():
    """Test data-URL prefix and embedded whitespace are removed."""
    assert normalize("data:image/jpeg;base64,/9j/ 4A\nAQ") == "/9j/4AAQ"


def test_normalize_pads_to_multiple_of_four():
    """Test missing padding is restored."""
    text = base64.b64encode(b"ab").decode("ascii").rstrip("=")

    result = normalize(text)

    assert len(result) % 4 == 0
    assert base64.b64decode(result) == b"ab"


def test_normalize_is_idempotent(jpeg_base64):
    """Test normalizing twice equals normalizing once."""
    once = normalize("data:image/jpeg;base64," + jpeg_base64)

    assert normalize(once) == once


def test_normalize_rejects_invalid_base64():
    with pytest.raises(ImageFormatError):
        normalize("not*valid*base64")


def test_normalize_rejects_empty_payload():
    with pytest.raises(ImageFormatError):
        normalize("data:image/jpeg;base64,")


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"\xff\xd8\xff\xe0rest", ImageFormat.JPEG),
        (b"\x89PNG\r\n\x1a\n", ImageFormat.PNG),
        (b"GIF89a", ImageFormat.GIF),
        (b"BM\x00\x00", ImageFormat.BMP),
    ],
)
def test_classify_format_by_magic_bytes(data, expected):
    assert classify_format(data) is expected


def test_classify_format_rejects_unknown():
    with pytest.raises(UnsupportedFormatError):
        classify_format(b"RIFF....WEBP")


def test_enforce_bounds_is_inclusive():
    """Test sizes exactly at the bounds are accepted."""
    enforce_bounds(b"x" * 10, 10, 20)
    enforce_bounds(b"x" * 20, 10, 20)


def test_enforce_bounds_rejects_outside():
    with pytest.raises(ImageSizeError):
        enforce_bounds(b"x" * 9, 10, 20)
    with pytest.raises(ImageSizeError):
        enforce_bounds(b"x" * 21, 10, 20)


def test_image_errors_are_validation_errors():
    assert issubclass(ImageError, ValidationError)
    assert issubclass(ImageSizeError, ImageError)


def test_prepare_base64(validator, jpeg_bytes, jpeg_base64):
    """Test a base64 JPEG becomes an ImageAsset."""
    asset = validator.prepare(jpeg_base64)

    assert asset.raw_bytes == jpeg_bytes
    assert asset.detected_format is ImageFormat.JPEG
    assert asset.size_bytes == len(jpeg_bytes)
    assert asset.face_prescan is None
    assert asset.base64 == jpeg_base64


def test_prepare_data_url(validator, jpeg_bytes, jpeg_base64):
    asset = validator.prepare("data:image/jpeg;base64," + jpeg_base64)

    assert asset.raw_bytes == jpeg_bytes


def test_prepare_bytearray_base64(validator, jpeg_bytes, jpeg_base64):
    """Test base64 text held in a bytearray is decoded like a str."""
    asset = validator.prepare(bytearray(jpeg_base64.encode("ascii")))

    assert asset.raw_bytes == jpeg_bytes
    assert asset.detected_format is ImageFormat.JPEG


def test_normalize_rejects_non_ascii_bytearray():
    with pytest.raises(ImageFormatError):
        normalize(bytearray(b"\xff\xfe\x00not-base64"))


def test_prepare_raw_bytes(validator, jpeg_bytes):
    """Test raw image bytes pass through without base64 decoding."""
    asset = validator.prepare(jpeg_bytes)

    assert asset.raw_bytes == jpeg_bytes


def test_prepare_accepts_png(validator):
    """Test non-JPEG formats are accepted (with a warning)."""
    png = encode_image(100, 100, ext=".png")

    asset = validator.prepare(png)

    assert asset.detected_format is ImageFormat.PNG


def test_prepare_rejects_small_image(validator):
    tiny = encode_image(8, 8)
    assert len(tiny) < 5000

    with pytest.raises(ImageSizeError):
        validator.prepare(base64.b64encode(tiny).decode("ascii"))


def test_prepare_rejects_missing_image(validator):
    with pytest.raises(ValidationError):
        validator.prepare(None)


def test_prepare_rejects_unknown_format(validator):
    payload = base64.b64encode(b"\x00" * 6000).decode("ascii")

    with pytest.raises(UnsupportedFormatError):
        validator.prepare(payload)


def test_prescan_result_attached(jpeg_bytes):
    prescanner = Mock()
    prescanner.prescan.return_value = FacePrescan(count=1, ratio=0.3)

    asset = ImageValidator(prescanner=prescanner).prepare(jpeg_bytes)

    assert asset.face_prescan == FacePrescan(count=1, ratio=0.3)
    prescanner.prescan.assert_called_once_with(jpeg_bytes)


def test_prescan_without_face_does_not_block(jpeg_bytes):
    prescanner = Mock()
    prescanner.prescan.return_value = FacePrescan(count=0, ratio=0.0)

    asset = ImageValidator(prescanner=prescanner).prepare(jpeg_bytes)

    assert asset.face_prescan.count == 0


def test_prescan_failure_is_advisory(jpeg_bytes):
    """Test a crashing prescanner never blocks preparation."""
    prescanner = Mock()
    prescanner.prescan.side_effect = RuntimeError("model missing")

    asset = ImageValidator(prescanner=prescanner).prepare(jpeg_bytes)

    assert asset.face_prescan is None


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        ImageValidator(min_bytes=100, max_bytes=10)


def test_reencode_downscales_and_outputs_jpeg():
    """Test re-encoding fits the longer side into 640 px."""
    large = encode_image(1280, 960, ext=".png")

    result = reencode(large, attempt=1)

    assert result.startswith(b"\xff\xd8\xff")
    image = cv2.imdecode(np.frombuffer(result, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert image.shape[:2] == (480, 640)


def test_reencode_lowers_quality_with_attempts(jpeg_bytes):
    first = reencode(jpeg_bytes, attempt=1)
    third = reencode(jpeg_bytes, attempt=3)

    assert len(third) < len(first)


def test_reencode_returns_undecodable_bytes_unchanged():
    data = b"\xff\xd8\xff" + b"\x00" * 100

    assert reencode(data, attempt=1) is data


def test_renormalize_produces_jpeg_asset(validator):
    asset = validator.prepare(encode_image(100, 100, ext=".png"))

    renormalized = validator.renormalize(asset, attempt=1)

    assert renormalized.detected_format is ImageFormat.JPEG
    assert renormalized.size_bytes == len(renormalized.raw_bytes)
