"""Shared fixtures for enrollment engine tests."""

from __future__ import annotations

import base64

import cv2
import numpy as np
import pytest

from enrollment_engine.interfaces import Credentials


def encode_image(width: int, height: int, ext: str = ".jpg", seed: int = 0) -> bytes:
    """Encode a noise image; noise keeps encoded sizes predictable."""
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, (height, width, 3), dtype=np.uint8)
    params = [cv2.IMWRITE_JPEG_QUALITY, 95] if ext == ".jpg" else []
    ok, buffer = cv2.imencode(ext, image, params)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def credentials():
    """Valid 16-character device key and secret."""
    return Credentials(device_key="XO5-0123456789AB", secret="s3cret")


@pytest.fixture
def jpeg_bytes():
    """JPEG comfortably inside the default 5 KB - 500 KB bounds."""
    return encode_image(160, 160)


@pytest.fixture
def jpeg_base64(jpeg_bytes):
    return base64.b64encode(jpeg_bytes).decode("ascii")
