"""Unit tests for configuration loading."""

from __future__ import annotations

import pytest

from enrollment_engine.config import Config


def test_defaults(monkeypatch):
    for name in (
        "LOG_LEVEL",
        "QUEUE_TIMEOUT",
        "QUEUE_MAX_SIZE",
        "RETRY_MAX_ATTEMPTS",
        "IMAGE_MIN_BYTES",
        "IMAGE_MAX_BYTES",
        "PRESCAN_BACKEND",
        "BACKEND_ENABLED",
        "TREAT_NULL_AS_SUCCESS",
    ):
        monkeypatch.delenv(name, raising=False)

    config = Config.from_env()

    assert config.queue_timeout == 900
    assert config.queue_max_size == 150
    assert config.retry_max_attempts == 5
    assert config.image_min_bytes == 5000
    assert config.image_max_bytes == 500000
    assert config.prescan_backend == "haar"
    assert config.backend_enabled is False
    assert config.treat_null_as_success is True


def test_overrides(monkeypatch):
    monkeypatch.setenv("QUEUE_TIMEOUT", "60")
    monkeypatch.setenv("BACKEND_ENABLED", "true")
    monkeypatch.setenv("TREAT_NULL_AS_SUCCESS", "0")
    monkeypatch.setenv("DEVICE_GATEWAY_URL", "http://gw:9000/")

    config = Config.from_env()

    assert config.queue_timeout == 60
    assert config.backend_enabled is True
    assert config.treat_null_as_success is False
    assert config.device_gateway_url == "http://gw:9000"


@pytest.mark.parametrize(
    "name, value",
    [
        ("LOG_LEVEL", "LOUD"),
        ("QUEUE_TIMEOUT", "0"),
        ("QUEUE_MAX_SIZE", "0"),
        ("RETRY_MAX_ATTEMPTS", "0"),
        ("RETRY_BASE_DELAY", "20"),
        ("IMAGE_MIN_BYTES", "900000"),
        ("PRESCAN_BACKEND", "mtcnn"),
        ("MODEL_PACK", "antelope"),
    ],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        Config.from_env()
