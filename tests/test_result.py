"""Unit tests for Result, error codes and credential masking."""

from __future__ import annotations

import pytest

from enrollment_engine.errors import (
    DeviceOperationError,
    DuplicateError,
    IdentityNotFoundError,
    QueueTimeoutError,
)
from enrollment_engine.interfaces import Credentials, EnrollmentRequest
from enrollment_engine.logging_config import mask_key
from enrollment_engine.result import Result


def test_success():
    result = Result.success(42)

    assert result.ok
    assert result.unwrap() == 42
    assert result.map(lambda v: v + 1).value == 43


def test_empty_success():
    result = Result.success()

    assert result.ok
    assert result.value is None


def test_failure():
    error = DuplicateError("exists")
    result = Result.failure(error)

    assert not result.ok
    assert result.map(lambda v: v + 1).error is error
    with pytest.raises(DuplicateError):
        result.unwrap()


def test_failure_requires_error():
    with pytest.raises(ValueError):
        Result.failure(None)


def test_cannot_carry_both():
    with pytest.raises(ValueError):
        Result(value=1, error=DuplicateError("x"))


def test_error_codes():
    assert DuplicateError("x").code == "DUPLICATE_EMPLOYEE"
    assert IdentityNotFoundError("x").code == "NOT_FOUND"
    assert issubclass(IdentityNotFoundError, DeviceOperationError)
    assert isinstance(QueueTimeoutError("x"), TimeoutError)


def test_device_error_passes_device_fields_through():
    error = DeviceOperationError("failed", device_code="1500", device_message="bad face", operation="merge_face")

    assert error.device_code == "1500"
    assert error.device_message == "bad face"
    assert error.message == "failed"


def test_mask_key():
    assert mask_key("XO5-0123456789AB") == "************89AB"
    assert mask_key("abc") == "***"
    assert mask_key(None) == "<none>"


def test_credentials_repr_hides_secret():
    text = repr(Credentials(device_key="XO5-0123456789AB", secret="s3cret"))

    assert "s3cret" not in text
    assert "XO5-0123" not in text


def test_indeterminate_permission_defaults_to_force_update(credentials):
    request = EnrollmentRequest("E1", "Ada", credentials)
    assert request.proceed_if_indeterminate is False

    request.force_update = True
    assert request.proceed_if_indeterminate is True

    request.allow_indeterminate = False
    assert request.proceed_if_indeterminate is False
