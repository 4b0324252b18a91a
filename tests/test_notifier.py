"""Unit tests for backend notifiers."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
import requests

from enrollment_engine.backends.notifier import HttpBackendNotifier, NullNotifier
from enrollment_engine.errors import DuplicateError
from enrollment_engine.interfaces import BackendNotifier, EmployeeRecord


@pytest.fixture
def mock_session():
    return Mock()


@pytest.fixture
def record():
    return EmployeeRecord(employee_id="E1", display_name="Ada", has_biometric=True, verification_style=3)


@pytest.fixture
def notifier(mock_session):
    return HttpBackendNotifier(
        "http://backend:5000/", auth_key="svc-key", async_mode=False, session=mock_session
    )


def test_satisfies_protocol(notifier):
    assert isinstance(notifier, BackendNotifier)
    assert isinstance(NullNotifier(), BackendNotifier)


def test_success_payload(notifier, mock_session, record):
    notifier.notify_success(record, "Employee created on device")

    url = mock_session.post.call_args.args[0]
    kwargs = mock_session.post.call_args.kwargs
    assert url == "http://backend:5000/api/employees/device-sync-success"
    assert kwargs["json"]["employeeData"]["employeeId"] == "E1"
    assert kwargs["json"]["deviceSyncResult"] == "Employee created on device"
    assert kwargs["json"]["source"] == "DEVICE_BRIDGE"
    assert isinstance(kwargs["json"]["timestamp"], int)
    assert kwargs["headers"]["X-Service-Auth"] == "svc-key"


def test_failure_payload(notifier, mock_session, record):
    notifier.notify_failure(record, DuplicateError("already enrolled"))

    url = mock_session.post.call_args.args[0]
    payload = mock_session.post.call_args.kwargs["json"]
    assert url.endswith("/api/employees/device-sync-failure")
    assert payload["error"] == "already enrolled"
    assert payload["errorCode"] == "DUPLICATE_EMPLOYEE"


def test_no_auth_header_without_key(mock_session, record):
    notifier = HttpBackendNotifier("http://backend:5000", async_mode=False, session=mock_session)

    notifier.notify_success(record, "ok")

    assert "X-Service-Auth" not in mock_session.post.call_args.kwargs["headers"]


def test_delivery_failures_are_swallowed(notifier, mock_session, record):
    mock_session.post.side_effect = requests.ConnectionError("backend down")

    notifier.notify_success(record, "ok")


def test_http_errors_are_swallowed(notifier, mock_session, record):
    response = Mock()
    response.raise_for_status.side_effect = requests.HTTPError("503")
    mock_session.post.return_value = response

    notifier.notify_failure(record, RuntimeError("x"))


def test_async_mode_flushes_on_stop(mock_session, record):
    notifier = HttpBackendNotifier("http://backend:5000", session=mock_session)

    notifier.notify_success(record, "ok")
    notifier.notify_failure(record, RuntimeError("x"))
    notifier.stop()

    assert mock_session.post.call_count == 2
    assert notifier.pending() == 0


def test_async_worker_survives_unexpected_errors(mock_session, record):
    """Test a non-transport error on one send does not stop later sends."""
    mock_session.post.side_effect = [ValueError("bad payload"), Mock()]
    notifier = HttpBackendNotifier("http://backend:5000", session=mock_session)

    notifier.notify_success(record, "first")
    notifier.notify_success(record, "second")
    notifier.stop()

    assert mock_session.post.call_count == 2
    assert notifier.pending() == 0


def test_null_notifier_does_nothing(record):
    notifier = NullNotifier()

    notifier.notify_success(record, "ok")
    notifier.notify_failure(record, RuntimeError("x"))
