"""Integration tests for EnrollmentService over a real device queue."""

from __future__ import annotations

import threading
import time
from unittest.mock import Mock

import pytest

from enrollment_engine.errors import (
    DuplicateError,
    EnrollmentError,
    IdentityNotFoundError,
    QueueClosedError,
    QueueTimeoutError,
    ValidationError,
)
from enrollment_engine.interfaces import Credentials, DeviceOperationResult, EnrollmentRequest
from enrollment_engine.services.device_queue import WorkerThreadError
from enrollment_engine.services.enrollment import EnrollmentService
from enrollment_engine.services.orchestrator import EnrollmentState

OK = DeviceOperationResult("000", "success")
NOT_FOUND = DeviceOperationResult("1001", "person not exist")


class RecordingDevice:
    """Device double that records every call with its thread and time span."""

    OPERATIONS = (
        "test_connection",
        "get_identity",
        "query_identity",
        "create_identity",
        "merge_identity",
        "delete_identity",
        "merge_face",
        "delete_face",
        "list_identities",
    )

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []
        self.results = {name: OK for name in self.OPERATIONS}
        self.results["query_identity"] = NOT_FOUND
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def _call(self, name, *args):
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        start = time.monotonic()
        if self.delay:
            time.sleep(self.delay)
        end = time.monotonic()
        with self._lock:
            self._active -= 1
            self.calls.append((name, threading.current_thread().name, start, end, args))
        result = self.results[name]
        if isinstance(result, Exception):
            raise result
        return result

    def __getattr__(self, name):
        if name in self.OPERATIONS:
            return lambda *args: self._call(name, *args)
        raise AttributeError(name)

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def device():
    return RecordingDevice()


@pytest.fixture
def mock_notifier():
    return Mock()


@pytest.fixture
def service(device, mock_notifier):
    svc = EnrollmentService(device, notifier=mock_notifier, queue_timeout=10.0, sleep=Mock())
    svc.start()
    yield svc
    svc.shutdown(grace_period=2.0)


@pytest.fixture
def make_request(credentials, jpeg_base64):
    def factory(**overrides):
        fields = dict(
            employee_id="E1001",
            display_name="Ada Lovelace",
            credentials=credentials,
            face_image=jpeg_base64,
        )
        fields.update(overrides)
        return EnrollmentRequest(**fields)

    return factory


def test_enroll_success(service, device, make_request):
    result = service.enroll(make_request())

    assert result.ok
    assert result.value.employee_id == "E1001"
    assert device.names() == ["test_connection", "query_identity", "create_identity", "merge_face"]


def test_device_calls_run_on_worker_thread(service, device, make_request):
    service.enroll(make_request())

    threads = {c[1] for c in device.calls}
    assert threads == {"DeviceOperationWorker"}


def test_enroll_outcome_exposes_trace(service, make_request):
    result = service.enroll_outcome(make_request())

    assert result.ok
    assert result.value.state is EnrollmentState.SUCCESS
    assert result.value.trace[-1] is EnrollmentState.SUCCESS


def test_validation_failure_is_never_queued(service, device, make_request):
    result = service.enroll(make_request(credentials=Credentials("short", "s3cret")))

    assert not result.ok
    assert isinstance(result.error, ValidationError)
    assert service.queue_stats().submitted == 0
    assert device.calls == []


def test_duplicate_returns_failure(service, device, make_request):
    device.results["query_identity"] = DeviceOperationResult("000", "ok", {"sn": "E1001"})

    result = service.enroll(make_request())

    assert not result.ok
    assert isinstance(result.error, DuplicateError)
    assert result.error.code == "DUPLICATE_EMPLOYEE"


def test_update_forces_merge(service, device, make_request):
    device.results["query_identity"] = DeviceOperationResult("000", "ok", {"sn": "E1001"})
    request = make_request()

    result = service.update(request)

    assert result.ok
    assert "merge_identity" in device.names()
    assert "create_identity" not in device.names()
    assert request.force_update is False


def test_concurrent_enrollments_never_overlap(credentials, jpeg_base64, mock_notifier):
    """Test device calls from concurrent enrollments are strictly serialized."""
    device = RecordingDevice(delay=0.005)
    service = EnrollmentService(device, notifier=mock_notifier, sleep=Mock())
    service.start()
    try:
        results = {}

        def enroll(i):
            request = EnrollmentRequest(
                employee_id=f"E{i}",
                display_name=f"Person {i}",
                credentials=credentials,
                face_image=jpeg_base64,
            )
            results[i] = service.enroll(request)

        threads = [threading.Thread(target=enroll, args=(i,)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30.0)
    finally:
        service.shutdown(grace_period=5.0)

    assert all(r.ok for r in results.values())
    assert len(results) == 5
    assert device.max_active == 1

    spans = sorted((c[2], c[3]) for c in device.calls)
    for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
        assert next_start >= prev_end

    assert device.names().count("merge_face") == 5


def test_queue_timeout_is_returned_as_failure(credentials, make_request):
    device = RecordingDevice()
    release = threading.Event()
    device.test_connection = lambda *args: release.wait(timeout=5.0) and OK
    service = EnrollmentService(device, sleep=Mock())
    service.start()
    try:
        result = service.enroll(make_request(), timeout=0.05)

        assert not result.ok
        assert isinstance(result.error, QueueTimeoutError)
        assert service.queue_stats().timed_out == 1
    finally:
        release.set()
        service.shutdown(grace_period=5.0)


def test_delete(service, device, credentials):
    result = service.delete("E1001", credentials)

    assert result.ok
    assert result.value is None
    assert device.names() == ["test_connection", "delete_face", "delete_identity"]


def test_delete_missing_identity(service, device, credentials):
    device.results["delete_identity"] = DeviceOperationResult("404", "not found")

    result = service.delete("E1001", credentials)

    assert isinstance(result.error, IdentityNotFoundError)
    assert result.error.code == "NOT_FOUND"


def test_delete_validates_input(service, device, credentials):
    assert isinstance(service.delete(" ", credentials).error, ValidationError)
    assert device.calls == []


def test_get_and_list(service, device, credentials):
    device.results["get_identity"] = DeviceOperationResult("000", "ok", {"sn": "E1001", "name": "Ada"})
    device.results["list_identities"] = DeviceOperationResult(
        "000", "ok", {"personList": [{"sn": "E1001"}, {"sn": "E1002"}]}
    )

    record = service.get("E1001", credentials)
    listing = service.list(credentials)

    assert record.value.display_name == "Ada"
    assert [r.employee_id for r in listing.value] == ["E1001", "E1002"]


def test_test_connection(service, device, credentials):
    assert service.test_connection(credentials).value is True

    device.results["test_connection"] = DeviceOperationResult("401", "bad secret")
    assert service.test_connection(credentials).value is False


def test_direct_device_access_is_rejected(service, credentials):
    with pytest.raises(WorkerThreadError):
        service.device.test_connection(credentials)


@pytest.mark.parametrize("operation", ["list_identities", "delete_identity"])
def test_unsupported_device_capability_is_returned_as_failure(
    service, device, credentials, operation
):
    """Test NotImplementedError from the device comes back as a Result, not a raise."""
    device.results[operation] = NotImplementedError(f"{operation} unsupported")

    if operation == "list_identities":
        result = service.list(credentials)
    else:
        result = service.delete("E1001", credentials)

    assert not result.ok
    assert isinstance(result.error, EnrollmentError)
    assert isinstance(result.error.__cause__, NotImplementedError)


def test_get_with_unsupported_listing_is_returned_as_failure(service, device, credentials):
    device.results["get_identity"] = DeviceOperationResult("1001", "person not exist")
    device.results["list_identities"] = NotImplementedError("listing unsupported")

    result = service.get("E1001", credentials)

    assert not result.ok
    assert isinstance(result.error.__cause__, NotImplementedError)


def test_nested_submission_from_worker_still_raises(service, credentials):
    with pytest.raises(WorkerThreadError):
        service.queue.submit(lambda: service.list(credentials))


def test_padded_ids_are_trimmed(service, device, credentials):
    assert service.delete("  E1001 ", credentials).ok

    deleted = [c[4] for c in device.calls if c[0] == "delete_identity"]
    assert deleted == [(credentials, "E1001")]


def test_closed_service_rejects_work(device, make_request):
    with EnrollmentService(device, sleep=Mock()) as service:
        assert service.enroll(make_request()).ok

    result = service.enroll(make_request())

    assert isinstance(result.error, QueueClosedError)


def test_shutdown_stops_notifier(device):
    notifier = Mock()
    service = EnrollmentService(device, notifier=notifier)
    service.start()

    report = service.shutdown(grace_period=1.0)

    assert report.clean
    notifier.stop.assert_called_once()


def test_notifier_receives_success(service, mock_notifier, make_request):
    service.enroll(make_request())

    mock_notifier.notify_success.assert_called_once()
    record, detail = mock_notifier.notify_success.call_args.args
    assert record.employee_id == "E1001"
    assert "created" in detail
