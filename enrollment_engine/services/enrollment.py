"""Public enrollment service.

This module provides the caller-facing surface of the engine. Each call
validates its input on the caller thread, submits the device work to the
single-worker DeviceOperationQueue and returns a Result instead of raising
for domain errors.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Callable, List, Optional, TypeVar

from enrollment_engine.errors import EnrollmentError, ValidationError
from enrollment_engine.image_validator import ImageValidator
from enrollment_engine.interfaces import (
    BackendNotifier,
    Credentials,
    DeviceClient,
    EmployeeRecord,
    EnrollmentRequest,
)
from enrollment_engine.logging_config import get_logger
from enrollment_engine.result import Result
from enrollment_engine.services.device_queue import (
    DeviceOperationQueue,
    GuardedDeviceClient,
    QueueStats,
    ShutdownReport,
    WorkerThreadError,
)
from enrollment_engine.services.orchestrator import (
    EnrollmentOrchestrator,
    EnrollmentOutcome,
    validate_credentials,
    validate_employee_id,
)

logger = get_logger(__name__)

T = TypeVar("T")


class EnrollmentService:
    """Enrolls, updates, deletes and looks up identities on the terminal.

    All device work is serialized through one DeviceOperationQueue; the
    device client is wrapped so that nothing else can reach the terminal.

    Attributes:
        queue: Device operation queue owning the worker thread
        device: Guarded device client (callable only from the worker)
        orchestrator: Saga runner used by the worker
        shutdown_grace: Default drain period for shutdown()

    Example:
        >>> with EnrollmentService(device=GatewayDeviceClient(url)) as service:
        ...     result = service.enroll(request)
        ...     if result.ok:
        ...         print(result.value.employee_id)
        ...     else:
        ...         print(result.error.code, result.error.message)
    """

    def __init__(
        self,
        device: DeviceClient,
        notifier: Optional[BackendNotifier] = None,
        validator: Optional[ImageValidator] = None,
        queue_timeout: float = 900.0,
        queue_max_size: int = 150,
        shutdown_grace: float = 30.0,
        retry_max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        treat_null_as_success: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize enrollment service.

        Args:
            device: Raw device client; it is wrapped in a GuardedDeviceClient
            notifier: Backend notifier for resolved enrollments
            validator: Face image validator (defaults to ImageValidator())
            queue_timeout: Seconds a caller waits for its device task
            queue_max_size: Pending tasks accepted before QueueFullError
            shutdown_grace: Default drain period used by shutdown()
            retry_max_attempts: Face-merge attempts
            retry_base_delay: First backoff delay (seconds)
            retry_max_delay: Backoff cap (seconds)
            treat_null_as_success: Accept missing device responses as success
            sleep: Sleep function for retry backoff (injected by tests)
        """
        self.queue = DeviceOperationQueue(
            default_timeout=queue_timeout, max_queue_size=queue_max_size
        )
        self.device = GuardedDeviceClient(device, self.queue)
        self.notifier = notifier
        self.shutdown_grace = shutdown_grace
        self.orchestrator = EnrollmentOrchestrator(
            self.device,
            notifier=notifier,
            validator=validator,
            retry_max_attempts=retry_max_attempts,
            retry_base_delay=retry_base_delay,
            retry_max_delay=retry_max_delay,
            treat_null_as_success=treat_null_as_success,
            sleep=sleep,
        )

        logger.info(
            f"Initialized EnrollmentService: queue_timeout={queue_timeout}s, "
            f"max_queue_size={queue_max_size}, retry_max_attempts={retry_max_attempts}"
        )

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        self.queue.start()

    def shutdown(self, grace_period: Optional[float] = None) -> ShutdownReport:
        """Drain the device queue and stop the notifier."""
        grace = self.shutdown_grace if grace_period is None else grace_period
        report = self.queue.shutdown(grace_period=grace)

        stop = getattr(self.notifier, "stop", None)
        if callable(stop):
            stop()
        return report

    def __enter__(self) -> EnrollmentService:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ submission

    def _submit(
        self, label: str, operation: Callable[[], T], timeout: Optional[float]
    ) -> Result[T, EnrollmentError]:
        try:
            return Result.success(self.queue.submit(operation, timeout=timeout, label=label))
        except EnrollmentError as e:
            logger.warning(f"{label} failed: [{e.code}] {e.message}")
            return Result.failure(e)
        except WorkerThreadError:
            raise
        except Exception as e:
            logger.warning(f"{label} failed: {type(e).__name__}: {e}")
            error = EnrollmentError(f"Unexpected error in {label}: {e}")
            error.__cause__ = e
            return Result.failure(error)

    # ------------------------------------------------------------------ operations

    def enroll_outcome(
        self, request: EnrollmentRequest, timeout: Optional[float] = None
    ) -> Result[EnrollmentOutcome, EnrollmentError]:
        """Enroll and return the full saga outcome (trace, attempts, flags).

        Validation errors come back as failures before anything is queued.
        Queue errors (timeout, full, closed) also come back as failures.
        """
        try:
            prepared = self.orchestrator.prepare(request)
        except ValidationError as e:
            logger.warning(f"Enrollment of '{request.employee_id}' rejected: {e}")
            return Result.failure(e)

        position = self.queue.next_position()
        if position > 1:
            logger.info(
                f"Enrollment of '{request.employee_id}' queued at position {position} "
                f"(~{self.queue.estimate_wait(position):.0f}s wait)"
            )

        return self._submit(
            f"enroll '{request.employee_id}'",
            lambda: self.orchestrator.execute(prepared),
            timeout,
        )

    def enroll(
        self, request: EnrollmentRequest, timeout: Optional[float] = None
    ) -> Result[EmployeeRecord, EnrollmentError]:
        """Enroll one identity.

        Returns:
            Result carrying the device's EmployeeRecord on SUCCESS, or the
            error that ended the saga.
        """
        submitted = self.enroll_outcome(request, timeout=timeout)
        if not submitted.ok:
            return Result.failure(submitted.error)

        outcome = submitted.value
        if outcome.succeeded:
            return Result.success(outcome.record)
        return Result.failure(outcome.error)

    def update(
        self, request: EnrollmentRequest, timeout: Optional[float] = None
    ) -> Result[EmployeeRecord, EnrollmentError]:
        """Enroll with force_update set; an existing identity is merged."""
        return self.enroll(dataclasses.replace(request, force_update=True), timeout=timeout)

    def delete(
        self, employee_id: str, credentials: Credentials, timeout: Optional[float] = None
    ) -> Result[None, EnrollmentError]:
        """Delete an identity (and its face) from the device."""
        try:
            employee_id = validate_employee_id(employee_id)
            validate_credentials(credentials)
        except ValidationError as e:
            return Result.failure(e)

        return self._submit(
            f"delete '{employee_id}'",
            lambda: self.orchestrator.delete(employee_id, credentials),
            timeout,
        )

    def get(
        self, employee_id: str, credentials: Credentials, timeout: Optional[float] = None
    ) -> Result[Optional[EmployeeRecord], EnrollmentError]:
        """Look up one identity; the value is None when the device has no such id."""
        try:
            employee_id = validate_employee_id(employee_id)
            validate_credentials(credentials)
        except ValidationError as e:
            return Result.failure(e)

        return self._submit(
            f"get '{employee_id}'",
            lambda: self.orchestrator.get(employee_id, credentials),
            timeout,
        )

    def list(
        self, credentials: Credentials, timeout: Optional[float] = None
    ) -> Result[List[EmployeeRecord], EnrollmentError]:
        """List every identity on the device."""
        try:
            validate_credentials(credentials)
        except ValidationError as e:
            return Result.failure(e)

        return self._submit(
            "list identities", lambda: self.orchestrator.list_identities(credentials), timeout
        )

    def test_connection(
        self, credentials: Credentials, timeout: Optional[float] = None
    ) -> Result[bool, EnrollmentError]:
        """Check that the device answers with these credentials."""
        try:
            validate_credentials(credentials)
        except ValidationError as e:
            return Result.failure(e)

        return self._submit(
            "test connection", lambda: self.orchestrator.test_connection(credentials), timeout
        )

    # ------------------------------------------------------------------ reporting

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def __repr__(self) -> str:
        return f"EnrollmentService(queue={self.queue!r})"
