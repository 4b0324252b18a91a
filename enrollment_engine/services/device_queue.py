"""Single-worker serializer for device operations.

The terminal supports exactly one session at a time, so every device call
runs on one dedicated worker thread. Callers submit a closure and block on
a per-task future until the result arrives or their deadline passes.

Guarantees:
- Tasks run strictly in submission order (FIFO), one at a time.
- A caller timing out stops waiting but never interrupts the running task.
- Tasks whose deadline passed before they started are discarded unexecuted.
- Shutdown drains pending tasks for a grace period, then fails the rest;
  the in-flight task always delivers its result to its future.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional, TypeVar

from enrollment_engine.errors import (
    EnrollmentError,
    QueueClosedError,
    QueueFullError,
    QueueTimeoutError,
)
from enrollment_engine.interfaces import (
    Credentials,
    DeviceClient,
    DeviceOperationResult,
    IdentityPayload,
)
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TASK_TIMEOUT = 15 * 60.0
DEFAULT_MAX_QUEUE_SIZE = 150
INITIAL_PROCESSING_ESTIMATE = 45.0
PROCESSING_WINDOW = 10


class WorkerThreadError(RuntimeError):
    """Device access attempted from the wrong thread."""


@dataclass
class QueuedTask:
    """One device operation waiting for (or running on) the worker."""

    task_id: int
    operation: Callable[[], Any]
    enqueued_at: float
    deadline: float
    future: Future = field(default_factory=Future)
    label: str = "device-task"

    def expired(self, now: float) -> bool:
        return now >= self.deadline


@dataclass(frozen=True)
class QueueStats:
    """Snapshot of queue counters and load."""

    submitted: int
    processed: int
    failed: int
    timed_out: int
    expired: int
    rejected: int
    abandoned: int
    pending: int
    processing: bool
    average_processing_seconds: float
    status: str


@dataclass(frozen=True)
class ShutdownReport:
    """What happened to queued work during shutdown."""

    queued_at_shutdown: int
    processed: int
    failed: int
    abandoned: int
    in_flight: Optional[str]
    clean: bool


class DeviceOperationQueue:
    """FIFO single-worker queue owning all device access.

    Attributes:
        default_timeout: Seconds a caller waits when submit() gets no timeout
        max_queue_size: Pending tasks accepted before QueueFullError

    Example:
        >>> queue = DeviceOperationQueue(default_timeout=900)
        >>> queue.start()
        >>> outcome = queue.submit(lambda: orchestrator.execute(prepared), label="enroll E1")
        >>> report = queue.shutdown(grace_period=30)
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_TASK_TIMEOUT,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_timeout <= 0:
            raise ValueError(f"default_timeout must be > 0, got {default_timeout}")
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")

        self.default_timeout = default_timeout
        self.max_queue_size = max_queue_size
        self._clock = clock

        self._pending: Deque[QueuedTask] = deque()
        self._lock = threading.Lock()
        self._work_available = threading.Condition(self._lock)
        self._ids = itertools.count(1)

        self._thread: Optional[threading.Thread] = None
        self._accepting = False
        self._stopping = False
        self._in_flight: Optional[QueuedTask] = None

        # Counters (guarded by _lock)
        self._submitted = 0
        self._processed = 0
        self._failed = 0
        self._timed_out = 0
        self._expired = 0
        self._rejected = 0
        self._abandoned = 0
        self._processing_times: Deque[float] = deque(maxlen=PROCESSING_WINDOW)

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        """Start the worker thread. Calling start() twice is a no-op."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            if self._stopping:
                raise QueueClosedError("Device queue was shut down and cannot be restarted")

            self._accepting = True
            self._thread = threading.Thread(
                target=self._worker_loop, daemon=True, name="DeviceOperationWorker"
            )
            self._thread.start()

        logger.info(
            f"Device operation queue started (timeout={self.default_timeout}s, "
            f"max_queue_size={self.max_queue_size})"
        )

    def shutdown(self, grace_period: float = 30.0) -> ShutdownReport:
        """Stop accepting work, drain for ``grace_period`` seconds, then abandon the rest.

        Returns:
            ShutdownReport with counts of processed, failed and abandoned tasks.
        """
        with self._lock:
            queued_at_shutdown = len(self._pending)
            processed_before = self._processed
            failed_before = self._failed
            self._accepting = False
            self._stopping = True
            self._work_available.notify_all()
            thread = self._thread

        logger.info(
            f"Shutting down device queue: {queued_at_shutdown} pending, grace={grace_period}s"
        )

        if thread is not None:
            thread.join(timeout=max(grace_period, 0.0))

        with self._lock:
            abandoned = list(self._pending)
            self._pending.clear()
            self._abandoned += len(abandoned)
            in_flight = self._in_flight.label if self._in_flight is not None else None
            report = ShutdownReport(
                queued_at_shutdown=queued_at_shutdown,
                processed=self._processed - processed_before,
                failed=self._failed - failed_before,
                abandoned=len(abandoned),
                in_flight=in_flight,
                clean=not abandoned and in_flight is None,
            )
            self._work_available.notify_all()

        for task in abandoned:
            if not task.future.done():
                task.future.set_exception(
                    QueueClosedError(f"Task '{task.label}' abandoned: device queue shut down")
                )

        if in_flight is not None:
            logger.warning(
                f"Grace period ended while '{in_flight}' was running; its result will still be "
                f"delivered when the device answers"
            )
        if abandoned:
            logger.warning(f"Abandoned {len(abandoned)} queued device tasks at shutdown")

        logger.info(f"Device queue shut down: {report}")
        return report

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._accepting

    def is_worker_thread(self) -> bool:
        """True when called from the queue's worker thread."""
        return self._thread is not None and threading.current_thread() is self._thread

    def __enter__(self) -> DeviceOperationQueue:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ submission

    def enqueue(
        self,
        operation: Callable[[], T],
        timeout: Optional[float] = None,
        label: str = "device-task",
    ) -> QueuedTask:
        """Add a task without waiting for it.

        Raises:
            QueueClosedError: Queue not started or shutting down.
            QueueFullError: max_queue_size tasks already pending.
        """
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")

        with self._lock:
            if not self._accepting:
                self._rejected += 1
                raise QueueClosedError("Device queue is not accepting tasks")
            if len(self._pending) >= self.max_queue_size:
                self._rejected += 1
                raise QueueFullError(
                    f"Device queue is full ({self.max_queue_size} pending). Try again later."
                )

            now = self._clock()
            task = QueuedTask(
                task_id=next(self._ids),
                operation=operation,
                enqueued_at=now,
                deadline=now + timeout,
                label=label,
            )
            self._pending.append(task)
            self._submitted += 1
            position = len(self._pending) + (1 if self._in_flight is not None else 0)
            self._work_available.notify()

        logger.debug(f"Queued '{label}' as task #{task.task_id} (position {position})")
        return task

    def submit(
        self,
        operation: Callable[[], T],
        timeout: Optional[float] = None,
        label: str = "device-task",
    ) -> T:
        """Run ``operation`` on the worker and wait for its result.

        Args:
            operation: Zero-argument callable executed on the worker thread
            timeout: Seconds to wait (defaults to default_timeout)
            label: Description used in logs and shutdown reports

        Returns:
            Whatever ``operation`` returns.

        Raises:
            QueueTimeoutError: Deadline passed before the result arrived.
            QueueClosedError / QueueFullError: Task was not admitted or was abandoned.
            Exception: Anything ``operation`` raised, re-raised in the caller.
        """
        if self.is_worker_thread():
            raise WorkerThreadError(
                "submit() called from the device worker; run the operation inline"
            )

        task = self.enqueue(operation, timeout=timeout, label=label)
        wait = max(task.deadline - self._clock(), 0.0)

        try:
            return task.future.result(timeout=wait)
        except FutureTimeoutError:
            with self._lock:
                self._timed_out += 1
            logger.warning(
                f"Timed out after {wait:.0f}s waiting for '{label}'; the task is not cancelled"
            )
            raise QueueTimeoutError(
                f"Device operation '{label}' did not complete within {wait:.0f}s"
            ) from None

    # ------------------------------------------------------------------ worker

    def _next_task(self) -> Optional[QueuedTask]:
        with self._work_available:
            while not self._pending and not self._stopping:
                self._work_available.wait()
            if not self._pending:
                return None
            task = self._pending.popleft()
            self._in_flight = task
            return task

    def _worker_loop(self) -> None:
        logger.info("Device worker loop started")

        while True:
            task = self._next_task()
            if task is None:
                break

            try:
                self._run(task)
            finally:
                with self._lock:
                    self._in_flight = None

        logger.info("Device worker loop stopped")

    def _run(self, task: QueuedTask) -> None:
        if task.expired(self._clock()):
            with self._lock:
                self._expired += 1
            logger.warning(f"Discarding '{task.label}': deadline passed before it started")
            if not task.future.done():
                task.future.set_exception(
                    QueueTimeoutError(f"Device operation '{task.label}' expired in queue")
                )
            return

        started = self._clock()
        logger.debug(
            f"Running '{task.label}' (task #{task.task_id}, "
            f"waited {started - task.enqueued_at:.1f}s)"
        )

        try:
            result = task.operation()
        except Exception as e:
            if not isinstance(e, EnrollmentError):
                logger.error(f"Unexpected error in '{task.label}': {e}", exc_info=True)
            with self._lock:
                self._failed += 1
                self._processing_times.append(self._clock() - started)
            task.future.set_exception(e)
            return

        with self._lock:
            self._processed += 1
            self._processing_times.append(self._clock() - started)
        task.future.set_result(result)

    # ------------------------------------------------------------------ reporting

    def _average_processing_locked(self) -> float:
        if not self._processing_times:
            return INITIAL_PROCESSING_ESTIMATE
        return sum(self._processing_times) / len(self._processing_times)

    @staticmethod
    def _status_for(load: int) -> str:
        if load == 0:
            return "IDLE"
        if load <= 5:
            return "NORMAL"
        if load <= 20:
            return "BUSY"
        if load <= 50:
            return "HEAVY_LOAD"
        return "OVERLOADED"

    def next_position(self) -> int:
        """1-based position a new submission would take (1 = runs immediately)."""
        with self._lock:
            return len(self._pending) + (1 if self._in_flight is not None else 0) + 1

    def estimate_wait(self, position: Optional[int] = None) -> float:
        """Estimated seconds before a task at ``position`` starts running."""
        if position is None:
            position = self.next_position()
        if position <= 1:
            return 0.0
        with self._lock:
            return (position - 1) * self._average_processing_locked()

    def load_status(self) -> str:
        with self._lock:
            return self._status_for(len(self._pending) + (1 if self._in_flight else 0))

    def stats(self) -> QueueStats:
        """Snapshot of the queue's counters."""
        with self._lock:
            load = len(self._pending) + (1 if self._in_flight is not None else 0)
            return QueueStats(
                submitted=self._submitted,
                processed=self._processed,
                failed=self._failed,
                timed_out=self._timed_out,
                expired=self._expired,
                rejected=self._rejected,
                abandoned=self._abandoned,
                pending=len(self._pending),
                processing=self._in_flight is not None,
                average_processing_seconds=self._average_processing_locked(),
                status=self._status_for(load),
            )

    def __repr__(self) -> str:
        stats = self.stats()
        return (
            f"DeviceOperationQueue(status={stats.status}, pending={stats.pending}, "
            f"processed={stats.processed}, failed={stats.failed})"
        )


class GuardedDeviceClient:
    """DeviceClient wrapper that only allows calls from the queue worker.

    Every component reaches the terminal through this wrapper, which makes
    the single-session discipline enforceable: a call from any other thread
    raises WorkerThreadError instead of opening a second device session.
    """

    def __init__(self, client: DeviceClient, queue: DeviceOperationQueue):
        self._client = client
        self._queue = queue

    def _guard(self, operation: str) -> None:
        if not self._queue.is_worker_thread():
            raise WorkerThreadError(
                f"Device operation '{operation}' called outside the device worker thread "
                f"({threading.current_thread().name})"
            )

    def test_connection(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        self._guard("test_connection")
        return self._client.test_connection(credentials)

    def get_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        self._guard("get_identity")
        return self._client.get_identity(credentials, employee_id)

    def query_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        self._guard("query_identity")
        return self._client.query_identity(credentials, employee_id)

    def create_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        self._guard("create_identity")
        return self._client.create_identity(credentials, identity)

    def merge_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        self._guard("merge_identity")
        return self._client.merge_identity(credentials, identity)

    def delete_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        self._guard("delete_identity")
        return self._client.delete_identity(credentials, employee_id)

    def merge_face(
        self, credentials: Credentials, employee_id: str, image_base64: str
    ) -> Optional[DeviceOperationResult]:
        self._guard("merge_face")
        return self._client.merge_face(credentials, employee_id, image_base64)

    def delete_face(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        self._guard("delete_face")
        return self._client.delete_face(credentials, employee_id)

    def list_identities(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        self._guard("list_identities")
        return self._client.list_identities(credentials)
