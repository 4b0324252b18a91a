"""Backend notifiers for enrollment outcomes.

The business backend persists an employee only after the device confirms
the enrollment, so every resolved enrollment is reported to it. Delivery
is fire-and-forget: failures are logged and never reach the orchestrator.
"""

from __future__ import annotations

import threading
import time
from queue import Empty, Queue
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from enrollment_engine.errors import EnrollmentError
from enrollment_engine.interfaces import EmployeeRecord
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

SOURCE = "DEVICE_BRIDGE"
SUCCESS_PATH = "/api/employees/device-sync-success"
FAILURE_PATH = "/api/employees/device-sync-failure"


class NullNotifier:
    """Notifier used when the backend integration is disabled."""

    def notify_success(self, record: EmployeeRecord, detail: str) -> None:
        logger.debug(f"Backend disabled; not reporting success for '{record.employee_id}'")

    def notify_failure(self, identity: EmployeeRecord, error: Exception) -> None:
        logger.debug(f"Backend disabled; not reporting failure for '{identity.employee_id}'")


class HttpBackendNotifier:
    """Posts enrollment outcomes to the business backend.

    In async mode payloads are queued and sent from a background thread so
    the device worker never waits on the backend.

    Attributes:
        base_url: Backend base URL
        auth_key: Service key sent as X-Service-Auth (omitted when empty)
        timeout: Request timeout in seconds
        async_mode: Send from a background thread
    """

    def __init__(
        self,
        base_url: str,
        auth_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        async_mode: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_key = auth_key
        self.timeout = timeout
        self.async_mode = async_mode

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=frozenset(["POST"]),
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

        self._outbox: Queue = Queue()
        self._stop_event = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None

        if async_mode:
            self._start_worker()

    def _start_worker(self) -> None:
        self._stop_event.clear()
        self._worker_thread = threading.Thread(
            target=self._worker_loop, daemon=True, name="BackendNotifier"
        )
        self._worker_thread.start()
        logger.info(f"Backend notifier started ({self.base_url})")

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set() or not self._outbox.empty():
            try:
                path, payload = self._outbox.get(timeout=0.5)
            except Empty:
                continue
            try:
                self._send(path, payload)
            except Exception as e:
                logger.error(f"Backend notification {path} crashed: {e}", exc_info=True)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_key:
            headers["X-Service-Auth"] = self.auth_key
        return headers

    def _send(self, path: str, payload: Dict[str, Any]) -> bool:
        employee_id = payload.get("employeeData", {}).get("employeeId")
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Backend notification {path} for '{employee_id}' failed: {e}")
            return False

        logger.debug(f"Backend notified {path} for '{employee_id}'")
        return True

    def _dispatch(self, path: str, payload: Dict[str, Any]) -> None:
        if self.async_mode:
            self._outbox.put((path, payload))
        else:
            self._send(path, payload)

    @staticmethod
    def _timestamp() -> int:
        return int(time.time() * 1000)

    def notify_success(self, record: EmployeeRecord, detail: str) -> None:
        self._dispatch(
            SUCCESS_PATH,
            {
                "employeeData": record.to_dict(),
                "deviceSyncResult": detail,
                "timestamp": self._timestamp(),
                "source": SOURCE,
            },
        )

    def notify_failure(self, identity: EmployeeRecord, error: Exception) -> None:
        payload = {
            "employeeData": identity.to_dict(),
            "error": str(error),
            "timestamp": self._timestamp(),
            "source": SOURCE,
        }
        if isinstance(error, EnrollmentError):
            payload["errorCode"] = error.code
        self._dispatch(FAILURE_PATH, payload)

    def pending(self) -> int:
        return self._outbox.qsize()

    def stop(self, timeout: float = 10.0) -> None:
        """Flush queued notifications and stop the background thread."""
        if self._worker_thread is not None:
            self._stop_event.set()
            self._worker_thread.join(timeout=timeout)
            self._worker_thread = None
            logger.info("Backend notifier stopped")

    def __enter__(self) -> HttpBackendNotifier:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
