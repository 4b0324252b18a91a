"""Enrollment orchestration: the create-then-merge-face saga.

An enrollment moves through these states:

    VALIDATING -> CHECKING_EXISTENCE -> CREATING_OR_MERGING -> MERGING_FACE -> SUCCESS
                                                                 \\-> ROLLING_BACK -> FAILED

and may fail directly from any state before MERGING_FACE. Validation runs
on the caller thread (prepare); everything that touches the device runs on
the queue worker (execute). Only the face-merge step is retried. When the
face merge fails after this run created the identity, the identity is
deleted once, best-effort; an identity that already existed is never
deleted.
"""

from __future__ import annotations

import time
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from enrollment_engine.errors import (
    DeviceCommunicationError,
    DeviceOperationError,
    DuplicateError,
    EnrollmentError,
    IdentityNotFoundError,
    ValidationError,
)
from enrollment_engine.existence import Branch, ExistenceChecker, resolve_branch
from enrollment_engine.image_validator import ImageValidator
from enrollment_engine.interfaces import (
    MIN_DEVICE_KEY_LENGTH,
    BackendNotifier,
    Credentials,
    DeviceClient,
    DeviceOperationResult,
    EmployeeRecord,
    EnrollmentRequest,
    IdentityPayload,
    ImageAsset,
    default_verification_style,
    style_implies_biometric,
)
from enrollment_engine.logging_config import get_logger, mask_key
from enrollment_engine.normalizer import find_record, normalize_record, normalize_records
from enrollment_engine.retry import RetryOutcome, RetryVerdict, with_retry

logger = get_logger(__name__)

DUPLICATE_CODE = "1201"
ALREADY_EXISTS_CODE = "101010"
IMAGE_REJECTED_CODES = ("101008", "1500")
NOT_FOUND_CODE = "404"


class EnrollmentState(str, Enum):
    VALIDATING = "VALIDATING"
    CHECKING_EXISTENCE = "CHECKING_EXISTENCE"
    CREATING_OR_MERGING = "CREATING_OR_MERGING"
    MERGING_FACE = "MERGING_FACE"
    SUCCESS = "SUCCESS"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"


@dataclass
class PreparedEnrollment:
    """Validated request plus its prepared face image (if any)."""

    request: EnrollmentRequest
    image: Optional[ImageAsset] = None

    @property
    def employee_id(self) -> str:
        return self.request.employee_id


@dataclass
class EnrollmentOutcome:
    """Terminal result of one enrollment run.

    Attributes:
        state: SUCCESS or FAILED
        record: Resulting identity record (SUCCESS only)
        error: Error that ended the run (FAILED only)
        branch: CREATE or UPDATE, None if the run failed before branching
        face_attempts: Number of merge_face calls made
        compensated: True if the created identity was deleted after face-merge failure
        ambiguous: True if any device step returned no response and was accepted
        trace: Every state the run passed through, in order
    """

    state: EnrollmentState
    record: Optional[EmployeeRecord] = None
    error: Optional[EnrollmentError] = None
    branch: Optional[Branch] = None
    face_attempts: int = 0
    compensated: bool = False
    ambiguous: bool = False
    trace: List[EnrollmentState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is EnrollmentState.SUCCESS

    def __repr__(self) -> str:
        return (
            f"EnrollmentOutcome(state={self.state.value}, branch="
            f"{self.branch.value if self.branch else None}, face_attempts={self.face_attempts}, "
            f"compensated={self.compensated}, ambiguous={self.ambiguous}, error={self.error!r})"
        )


@dataclass
class _FaceMergeAttempt:
    result: Optional[DeviceOperationResult] = None
    exception: Optional[Exception] = None


class _Saga:
    """Mutable state of one run: current state, trace and flags."""

    def __init__(self, employee_id: str):
        self.employee_id = employee_id
        self.state = EnrollmentState.VALIDATING
        self.trace: List[EnrollmentState] = [EnrollmentState.VALIDATING]
        self.branch: Optional[Branch] = None
        self.face_attempts = 0
        self.compensated = False
        self.ambiguous = False

    def advance(self, state: EnrollmentState) -> None:
        logger.info(f"[{self.employee_id}] {self.state.value} -> {state.value}")
        self.state = state
        self.trace.append(state)

    def finish(
        self,
        state: EnrollmentState,
        record: Optional[EmployeeRecord] = None,
        error: Optional[EnrollmentError] = None,
    ) -> EnrollmentOutcome:
        self.advance(state)
        return EnrollmentOutcome(
            state=state,
            record=record,
            error=error,
            branch=self.branch,
            face_attempts=self.face_attempts,
            compensated=self.compensated,
            ambiguous=self.ambiguous,
            trace=list(self.trace),
        )


def is_duplicate_response(result: DeviceOperationResult) -> bool:
    return result.code == DUPLICATE_CODE or "exist" in (result.message or "").lower()


def is_not_found_response(result: DeviceOperationResult) -> bool:
    message = (result.message or "").lower()
    return result.code == NOT_FOUND_CODE or "not found" in message or "not exist" in message


def classify_face_merge(
    result: Optional[DeviceOperationResult], treat_null_as_success: bool = True
) -> RetryVerdict:
    """Map a merge_face response to a retry verdict.

    Returns:
        SUCCESS for "000" (and for no response while treat_null_as_success),
        ALREADY_SATISFIED when the face is already enrolled, RETRYABLE when
        the device rejected the image, TERMINAL otherwise.
    """
    if result is None:
        return RetryVerdict.SUCCESS if treat_null_as_success else RetryVerdict.TERMINAL

    message = result.message or ""
    if result.succeeded:
        return RetryVerdict.SUCCESS
    if result.code == ALREADY_EXISTS_CODE or "already exists" in message.lower():
        return RetryVerdict.ALREADY_SATISFIED
    if result.code in IMAGE_REJECTED_CODES or "101008" in message:
        return RetryVerdict.RETRYABLE
    return RetryVerdict.TERMINAL


def validate_credentials(credentials: Optional[Credentials]) -> None:
    """Raise ValidationError unless credentials are usable."""
    if credentials is None:
        raise ValidationError("Device credentials are required")
    key = (credentials.device_key or "").strip()
    if len(key) < MIN_DEVICE_KEY_LENGTH:
        raise ValidationError(
            f"Device key must be at least {MIN_DEVICE_KEY_LENGTH} characters"
        )
    if not (credentials.secret or "").strip():
        raise ValidationError("Device secret must not be blank")


def validate_employee_id(employee_id: Optional[str]) -> str:
    if employee_id is None or not str(employee_id).strip():
        raise ValidationError("Employee id must not be blank")
    return str(employee_id).strip()


class EnrollmentOrchestrator:
    """Runs enrollment, deletion and lookup against one device client.

    The device client handed in here is expected to be the queue's
    GuardedDeviceClient; execute(), delete(), get() and list_identities()
    must therefore run on the queue worker.

    Attributes:
        device: Device client
        notifier: Backend notifier (optional)
        validator: Face image validator
        existence: Existence checker bound to the same device
        retry_max_attempts: Face-merge attempts before giving up
        treat_null_as_success: Accept a missing device response as success

    Example:
        >>> orchestrator = EnrollmentOrchestrator(device, notifier=notifier)
        >>> prepared = orchestrator.prepare(request)
        >>> outcome = queue.submit(lambda: orchestrator.execute(prepared))
        >>> outcome.state
        <EnrollmentState.SUCCESS: 'SUCCESS'>
    """

    def __init__(
        self,
        device: DeviceClient,
        notifier: Optional[BackendNotifier] = None,
        validator: Optional[ImageValidator] = None,
        retry_max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        treat_null_as_success: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if retry_max_attempts < 1:
            raise ValueError(f"retry_max_attempts must be >= 1, got {retry_max_attempts}")

        self.device = device
        self.notifier = notifier
        self.validator = validator or ImageValidator()
        self.existence = ExistenceChecker(device)
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.treat_null_as_success = treat_null_as_success
        self._sleep = sleep

    # ------------------------------------------------------------------ enrollment

    def prepare(self, request: EnrollmentRequest) -> PreparedEnrollment:
        """Validate a request on the caller thread. No device call is made.

        Raises:
            ValidationError: Blank fields, bad credentials or invalid image.
        """
        employee_id = validate_employee_id(request.employee_id)
        if request.display_name is None or not str(request.display_name).strip():
            raise ValidationError("Display name must not be blank")
        validate_credentials(request.credentials)
        style = request.verification_style
        if style is not None and (not isinstance(style, int) or isinstance(style, bool) or style < 0):
            raise ValidationError(
                f"Invalid verification style: {request.verification_style}"
            )

        image = None
        if request.face_image is not None:
            image = self.validator.prepare(request.face_image)

        if employee_id != request.employee_id:
            request = dataclasses.replace(request, employee_id=employee_id)

        logger.debug(
            f"Validated enrollment for '{employee_id}' "
            f"(device={mask_key(request.credentials.device_key)}, image={image})"
        )
        return PreparedEnrollment(request=request, image=image)

    def run(self, request: EnrollmentRequest) -> EnrollmentOutcome:
        """Validate and execute on the current thread.

        Validation failures end in FAILED without any device call or
        notification.
        """
        try:
            prepared = self.prepare(request)
        except ValidationError as e:
            logger.warning(f"Enrollment of '{request.employee_id}' rejected: {e}")
            saga = _Saga(str(request.employee_id))
            return saga.finish(EnrollmentState.FAILED, error=e)
        return self.execute(prepared)

    def execute(self, prepared: PreparedEnrollment) -> EnrollmentOutcome:
        """Run the device-side steps of the saga and notify the backend."""
        request = prepared.request
        saga = _Saga(request.employee_id)

        try:
            outcome = self._execute(prepared, saga)
        except EnrollmentError as e:
            logger.warning(f"Enrollment of '{request.employee_id}' failed: [{e.code}] {e.message}")
            outcome = saga.finish(EnrollmentState.FAILED, error=e)
        except Exception as e:
            logger.error(f"Unexpected error enrolling '{request.employee_id}': {e}", exc_info=True)
            error = EnrollmentError(f"Unexpected error during enrollment: {e}")
            error.__cause__ = e
            outcome = saga.finish(EnrollmentState.FAILED, error=error)

        self._notify(outcome, prepared)
        return outcome

    def _execute(self, prepared: PreparedEnrollment, saga: _Saga) -> EnrollmentOutcome:
        request = prepared.request
        credentials = request.credentials

        saga.advance(EnrollmentState.CHECKING_EXISTENCE)
        self._probe(credentials, saga)
        status = self.existence.check(request.employee_id, credentials)
        branch = resolve_branch(
            status,
            request.employee_id,
            force_update=request.force_update,
            allow_indeterminate=request.proceed_if_indeterminate,
        )
        logger.info(f"[{request.employee_id}] existence={status.value}, branch={branch.value}")

        if branch is Branch.CREATE and prepared.image is None:
            raise ValidationError(
                f"Face image is required to create employee '{request.employee_id}'"
            )

        saga.advance(EnrollmentState.CREATING_OR_MERGING)
        branch, result = self._write_identity(prepared, branch, saga)
        saga.branch = branch
        record = self._record_for(prepared, result)

        if prepared.image is None:
            logger.info(f"[{request.employee_id}] no face image supplied; keeping existing face")
            return saga.finish(EnrollmentState.SUCCESS, record=record)

        saga.advance(EnrollmentState.MERGING_FACE)
        retry = self._merge_face(prepared, saga)
        if retry.succeeded:
            record.has_biometric = True
            return saga.finish(EnrollmentState.SUCCESS, record=record)

        error = self._face_merge_error(retry)
        if branch is Branch.CREATE:
            saga.advance(EnrollmentState.ROLLING_BACK)
            saga.compensated = self._compensate(request.employee_id, credentials)
        else:
            logger.warning(
                f"[{request.employee_id}] face merge failed on existing identity; "
                f"identity left in place"
            )
        return saga.finish(EnrollmentState.FAILED, error=error)

    # ------------------------------------------------------------------ saga steps

    def _accept(self, result: Optional[DeviceOperationResult], operation: str, saga: _Saga) -> None:
        """Raise DeviceOperationError unless ``result`` counts as success."""
        if result is None:
            if not self.treat_null_as_success:
                raise DeviceOperationError(
                    f"Device returned no response to {operation}", operation=operation
                )
            logger.warning(
                f"[{saga.employee_id}] {operation} returned no response; "
                f"treating as ambiguous success"
            )
            saga.ambiguous = True
            return

        if not result.succeeded:
            raise DeviceOperationError(
                f"Device {operation} failed: [{result.code}] {result.message}",
                device_code=result.code,
                device_message=result.message,
                operation=operation,
            )

    def _probe(self, credentials: Credentials, saga: _Saga) -> None:
        try:
            result = self.device.test_connection(credentials)
        except DeviceCommunicationError:
            raise
        except Exception as e:
            raise DeviceCommunicationError(f"Device connection test failed: {e}") from e

        if result is None:
            logger.warning(f"[{saga.employee_id}] connection test returned no response")
            saga.ambiguous = True
            return

        if not result.succeeded:
            raise DeviceCommunicationError(
                f"Device connection test failed: [{result.code}] {result.message}"
            )

    def _identity_payload(self, prepared: PreparedEnrollment) -> IdentityPayload:
        request = prepared.request
        style = request.verification_style
        if style is None:
            style = default_verification_style(prepared.image is not None)
        return IdentityPayload(
            employee_id=request.employee_id,
            display_name=str(request.display_name).strip(),
            verification_style=int(style),
        )

    def _write_identity(
        self, prepared: PreparedEnrollment, branch: Branch, saga: _Saga
    ) -> Tuple[Branch, Optional[DeviceOperationResult]]:
        request = prepared.request
        credentials = request.credentials
        identity = self._identity_payload(prepared)

        if branch is Branch.CREATE:
            result = self.device.create_identity(credentials, identity)
            if result is not None and not result.succeeded and is_duplicate_response(result):
                if not request.force_update:
                    raise DuplicateError(
                        f"Employee '{request.employee_id}' is already enrolled on the device: "
                        f"{result.message}"
                    )
                logger.info(
                    f"[{request.employee_id}] create reported duplicate; merging instead"
                )
                branch = Branch.UPDATE
            else:
                self._accept(result, "create_identity", saga)
                logger.info(f"[{request.employee_id}] identity created")
                return branch, result

        result = self.device.merge_identity(credentials, identity)
        self._accept(result, "merge_identity", saga)
        logger.info(f"[{request.employee_id}] identity updated")
        return branch, result

    def _merge_face(self, prepared: PreparedEnrollment, saga: _Saga) -> RetryOutcome:
        request = prepared.request
        current = {"image": prepared.image}

        def attempt(n: int) -> _FaceMergeAttempt:
            saga.face_attempts = n
            try:
                result = self.device.merge_face(
                    request.credentials, request.employee_id, current["image"].base64
                )
            except Exception as e:
                logger.warning(f"[{request.employee_id}] merge_face raised on attempt {n}: {e}")
                return _FaceMergeAttempt(exception=e)
            return _FaceMergeAttempt(result=result)

        def classify(face: _FaceMergeAttempt) -> RetryVerdict:
            if face.exception is not None:
                return RetryVerdict.TERMINAL
            return classify_face_merge(face.result, self.treat_null_as_success)

        def renormalize(n: int, face: _FaceMergeAttempt) -> None:
            try:
                current["image"] = self.validator.renormalize(current["image"], n)
            except Exception as e:
                logger.warning(
                    f"[{request.employee_id}] re-encoding after attempt {n} failed, "
                    f"resending previous image: {e}"
                )

        outcome = with_retry(
            attempt,
            classify,
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            sleep=self._sleep,
            on_retry=renormalize,
            label=f"[{request.employee_id}] merge_face",
        )

        if outcome.succeeded and outcome.result.result is None and outcome.result.exception is None:
            logger.warning(
                f"[{request.employee_id}] merge_face returned no response; "
                f"treating as ambiguous success"
            )
            saga.ambiguous = True
        return outcome

    def _face_merge_error(self, retry: RetryOutcome) -> DeviceOperationError:
        face: _FaceMergeAttempt = retry.result
        if face.exception is not None:
            error = DeviceOperationError(
                f"Face merge failed: {face.exception}", operation="merge_face"
            )
            error.__cause__ = face.exception
            return error

        result = face.result
        if result is None:
            return DeviceOperationError("Face merge returned no response", operation="merge_face")

        prefix = "Face image rejected after retries" if retry.exhausted else "Face merge failed"
        return DeviceOperationError(
            f"{prefix}: [{result.code}] {result.message}",
            device_code=result.code,
            device_message=result.message,
            operation="merge_face",
        )

    def _compensate(self, employee_id: str, credentials: Credentials) -> bool:
        """Delete an identity this run created. Failures are logged only."""
        logger.warning(f"[{employee_id}] rolling back created identity")
        try:
            result = self.device.delete_identity(credentials, employee_id)
        except Exception as e:
            logger.error(f"[{employee_id}] rollback delete raised: {e}", exc_info=True)
            return False

        if result is None or result.succeeded:
            logger.info(f"[{employee_id}] rollback delete completed")
            return True

        logger.error(f"[{employee_id}] rollback delete failed: [{result.code}] {result.message}")
        return False

    def _record_for(
        self, prepared: PreparedEnrollment, result: Optional[DeviceOperationResult]
    ) -> EmployeeRecord:
        request = prepared.request
        if result is not None and result.data is not None:
            record = find_record(result.data, request.employee_id) or normalize_record(result.data)
            if record is not None and record.employee_id is not None:
                return record

        style = self._identity_payload(prepared).verification_style
        return EmployeeRecord(
            employee_id=request.employee_id,
            display_name=str(request.display_name).strip(),
            has_biometric=prepared.image is not None or style_implies_biometric(style),
            last_updated=datetime.now(timezone.utc),
            verification_style=style,
        )

    def _notify(self, outcome: EnrollmentOutcome, prepared: PreparedEnrollment) -> None:
        if self.notifier is None:
            return

        request = prepared.request
        try:
            if outcome.succeeded:
                action = "updated" if outcome.branch is Branch.UPDATE else "created"
                detail = f"Employee {action} on device"
                if outcome.ambiguous:
                    detail += " (unconfirmed device response)"
                self.notifier.notify_success(outcome.record, detail)
            else:
                identity = EmployeeRecord(
                    employee_id=request.employee_id,
                    display_name=request.display_name,
                    verification_style=request.verification_style,
                )
                self.notifier.notify_failure(identity, outcome.error)
        except Exception as e:
            logger.warning(f"Backend notification for '{request.employee_id}' failed: {e}")

    # ------------------------------------------------------------------ other operations

    def test_connection(self, credentials: Credentials) -> bool:
        """Probe the device. Returns False instead of raising on failure."""
        validate_credentials(credentials)
        try:
            result = self.device.test_connection(credentials)
        except Exception as e:
            logger.warning(f"Connection test failed for {mask_key(credentials.device_key)}: {e}")
            return False

        if result is None:
            logger.warning("Connection test returned no response")
            return self.treat_null_as_success
        return result.succeeded

    def delete(self, employee_id: str, credentials: Credentials) -> None:
        """Remove an identity and its face from the device.

        Raises:
            DeviceCommunicationError: Device unreachable.
            IdentityNotFoundError: Device reports no such identity.
            DeviceOperationError: Any other non-success answer.
        """
        saga = _Saga(employee_id)
        self._probe(credentials, saga)

        try:
            face = self.device.delete_face(credentials, employee_id)
            if face is not None and not face.succeeded:
                logger.debug(f"[{employee_id}] delete_face: [{face.code}] {face.message}")
        except Exception as e:
            logger.warning(f"[{employee_id}] delete_face failed, continuing with identity: {e}")

        result = self.device.delete_identity(credentials, employee_id)
        if result is not None and not result.succeeded and is_not_found_response(result):
            raise IdentityNotFoundError(
                f"Employee '{employee_id}' not found on device",
                device_code=result.code,
                device_message=result.message,
                operation="delete_identity",
            )
        self._accept(result, "delete_identity", saga)
        logger.info(f"[{employee_id}] identity deleted from device")

    def get(self, employee_id: str, credentials: Credentials) -> Optional[EmployeeRecord]:
        """Look up one identity, falling back to a full listing."""
        try:
            result = self.device.get_identity(credentials, employee_id)
        except DeviceCommunicationError:
            raise
        except Exception as e:
            logger.warning(f"get_identity for '{employee_id}' failed, falling back to list: {e}")
            result = None

        if result is not None and result.succeeded and result.data is not None:
            record = find_record(result.data, employee_id) or normalize_record(result.data)
            if record is not None and record.employee_id in (None, employee_id):
                if record.employee_id is None:
                    record.employee_id = employee_id
                return record

        listing = self.device.list_identities(credentials)
        if listing is None or not listing.succeeded:
            return None
        return find_record(listing.data, employee_id)

    def list_identities(self, credentials: Credentials) -> List[EmployeeRecord]:
        """All identities on the device as normalized records."""
        result = self.device.list_identities(credentials)
        if result is None:
            logger.warning("list_identities returned no response")
            return []
        if not result.succeeded:
            raise DeviceOperationError(
                f"Device list_identities failed: [{result.code}] {result.message}",
                device_code=result.code,
                device_message=result.message,
                operation="list_identities",
            )
        records = normalize_records(result.data)
        logger.info(f"Listed {len(records)} identities from device")
        return records
