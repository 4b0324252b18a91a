"""Existence check for identities on the terminal.

Distinguishes a clean "not found" answer from an indeterminate one (query
capability missing, transport error, no response) and turns the verdict
plus the caller's flags into a create/update branch.
"""

from __future__ import annotations

from enum import Enum

from enrollment_engine.errors import DuplicateError, IndeterminateStateError
from enrollment_engine.interfaces import Credentials, DeviceClient
from enrollment_engine.logging_config import get_logger
from enrollment_engine.normalizer import normalize_records

logger = get_logger(__name__)


class ExistenceStatus(str, Enum):
    EXISTS = "EXISTS"
    NOT_FOUND = "NOT_FOUND"
    INDETERMINATE = "INDETERMINATE"


class Branch(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class ExistenceChecker:
    """Queries the device for an identity.

    Example:
        >>> checker = ExistenceChecker(device)
        >>> status = checker.check("E1001", credentials)
        >>> branch = resolve_branch(status, "E1001", force_update=False, allow_indeterminate=False)
    """

    def __init__(self, device: DeviceClient):
        self.device = device

    def check(self, employee_id: str, credentials: Credentials) -> ExistenceStatus:
        """Determine whether ``employee_id`` exists on the device.

        Returns:
            EXISTS when the device answers success for the identity,
            NOT_FOUND on a clean negative answer, INDETERMINATE when the
            query raised or produced no response.
        """
        try:
            result = self.device.query_identity(credentials, employee_id)
        except NotImplementedError:
            logger.warning("Identity query not supported by device client; existence unknown")
            return ExistenceStatus.INDETERMINATE
        except Exception as e:
            logger.warning(f"Identity query for '{employee_id}' failed; existence unknown: {e}")
            return ExistenceStatus.INDETERMINATE

        if result is None:
            logger.warning(f"Identity query for '{employee_id}' returned no response")
            return ExistenceStatus.INDETERMINATE

        if not result.succeeded:
            logger.debug(
                f"Identity '{employee_id}' not found (code={result.code}, msg={result.message})"
            )
            return ExistenceStatus.NOT_FOUND

        # A success carrying a list that does not mention this id is a miss
        if result.data is not None:
            records = normalize_records(result.data)
            ids = {r.employee_id for r in records if r.employee_id is not None}
            if ids and employee_id not in ids:
                logger.debug(f"Identity '{employee_id}' absent from query payload")
                return ExistenceStatus.NOT_FOUND

        return ExistenceStatus.EXISTS


def resolve_branch(
    status: ExistenceStatus,
    employee_id: str,
    force_update: bool,
    allow_indeterminate: bool,
) -> Branch:
    """Apply the existence policy.

    Raises:
        IndeterminateStateError: Existence unknown and allow_indeterminate not set.
        DuplicateError: Identity exists and force_update not set.
    """
    if status is ExistenceStatus.INDETERMINATE:
        if not allow_indeterminate:
            raise IndeterminateStateError(
                f"Cannot determine whether employee '{employee_id}' already exists on the "
                f"device. Set allow_indeterminate (or force_update) to proceed anyway."
            )
        logger.warning(f"Existence of '{employee_id}' unknown; proceeding with create as authorized")
        return Branch.CREATE

    if status is ExistenceStatus.EXISTS:
        if not force_update:
            raise DuplicateError(
                f"Employee '{employee_id}' is already enrolled on the device. "
                f"Set force_update to update this employee."
            )
        return Branch.UPDATE

    return Branch.CREATE
