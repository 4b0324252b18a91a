"""Unit tests for the existence checker and branch policy."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from enrollment_engine.errors import DuplicateError, IndeterminateStateError, ValidationError
from enrollment_engine.existence import Branch, ExistenceChecker, ExistenceStatus, resolve_branch
from enrollment_engine.interfaces import DeviceOperationResult


@pytest.fixture
def mock_device():
    return Mock()


@pytest.fixture
def checker(mock_device):
    return ExistenceChecker(mock_device)


def test_exists(checker, mock_device, credentials):
    mock_device.query_identity.return_value = DeviceOperationResult("000", "ok", {"sn": "E1"})

    assert checker.check("E1", credentials) is ExistenceStatus.EXISTS
    mock_device.query_identity.assert_called_once_with(credentials, "E1")


def test_exists_without_payload(checker, mock_device, credentials):
    mock_device.query_identity.return_value = DeviceOperationResult("000", "ok")

    assert checker.check("E1", credentials) is ExistenceStatus.EXISTS


def test_not_found_code(checker, mock_device, credentials):
    mock_device.query_identity.return_value = DeviceOperationResult("1001", "person not exist")

    assert checker.check("E1", credentials) is ExistenceStatus.NOT_FOUND


def test_success_listing_other_ids_is_not_found(checker, mock_device, credentials):
    mock_device.query_identity.return_value = DeviceOperationResult(
        "000", "ok", {"personList": [{"sn": "E2"}, {"sn": "E3"}]}
    )

    assert checker.check("E1", credentials) is ExistenceStatus.NOT_FOUND


def test_no_response_is_indeterminate(checker, mock_device, credentials):
    mock_device.query_identity.return_value = None

    assert checker.check("E1", credentials) is ExistenceStatus.INDETERMINATE


@pytest.mark.parametrize("error", [NotImplementedError(), ConnectionError("down")])
def test_query_failure_is_indeterminate(checker, mock_device, credentials, error):
    mock_device.query_identity.side_effect = error

    assert checker.check("E1", credentials) is ExistenceStatus.INDETERMINATE


def test_resolve_not_found_creates():
    assert resolve_branch(ExistenceStatus.NOT_FOUND, "E1", False, False) is Branch.CREATE


def test_resolve_exists_requires_force_update():
    with pytest.raises(DuplicateError):
        resolve_branch(ExistenceStatus.EXISTS, "E1", force_update=False, allow_indeterminate=True)

    assert resolve_branch(ExistenceStatus.EXISTS, "E1", True, False) is Branch.UPDATE


def test_resolve_indeterminate_requires_permission():
    with pytest.raises(IndeterminateStateError) as exc_info:
        resolve_branch(ExistenceStatus.INDETERMINATE, "E1", force_update=True, allow_indeterminate=False)

    assert isinstance(exc_info.value, ValidationError)
    assert exc_info.value.code == "INDETERMINATE_STATE"


def test_resolve_indeterminate_allowed_creates():
    assert resolve_branch(ExistenceStatus.INDETERMINATE, "E1", False, True) is Branch.CREATE
