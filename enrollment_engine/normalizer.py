"""Normalization of heterogeneous device identity payloads.

Terminals answer identity queries in several shapes: a bare object, a list
of objects, or an object wrapping the list under ``personList``, ``list``,
``data``, ``persons`` or ``records``. Field names also vary between SDK
versions. This module maps all of them to EmployeeRecord; unknown or
malformed fields default to None/False instead of raising.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

from enrollment_engine.interfaces import EmployeeRecord, style_implies_biometric
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

WRAPPER_KEYS = ("personList", "list", "data", "persons", "records")
ID_KEYS = ("sn", "id", "personId", "personSn", "employeeId")
NAME_KEYS = ("name", "fullName", "displayName", "personName")
TIME_KEYS = ("updateTime", "lastUpdated", "createTime")
STYLE_KEYS = ("verifyStyle", "verificationStyle")
PHOTO_KEYS = ("hasPhoto", "photoExists", "faceImageExists", "hasFace")

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


def _first(mapping: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n", ""):
        return False
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds, epoch milliseconds or ISO-8601 text.

    Returns:
        Timezone-aware datetime (UTC for epoch values), or None if unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        if number > _EPOCH_MS_THRESHOLD:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        for candidate in (text, text.replace(" ", "T", 1)):
            try:
                return datetime.fromisoformat(candidate)
            except ValueError:
                continue

    return None


def record_from_mapping(person: Mapping[str, Any]) -> EmployeeRecord:
    """Map one device person object to an EmployeeRecord."""
    style = _as_int(_first(person, STYLE_KEYS))

    has_photo = _as_bool(_first(person, PHOTO_KEYS))
    if has_photo is None:
        has_photo = style_implies_biometric(style)

    return EmployeeRecord(
        employee_id=_as_str(_first(person, ID_KEYS)),
        display_name=_as_str(_first(person, NAME_KEYS)),
        has_biometric=has_photo,
        last_updated=parse_timestamp(_first(person, TIME_KEYS)),
        verification_style=style,
    )


def _unwrap(payload: Any, depth: int = 0) -> List[Mapping[str, Any]]:
    if payload is None or depth > 4:
        return []

    if isinstance(payload, (list, tuple)):
        people: List[Mapping[str, Any]] = []
        for item in payload:
            if isinstance(item, Mapping):
                people.append(item)
            else:
                logger.debug(f"Skipping non-object list entry: {type(item).__name__}")
        return people

    if isinstance(payload, Mapping):
        for key in WRAPPER_KEYS:
            inner = payload.get(key)
            if isinstance(inner, (list, tuple, Mapping)):
                return _unwrap(inner, depth + 1)
        return [payload]

    logger.debug(f"Ignoring unsupported identity payload type: {type(payload).__name__}")
    return []


def normalize_records(payload: Any) -> List[EmployeeRecord]:
    """Normalize any device identity payload to a list of records.

    Args:
        payload: Bare object, list of objects, or wrapper object

    Returns:
        List of EmployeeRecord (possibly empty). Objects without any
        recognizable field are still returned, with None/False defaults.

    Example:
        >>> normalize_records({"data": {"list": [{"sn": "E1", "name": "Ada"}]}})
        [EmployeeRecord(employee_id='E1', display_name='Ada', ...)]
    """
    return [record_from_mapping(person) for person in _unwrap(payload)]


def normalize_record(payload: Any) -> Optional[EmployeeRecord]:
    """Normalize a payload expected to describe one identity.

    Returns:
        The first record found, or None if the payload holds none.
    """
    records = normalize_records(payload)
    return records[0] if records else None


def find_record(payload: Any, employee_id: str) -> Optional[EmployeeRecord]:
    """Find the record for ``employee_id`` in any payload shape."""
    for record in normalize_records(payload):
        if record.employee_id == employee_id:
            return record
    return None
