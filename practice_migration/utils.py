"""Small value helpers shared by reconciliation, transformation and validation."""

import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from dateutil import parser as date_parser

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_uuid(value: Any) -> bool:
    """True for a canonical hyphenated UUID string (or a UUID object)."""
    if isinstance(value, uuid.UUID):
        return True
    if not isinstance(value, str) or len(value) != 36:
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


def new_uuid() -> str:
    return str(uuid.uuid4())


def clean_str(value: Any) -> Optional[str]:
    """Trim a value to a string; empty strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_email(value: Any) -> Optional[str]:
    """Lower-cased, trimmed email, or None when it does not look like one."""
    text = clean_str(value)
    if text is None:
        return None
    text = text.lower()
    return text if EMAIL_PATTERN.match(text) else None


def normalize_code(value: Any) -> Union[int, str, None]:
    """
    Normalize a legacy enum code before lookup.

    Digit strings become ints, other strings are trimmed and lower-cased,
    bools and ints pass through, blanks become None.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return int(text)
    return text.lower()


def _parse(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if not text:
        return None
    try:
        return date_parser.parse(text)
    except (ValueError, OverflowError):
        return None


def to_iso_date(value: Any) -> Optional[str]:
    """Parse a date-ish value into YYYY-MM-DD, or None if unparseable."""
    parsed = _parse(value)
    return parsed.date().isoformat() if parsed else None


def to_iso_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[str]:
    """Parse a timestamp into ISO 8601 (naive values are taken as UTC)."""
    parsed = _parse(value) or default
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


def legacy_key(value: Any) -> Optional[int]:
    """Legacy primary keys are ints; accept digit strings too."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    return None


def patient_key(first_name: Any, last_name: Any, date_of_birth: Any) -> Optional[str]:
    """Composite key first|last|dob, lower-cased. None without a name."""
    first = (clean_str(first_name) or "").lower()
    last = (clean_str(last_name) or "").lower()
    if not first and not last:
        return None
    dob = to_iso_date(date_of_birth) or ""
    return f"{first}|{last}|{dob}"


def member_key(practice_id: Any, profile_id: Any) -> str:
    return f"{practice_id}|{profile_id}"
