"""Date parsing for external payloads.

Exactly three shapes are accepted:

- ``DD/MM/YYYY`` (UK day-first; never read as month-first)
- ``YYYY-MM-DD``
- full ISO-8601 date-time (``2025-01-21T10:30:00Z``, offsets allowed)

Date-only values resolve to midnight UTC. Everything is returned as an
aware UTC datetime.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any

from app.core.exceptions import InvalidDate

_DAY_FIRST_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _build_date(raw: str, year: int, month: int, day: int, field: str) -> datetime:
    # date() refuses overflow (31/04 -> ValueError) instead of rolling into May
    try:
        built = date(year, month, day)
    except ValueError as exc:
        raise InvalidDate(raw, field=field, reason=str(exc)) from exc
    return datetime.combine(built, time.min, tzinfo=timezone.utc)


def parse_date(raw: Any, field: str = "date") -> datetime:
    """
    Parse an external date literal.

    Args:
        raw: Raw value (string, or an already-parsed datetime/date)
        field: Payload field name, reported on failure

    Returns:
        Aware UTC datetime

    Raises:
        InvalidDate: unsupported shape or impossible calendar date
    """
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw.astimezone(timezone.utc)
    if isinstance(raw, date):
        return datetime.combine(raw, time.min, tzinfo=timezone.utc)
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidDate(raw, field=field, reason="date is required")

    value = raw.strip()

    match = _DAY_FIRST_RE.match(value)
    if match:
        day, month, year = (int(part) for part in match.groups())
        return _build_date(raw, year, month, day, field)

    match = _ISO_DATE_RE.match(value)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _build_date(raw, year, month, day, field)

    if _ISO_DATETIME_RE.match(value):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidDate(raw, field=field, reason=str(exc)) from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    raise InvalidDate(
        raw,
        field=field,
        reason="expected DD/MM/YYYY, YYYY-MM-DD or ISO-8601",
    )


def parse_optional_date(raw: Any, field: str, default_now: bool = False) -> datetime | None:
    """Parse a date that may be absent.

    ``default_now`` is only passed by endpoints whose contract allows an
    omitted date to mean "now".
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return utc_now() if default_now else None
    return parse_date(raw, field=field)
