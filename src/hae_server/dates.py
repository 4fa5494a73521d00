"""Timestamp resolution for Health Auto Export payloads.

Every date-bearing field that enters the pipeline goes through
:func:`parse_date`. Accepted inputs:

* epoch milliseconds, as a number or a numeric string
* ``YYYY/MM/DD`` (optionally followed by ``HH:MM[:SS]``)
* ``YYYY-MM-DD``, ``YYYY-MM-DD HH:MM:SS`` and full ISO 8601
* the Health Auto Export form ``YYYY-MM-DD HH:MM:SS +HHMM``

Values without an offset are taken to be UTC. Results are always
timezone-aware UTC datetimes, so identical instants compare and index equal
regardless of the offset they arrived with.
"""

import math
import re
from datetime import UTC, date, datetime

# "2022-06-12 23:59:00 +0400" -> "2022-06-12T23:59:00+04:00"
_DATE_SPACE_TZ_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\s(\d{2}:\d{2}:\d{2})\s([+-])(\d{2})(\d{2})$")

_SLASH_FORMATS = ("%Y/%m/%d", "%Y/%m/%d %H:%M:%S", "%Y/%m/%d %H:%M")


def _normalize_date(value: str) -> str:
    """Normalize the Health Auto Export date format to ISO 8601."""
    m = _DATE_SPACE_TZ_RE.match(value)
    if m:
        return f"{m[1]}T{m[2]}{m[3]}{m[4]}:{m[5]}"
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _from_epoch_ms(millis: float) -> datetime | None:
    if not math.isfinite(millis):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _as_number(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value: object) -> datetime | None:
    """Resolve a raw timestamp into a UTC datetime.

    Args:
        value: Raw value from a payload (number, string, or datetime).

    Returns:
        The resolved datetime, or None if the value is empty or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, int | float):
        try:
            return _from_epoch_ms(float(value))
        except OverflowError:
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    number = _as_number(text)
    if number is not None:
        return _from_epoch_ms(number)

    if "/" in text:
        for fmt in _SLASH_FORMATS:
            try:
                return _as_utc(datetime.strptime(text, fmt))
            except ValueError:
                continue
        return None

    if "-" in text:
        try:
            parsed = datetime.fromisoformat(_normalize_date(text).replace("Z", "+00:00"))
        except ValueError:
            return None
        return _as_utc(parsed)

    return None
