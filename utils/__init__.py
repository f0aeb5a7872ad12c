"""
Utility functions for the REI API.

Value parsing shared by the aggregation cache, the production sync job and
the action handlers. Spreadsheet cells arrive as formatted strings, so every
helper here is tolerant of blanks, currency formatting and the handful of
date layouts Google Sheets produces.
"""

import math
import random
import re
import string
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

# Google Sheets date serials count days from this epoch
SHEETS_EPOCH = datetime(1899, 12, 30)

# Plain decimal or exponent notation; rejects "1_000", "inf" and "nan"
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

DATETIME_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%d-%b-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
)

_SERIAL_PATTERN = re.compile(r"^\d+(\.\d+)?$")
_BASE36 = string.digits + string.ascii_lowercase


def parse_amount(value: Any) -> Optional[float]:
    """
    Parse a spreadsheet money/number cell.

    Strips ``,`` and ``$`` before parsing. Returns None for blanks, text and
    non-finite values.

    Args:
        value: Raw cell value.

    Returns:
        The parsed float or None.

    Examples:
        >>> parse_amount("$1,234.50")
        1234.5
        >>> parse_amount("N/A") is None
        True
        >>> parse_amount("") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).replace(",", "").replace("$", "").strip()
        if not NUMBER_PATTERN.match(text):
            return None
        number = float(text)
    if not math.isfinite(number):
        return None
    return number


def parse_sheet_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp cell into a naive datetime.

    Accepts ISO strings, the US-style layouts Sheets uses for form
    timestamps, and date serial numbers. Timezone offsets are dropped so
    that values from one sheet always compare with each other.

    Args:
        value: Raw cell value.

    Returns:
        A datetime, or None if the value cannot be read as a date.

    Examples:
        >>> parse_sheet_datetime("2024-03-01 14:00")
        datetime.datetime(2024, 3, 1, 14, 0)
        >>> parse_sheet_datetime("3/1/2024 9:05:00")
        datetime.datetime(2024, 3, 1, 9, 5)
        >>> parse_sheet_datetime("soon") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return _from_serial(float(value))

    text = str(value).strip()
    if not text:
        return None

    if _SERIAL_PATTERN.match(text):
        return _from_serial(float(text))

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text).replace(tzinfo=None)
    except ValueError:
        pass

    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _from_serial(serial: float) -> Optional[datetime]:
    if not math.isfinite(serial) or serial < 0:
        return None
    try:
        return SHEETS_EPOCH + timedelta(days=serial)
    except OverflowError:
        return None


def group_key(value: Any) -> str:
    """
    Group-by key for a cell: the trimmed text, or ``Unknown`` when blank.

    Examples:
        >>> group_key("  Austin ")
        'Austin'
        >>> group_key(None)
        'Unknown'
    """
    if value is None:
        return "Unknown"
    text = str(value).strip()
    return text or "Unknown"


def to_base36(number: int) -> str:
    """Encode a non-negative integer in lowercase base 36."""
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_id(prefix: str = "ID") -> str:
    """
    Build a short unique row identifier such as ``TD-LT3K2Q1A-9F2XKD``.

    Args:
        prefix: Identifier prefix (``TD`` for to-dos, ``WQ`` for queue items).

    Returns:
        Uppercase identifier made of the prefix, a base-36 millisecond
        timestamp and six random base-36 characters.
    """
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{timestamp}-{suffix}".upper()


def to_iso(moment: datetime) -> str:
    """ISO-8601 text with millisecond precision; aware times are shown in UTC with a ``Z``."""
    if moment.tzinfo is None:
        return moment.isoformat(timespec="milliseconds")
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


__all__ = [
    "generate_id",
    "group_key",
    "parse_amount",
    "parse_sheet_datetime",
    "to_iso",
    "to_base36",
    "utc_now_iso",
]
