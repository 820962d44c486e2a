"""Human readable duration parsing and formatting.

Durations are expressed in integer milliseconds. Month and year units use
fixed 30 and 365 day approximations; they are not calendar aware.
"""

from __future__ import annotations

import re

from killall.core.errors import DurationError, DurationRangeError

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS
YEAR_MS = 365 * DAY_MS

MIN_TIMEOUT_MS = SECOND_MS
MAX_TIMEOUT_MS = 30 * DAY_MS
# longer numbers are rejected as out of range before any conversion
MAX_NUMBER_DIGITS = 15

UNIT_MS: dict[str, int] = {
    "ms": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": SECOND_MS,
    "sec": SECOND_MS,
    "second": SECOND_MS,
    "seconds": SECOND_MS,
    "m": MINUTE_MS,
    "min": MINUTE_MS,
    "minute": MINUTE_MS,
    "minutes": MINUTE_MS,
    "h": HOUR_MS,
    "hr": HOUR_MS,
    "hour": HOUR_MS,
    "hours": HOUR_MS,
    "d": DAY_MS,
    "day": DAY_MS,
    "days": DAY_MS,
    "w": WEEK_MS,
    "week": WEEK_MS,
    "weeks": WEEK_MS,
    # approximations
    "month": MONTH_MS,
    "months": MONTH_MS,
    "y": YEAR_MS,
    "year": YEAR_MS,
    "years": YEAR_MS,
}

_FORMAT_UNITS: tuple[tuple[str, int], ...] = (
    ("y", YEAR_MS),
    ("d", DAY_MS),
    ("h", HOUR_MS),
    ("m", MINUTE_MS),
    ("s", SECOND_MS),
    ("ms", 1),
)

_BARE_INTEGER = re.compile(r"\d+")
_TOKEN = re.compile(r"(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>[a-z]+)")
_EXPRESSION = re.compile(r"(?:\d+(?:\.\d+)?\s*[a-z]+\s*)+")


def parse_duration(value: str) -> int:
    """Parse ``value`` such as ``"2 hours"`` or ``"1d 2h"`` into milliseconds.

    A bare integer is read as milliseconds. Raises ``DurationError`` for empty
    input, negative numbers, unknown units, or text without any duration token,
    and ``DurationRangeError`` for numbers longer than ``MAX_NUMBER_DIGITS``.
    """
    if not isinstance(value, str) or not value.strip():
        msg = "Duration must be a non-empty string"
        raise DurationError(msg)

    text = value.strip().lower()
    if _BARE_INTEGER.fullmatch(text):
        _check_digits(text, value)
        return int(text.lstrip("0") or "0")

    if "-" in text:
        msg = f"Negative durations are not allowed: {value!r}"
        raise DurationError(msg)

    if not _EXPRESSION.fullmatch(text):
        msg = f"Invalid duration format: {value!r}. Use formats like '2 hours', '30m', '1d 2h'"
        raise DurationError(msg)

    total = 0.0
    for match in _TOKEN.finditer(text):
        unit = match.group("unit")
        multiplier = UNIT_MS.get(unit)
        if multiplier is None:
            msg = f"Unknown time unit: {unit!r}"
            raise DurationError(msg)
        number = match.group("number")
        _check_digits(number.partition(".")[0], value)
        total += float(number) * multiplier

    return int(round(total))


def _check_digits(digits: str, value: str) -> None:
    if len(digits.lstrip("0")) > MAX_NUMBER_DIGITS:
        msg = f"Duration {value[:40]!r} is too large"
        raise DurationRangeError(msg, bound="maximum")


def parse_timeout(value: str) -> int:
    """Parse a timeout and enforce the 1 second to 30 days window (inclusive)."""
    milliseconds = parse_duration(value)
    if milliseconds < MIN_TIMEOUT_MS:
        msg = (
            f"Timeout {format_duration(milliseconds)} is below the minimum of 1 second"
        )
        raise DurationRangeError(msg, bound="minimum")
    if milliseconds > MAX_TIMEOUT_MS:
        msg = f"Timeout {format_duration(milliseconds)} exceeds the maximum of 30 days"
        raise DurationRangeError(msg, bound="maximum")
    return milliseconds


def format_duration(milliseconds: int) -> str:
    """Render milliseconds greedily with the largest units first."""
    if milliseconds < 0:
        msg = "Cannot format a negative duration"
        raise ValueError(msg)
    if milliseconds == 0:
        return "0ms"

    remaining = int(milliseconds)
    parts: list[str] = []
    for name, size in _FORMAT_UNITS:
        count, remaining = divmod(remaining, size)
        if count:
            parts.append(f"{count}{name}")
    return " ".join(parts)


def is_valid_duration(value: str) -> bool:
    try:
        parse_duration(value)
    except DurationError:
        return False
    return True
