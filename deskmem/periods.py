"""
Calendar-month period keys ("YYYY-MM").

Keys sort lexicographically in chronological order, so they can be compared
directly in SQL.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from deskmem.errors import ValidationIssue

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def period_key_for(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.year:04d}-{moment.month:02d}"


def parse_period(period_key: str) -> tuple[int, int]:
    match = _PERIOD_RE.match(period_key or "")
    if not match:
        raise ValidationIssue(
            f"period_key must look like YYYY-MM: {period_key!r}",
            field="period_key",
            error_type="invalid_format",
        )
    return int(match.group(1)), int(match.group(2))


def shift_period(period_key: str, months: int) -> str:
    """Return the period `months` away from `period_key` (negative goes back)."""
    year, month = parse_period(period_key)
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def retention_window_start(current_period: str, retention_periods: int) -> str:
    """
    Oldest period still retained when the window holds `retention_periods`
    periods ending with (and including) `current_period`.
    """
    if retention_periods < 1:
        raise ValidationIssue(
            "retention_periods must be at least 1",
            field="retention_periods",
            error_type="out_of_range",
        )
    return shift_period(current_period, -(retention_periods - 1))


def recent_periods(current_period: str, count: int) -> list[str]:
    """The `count` most recent periods, newest first."""
    return [shift_period(current_period, -offset) for offset in range(count)]
