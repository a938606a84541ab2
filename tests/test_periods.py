import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from datetime import datetime, timedelta, timezone

import pytest

from deskmem.errors import ValidationIssue
from deskmem.periods import parse_period, period_key_for, recent_periods, retention_window_start, shift_period


def test_period_key_uses_utc():
    moment = datetime(2024, 6, 1, 1, 30, tzinfo=timezone(timedelta(hours=3)))
    assert period_key_for(moment) == "2024-05"
    assert period_key_for(datetime(2024, 12, 31, 23, 59)) == "2024-12"


def test_shift_period_crosses_year_boundaries():
    assert shift_period("2024-01", -1) == "2023-12"
    assert shift_period("2023-11", 3) == "2024-02"
    assert shift_period("2024-05", 0) == "2024-05"


def test_retention_window_start():
    assert retention_window_start("2024-05", 2) == "2024-04"
    assert retention_window_start("2024-05", 1) == "2024-05"
    with pytest.raises(ValidationIssue):
        retention_window_start("2024-05", 0)


def test_recent_periods_newest_first():
    assert recent_periods("2024-02", 3) == ["2024-02", "2024-01", "2023-12"]


@pytest.mark.parametrize("value", ["2024-13", "2024-1", "24-01", "", None])
def test_parse_period_rejects_malformed(value):
    with pytest.raises(ValidationIssue):
        parse_period(value)
