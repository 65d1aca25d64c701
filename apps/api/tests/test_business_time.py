from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from leadflow.core.config import get_settings
from leadflow.utils.business_time import (
    business_date_for,
    business_day_bounds,
    business_month_bounds,
    date_range_with_cutover,
)


CAIRO = ZoneInfo("Africa/Cairo")


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("BUSINESS_TIMEZONE", "Africa/Cairo")
    monkeypatch.setenv("BUSINESS_DAY_CUTOVER_HOUR", "4")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_business_date_before_cutover_belongs_to_previous_day() -> None:
    assert business_date_for(datetime(2026, 1, 15, 3, 59, tzinfo=CAIRO)) == date(2026, 1, 14)
    assert business_date_for(datetime(2026, 1, 15, 4, 0, tzinfo=CAIRO)) == date(2026, 1, 15)


def test_business_date_converts_aware_values_to_business_timezone() -> None:
    # 01:30 UTC is 03:30 in Cairo during winter.
    assert business_date_for(datetime(2026, 1, 15, 1, 30, tzinfo=timezone.utc)) == date(2026, 1, 14)
    assert business_date_for(datetime(2026, 1, 15, 2, 30, tzinfo=timezone.utc)) == date(2026, 1, 15)


def test_naive_values_are_read_as_business_wall_clock() -> None:
    assert business_date_for(datetime(2026, 1, 15, 2, 0)) == date(2026, 1, 14)


def test_business_day_bounds_span_cutover_to_cutover() -> None:
    window = business_day_bounds(datetime(2026, 1, 15, 1, 0, tzinfo=CAIRO))

    assert window.start == datetime(2026, 1, 14, 4, 0, tzinfo=CAIRO)
    assert window.end == datetime(2026, 1, 15, 4, 0, tzinfo=CAIRO)
    assert window.contains(datetime(2026, 1, 15, 3, 59, tzinfo=CAIRO))
    assert not window.contains(datetime(2026, 1, 15, 4, 0, tzinfo=CAIRO))


def test_business_month_bounds_treat_first_day_before_cutover_as_previous_month() -> None:
    window = business_month_bounds(datetime(2026, 2, 1, 2, 0, tzinfo=CAIRO))

    assert window.start == datetime(2026, 1, 1, 4, 0, tzinfo=CAIRO)
    assert window.end == datetime(2026, 2, 1, 4, 0, tzinfo=CAIRO)


def test_business_month_bounds_roll_over_year_end() -> None:
    window = business_month_bounds(datetime(2026, 12, 15, 12, 0, tzinfo=CAIRO))

    assert window.start == datetime(2026, 12, 1, 4, 0, tzinfo=CAIRO)
    assert window.end == datetime(2027, 1, 1, 4, 0, tzinfo=CAIRO)


def test_date_range_with_cutover_includes_last_business_day() -> None:
    window = date_range_with_cutover(date(2026, 1, 10), date(2026, 1, 12))

    assert window.start == datetime(2026, 1, 10, 4, 0, tzinfo=CAIRO)
    assert window.end == datetime(2026, 1, 13, 4, 0, tzinfo=CAIRO)


def test_date_range_with_cutover_rejects_inverted_range() -> None:
    with pytest.raises(ValueError):
        date_range_with_cutover(date(2026, 1, 12), date(2026, 1, 10))


def test_month_window_counts_early_hours_of_next_month() -> None:
    window = business_month_bounds(datetime(2026, 1, 20, 12, 0, tzinfo=CAIRO))

    assert window.contains(datetime(2026, 2, 1, 3, 0, tzinfo=CAIRO))
    assert not window.contains(datetime(2026, 2, 1, 4, 0, tzinfo=CAIRO))
    assert not window.contains(datetime(2026, 1, 1, 3, 0, tzinfo=CAIRO))


def test_cutover_and_timezone_can_be_overridden() -> None:
    value = datetime(2026, 1, 15, 5, 0, tzinfo=timezone.utc)

    assert business_date_for(value, cutover_hour=6, tz_name="UTC") == date(2026, 1, 14)
    assert business_date_for(value, cutover_hour=0, tz_name="UTC") == date(2026, 1, 15)


def test_settings_drive_default_cutover(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUSINESS_DAY_CUTOVER_HOUR", "6")
    get_settings.cache_clear()

    assert business_date_for(datetime(2026, 1, 15, 5, 0, tzinfo=CAIRO)) == date(2026, 1, 14)


def test_invalid_cutover_hour_is_rejected() -> None:
    with pytest.raises(ValueError):
        business_day_bounds(datetime(2026, 1, 15, tzinfo=CAIRO), cutover_hour=24)
