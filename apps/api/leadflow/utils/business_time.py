"""Business-day and business-month windows.

Staff work evening shifts that run past midnight, so a business day does not
start at 00:00. It starts at a fixed cutover hour (04:00 by default) in the
tenant's business timezone and lasts until the same hour on the next day.
Months follow the same rule: the January window runs from Jan 1 04:00 to
Feb 1 04:00.

Every function here is pure. ``now`` can be passed explicitly, and naive
datetimes are read as wall-clock time in the business timezone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from leadflow.core.config import get_settings


@dataclass(frozen=True, slots=True)
class BusinessWindow:
    start: datetime
    end: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end


def _zone(tz_name: str | None) -> ZoneInfo:
    return ZoneInfo(tz_name or get_settings().business_timezone)


def _cutover(cutover_hour: int | None) -> int:
    hour = get_settings().business_day_cutover_hour if cutover_hour is None else cutover_hour
    if not 0 <= hour <= 23:
        raise ValueError("cutover_hour must be between 0 and 23")
    return hour


def _localize(value: datetime | None, zone: ZoneInfo) -> datetime:
    if value is None:
        return datetime.now(timezone.utc).astimezone(zone)
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def _at_cutover(day: date, hour: int, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time(hour=hour), tzinfo=zone)


def _add_months(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) + months
    return date(month_index // 12, month_index % 12 + 1, 1)


def business_date_for(
    value: datetime | None = None,
    *,
    cutover_hour: int | None = None,
    tz_name: str | None = None,
) -> date:
    """Return the business date a timestamp belongs to.

    Anything before the cutover hour counts toward the previous day.
    """
    zone = _zone(tz_name)
    hour = _cutover(cutover_hour)
    local = _localize(value, zone)
    if local.hour < hour:
        return local.date() - timedelta(days=1)
    return local.date()


def business_day_bounds(
    now: datetime | None = None,
    *,
    cutover_hour: int | None = None,
    tz_name: str | None = None,
) -> BusinessWindow:
    zone = _zone(tz_name)
    hour = _cutover(cutover_hour)
    day = business_date_for(now, cutover_hour=hour, tz_name=zone.key)
    return BusinessWindow(
        start=_at_cutover(day, hour, zone),
        end=_at_cutover(day + timedelta(days=1), hour, zone),
    )


def business_month_bounds(
    now: datetime | None = None,
    *,
    cutover_hour: int | None = None,
    tz_name: str | None = None,
) -> BusinessWindow:
    zone = _zone(tz_name)
    hour = _cutover(cutover_hour)
    local = _localize(now, zone)

    first_of_month = local.date().replace(day=1)
    if local.day == 1 and local.hour < hour:
        first_of_month = _add_months(first_of_month, -1)

    return BusinessWindow(
        start=_at_cutover(first_of_month, hour, zone),
        end=_at_cutover(_add_months(first_of_month, 1), hour, zone),
    )


def date_range_with_cutover(
    from_date: date,
    to_date: date,
    *,
    cutover_hour: int | None = None,
    tz_name: str | None = None,
) -> BusinessWindow:
    """Window covering every business day from ``from_date`` to ``to_date`` inclusive."""
    if to_date < from_date:
        raise ValueError("to_date must be on or after from_date")
    zone = _zone(tz_name)
    hour = _cutover(cutover_hour)
    return BusinessWindow(
        start=_at_cutover(from_date, hour, zone),
        end=_at_cutover(to_date + timedelta(days=1), hour, zone),
    )
