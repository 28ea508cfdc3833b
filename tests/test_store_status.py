from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace

from conftest import FixedClock
from order_service.store_status import StoreStatusService, as_utc


def store(hours, tz="UTC"):
    return SimpleNamespace(
        timezone=tz,
        hours=[SimpleNamespace(day_of_week=day, opens_at=opens, closes_at=closes) for day, opens, closes in hours],
    )


WEEKDAYS = store([(day, time(10, 0), time(18, 0)) for day in range(5)])

# 2024-01-01 is a Monday.
MONDAY = datetime(2024, 1, 1, tzinfo=timezone.utc)


def service_at(now, **kwargs):
    return StoreStatusService(clock=FixedClock(now), **kwargs)


def test_open_during_hours():
    status = service_at(MONDAY.replace(hour=11)).get_status(WEEKDAYS)

    assert status.is_open
    assert status.next_open_time is None


def test_closed_after_hours_reports_next_opening():
    status = service_at(MONDAY.replace(hour=19)).get_status(WEEKDAYS)

    assert not status.is_open
    assert status.next_open_time == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)


def test_closing_time_is_exclusive():
    assert not service_at(MONDAY.replace(hour=18)).get_status(WEEKDAYS).is_open


def test_weekend_skips_to_monday():
    saturday = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)

    status = service_at(saturday).get_status(WEEKDAYS)

    assert status.next_open_time == datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)


def test_overnight_interval_counts_after_midnight():
    bar = store([(4, time(20, 0), time(2, 0))])  # Friday 20:00 to Saturday 02:00
    saturday_1am = datetime(2024, 1, 6, 1, 0, tzinfo=timezone.utc)

    assert service_at(saturday_1am).get_status(bar).is_open


def test_store_timezone_is_respected():
    berlin = store([(0, time(10, 0), time(18, 0))], tz="Europe/Berlin")

    # 09:30 UTC is 10:30 in Berlin in winter.
    assert service_at(MONDAY.replace(hour=9, minute=30)).get_status(berlin).is_open
    assert not service_at(MONDAY.replace(hour=17, minute=30)).get_status(berlin).is_open


def test_slots_respect_lead_time_strictly():
    now = MONDAY.replace(hour=12)
    slots = service_at(now, days_ahead=0).get_available_pickup_slots(WEEKDAYS)

    assert slots[0] == MONDAY.replace(hour=12, minute=45)
    assert MONDAY.replace(hour=12, minute=30) not in slots
    assert slots[-1] == MONDAY.replace(hour=17, minute=45)
    assert all(b - a == timedelta(minutes=15) for a, b in zip(slots, slots[1:]))


def test_slots_when_closed_start_after_opening():
    slots = service_at(MONDAY.replace(hour=20), days_ahead=1).get_available_pickup_slots(WEEKDAYS)

    assert slots[0] == datetime(2024, 1, 2, 10, 15, tzinfo=timezone.utc)


def test_no_hours_means_closed_without_next_opening():
    status = service_at(MONDAY).get_status(store([]))

    assert not status.is_open
    assert status.next_open_time is None


def test_as_utc_treats_naive_as_utc():
    assert as_utc(datetime(2024, 1, 1, 12)) == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
