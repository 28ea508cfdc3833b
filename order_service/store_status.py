"""Opening-hours status and pickup slots for a store.

Hours are weekly intervals in the store's local timezone; an interval whose
closing time is not after its opening time runs past midnight.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from . import config
from .models import Store, utcnow


@dataclass(frozen=True)
class StoreStatus:
    is_open: bool
    next_open_time: Optional[datetime] = None


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StoreStatusService:
    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        slot_interval_minutes: int = config.PICKUP_SLOT_INTERVAL_MINUTES,
        min_lead_minutes: int = config.MIN_PICKUP_LEAD_MINUTES,
        days_ahead: int = config.PICKUP_DAYS_AHEAD,
    ):
        self.clock = clock
        self.slot_interval = timedelta(minutes=slot_interval_minutes)
        self.min_lead = timedelta(minutes=min_lead_minutes)
        self.days_ahead = days_ahead

    def _intervals(self, store: Store, now: datetime):
        tz = ZoneInfo(store.timezone or "UTC")
        today = now.astimezone(tz).date()
        # Start a day early so intervals running past midnight are seen.
        for offset in range(-1, self.days_ahead + 1):
            day = today + timedelta(days=offset)
            for hours in store.hours:
                if hours.day_of_week != day.weekday():
                    continue
                start = datetime.combine(day, hours.opens_at, tzinfo=tz)
                end = datetime.combine(day, hours.closes_at, tzinfo=tz)
                if end <= start:
                    end += timedelta(days=1)
                yield as_utc(start), as_utc(end)

    def get_status(self, store: Store) -> StoreStatus:
        now = as_utc(self.clock())
        intervals = sorted(self._intervals(store, now))
        if any(start <= now < end for start, end in intervals):
            return StoreStatus(is_open=True)
        upcoming = [start for start, _ in intervals if start > now]
        return StoreStatus(is_open=False, next_open_time=upcoming[0] if upcoming else None)

    def get_available_pickup_slots(self, store: Store) -> List[datetime]:
        now = as_utc(self.clock())
        earliest = now + self.min_lead
        slots = set()
        for start, end in self._intervals(store, now):
            slot = start
            while slot < end:
                if slot > earliest:
                    slots.add(slot)
                slot += self.slot_interval

        status = self.get_status(store)
        if not status.is_open and status.next_open_time:
            # Matches the "after opening" rule enforced at checkout.
            slots = {slot for slot in slots if slot > status.next_open_time}
        return sorted(slots)
