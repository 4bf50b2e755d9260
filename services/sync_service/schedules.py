"""Per-source sync cadences."""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from typing import Dict, FrozenSet, Optional
from zoneinfo import ZoneInfo

from shared.config import get_schedule_timezone

WEEKDAYS = frozenset(range(5))


@dataclass(frozen=True)
class ActiveWindow:
    """Weekdays (Monday is 0) and a [start, end) hour range in a timezone."""

    weekdays: FrozenSet[int]
    start_hour: int
    end_hour: int
    tz: tzinfo

    def contains(self, moment: datetime) -> bool:
        local = moment.astimezone(self.tz)
        return local.weekday() in self.weekdays and self.start_hour <= local.hour < self.end_hour

    def next_start(self, moment: datetime) -> datetime:
        """First window start strictly after ``moment``."""
        local = moment.astimezone(self.tz)
        for offset in range(8):
            day = local.date() + timedelta(days=offset)
            if day.weekday() not in self.weekdays:
                continue
            start = datetime.combine(day, time(self.start_hour), tzinfo=self.tz)
            if start > local:
                return start
        raise ValueError("Active window has no weekdays")


@dataclass(frozen=True)
class Cadence:
    """
    How often one source syncs.

    Inside the active window the source runs every ``active_interval``;
    outside it every ``idle_interval``, but never later than the start of the
    next window. Without a window the active interval always applies.
    """

    active_interval: timedelta
    idle_interval: Optional[timedelta] = None
    window: Optional[ActiveWindow] = None

    def is_active(self, moment: datetime) -> bool:
        return self.window is None or self.window.contains(moment)

    def next_run(self, after: datetime) -> datetime:
        """
        When the next scheduled run is due.

        Args:
            after: Aware datetime the previous run was scheduled from

        Returns:
            Aware datetime of the next due run
        """
        if self.is_active(after) or self.idle_interval is None:
            return after + self.active_interval
        return min(after + self.idle_interval, self.window.next_start(after))


def default_cadences(tz: Optional[tzinfo] = None) -> Dict[str, Cadence]:
    """Default schedule: work sources follow office hours, the calendar does not."""
    tz = tz or ZoneInfo(get_schedule_timezone())
    office_hours = ActiveWindow(weekdays=WEEKDAYS, start_hour=9, end_hour=18, tz=tz)
    work = Cadence(
        active_interval=timedelta(minutes=10),
        idle_interval=timedelta(minutes=60),
        window=office_hours
    )
    return {
        "calendar": Cadence(active_interval=timedelta(minutes=15)),
        "shortcut": work,
        "github": work,
        "todoist": work,
        "figma": work,
    }
