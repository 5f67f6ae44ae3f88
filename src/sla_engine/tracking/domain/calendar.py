"""
Business Calendar
=================

Answers "is this instant business time?" and "how much business time lies
between two instants?" for a timezone, a set of working days and a daily
working-hours window.

Working windows are built from wall-clock times in the calendar's timezone
and converted to UTC before any arithmetic, so daylight-saving days of 23 or
25 hours are measured by the zone's own rules instead of a fixed offset.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, FrozenSet, Iterable, Iterator, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sla_engine.core import InvalidCalendar

ALL_DAYS: FrozenSet[int] = frozenset(range(7))

# 0=Sunday .. 6=Saturday, the numbering stored on policies
_DAY_NAMES = {
    "sun": 0, "sunday": 0,
    "mon": 1, "monday": 1,
    "tue": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3,
    "thu": 4, "thursday": 4,
    "fri": 5, "friday": 5,
    "sat": 6, "saturday": 6,
}

# Longest stretch add_business_minutes will search for working windows
MAX_PROJECTION_DAYS = 3660

_ZERO = timedelta(0)

_END_OF_DAY = ("24:00", "24:00:00")


def ensure_utc(instant: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_time_of_day(value: Any) -> time:
    """Parse "HH:MM" / "HH:MM:SS" (or a time). "24:00" means midnight."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise InvalidCalendar(f"Invalid time of day: {value!r}")
    text = value.strip()
    if text in _END_OF_DAY:
        return time(0)
    try:
        return time.fromisoformat(text)
    except ValueError as exc:
        raise InvalidCalendar(f"Invalid time of day: {value!r}") from exc


def parse_working_day(value: Any) -> int:
    """Parse a weekday as 0-6 (Sunday first) or an English day name."""
    if isinstance(value, bool):
        raise InvalidCalendar(f"Invalid working day: {value!r}")
    if isinstance(value, int):
        if value not in ALL_DAYS:
            raise InvalidCalendar(f"Working day out of range 0-6: {value}")
        return value
    if isinstance(value, str) and value.strip().lower() in _DAY_NAMES:
        return _DAY_NAMES[value.strip().lower()]
    raise InvalidCalendar(f"Invalid working day: {value!r}")


def _weekday(day: date) -> int:
    """Python's Monday=0 weekday shifted to Sunday=0."""
    return (day.weekday() + 1) % 7


@dataclass(frozen=True)
class BusinessCalendar:
    """
    Immutable working calendar.

    A calendar with business_hours_only=False is the "24/7" calendar: every
    instant counts. Otherwise only instants inside a working window of a
    working day count. A window whose end is not after its start spans
    midnight (e.g. 22:00-06:00); equal bounds mean the whole day, which
    build() only accepts when written as "00:00"-"24:00".
    """

    timezone: str = "UTC"
    working_days: FrozenSet[int] = ALL_DAYS
    work_start: time = time(0)
    work_end: time = time(0)
    business_hours_only: bool = False
    _zone: ZoneInfo = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidCalendar(f"Unknown timezone: {self.timezone!r}") from exc
        object.__setattr__(self, "_zone", zone)
        object.__setattr__(self, "working_days", frozenset(self.working_days))

        if self.business_hours_only and not self.working_days:
            raise InvalidCalendar(
                "Business-hours calendar needs at least one working day",
                {"timezone": self.timezone}
            )
        if not self.working_days <= ALL_DAYS:
            raise InvalidCalendar(f"Working days out of range: {sorted(self.working_days)}")

    @classmethod
    def always_open(cls, tz: str = "UTC") -> "BusinessCalendar":
        """The 24/7 calendar."""
        return cls(timezone=tz, business_hours_only=False)

    @classmethod
    def build(
        cls,
        tz: str,
        working_days: Iterable[Any],
        start: Any,
        end: Any,
        business_hours_only: bool = True,
    ) -> "BusinessCalendar":
        """
        Build a calendar from stored (string / name) representations.

        Raises:
            InvalidCalendar: On a bad timezone, day or time, or when a
                business-hours window opens and closes at the same time
        """
        work_start = parse_time_of_day(start)
        work_end = parse_time_of_day(end)
        ends_at_midnight = isinstance(end, str) and end.strip() in _END_OF_DAY
        if business_hours_only and work_start == work_end and not ends_at_midnight:
            raise InvalidCalendar(
                f"Empty working-hours window: {start}-{end}",
                {"timezone": tz}
            )
        return cls(
            timezone=tz,
            working_days=frozenset(parse_working_day(d) for d in working_days),
            work_start=work_start,
            work_end=work_end,
            business_hours_only=business_hours_only,
        )

    @property
    def spans_midnight(self) -> bool:
        return self.work_end <= self.work_start

    def _windows(self, first: date, last: date) -> Iterator[Tuple[datetime, datetime]]:
        """UTC [open, close) windows of the working days from first to last."""
        day = first
        one_day = timedelta(days=1)
        while day <= last:
            if _weekday(day) in self.working_days:
                opens = datetime.combine(day, self.work_start, tzinfo=self._zone)
                close_day = day + one_day if self.spans_midnight else day
                closes = datetime.combine(close_day, self.work_end, tzinfo=self._zone)
                yield opens.astimezone(timezone.utc), closes.astimezone(timezone.utc)
            day += one_day

    def _local_date(self, instant: datetime) -> date:
        return instant.astimezone(self._zone).date()

    def is_business_time(self, instant: datetime) -> bool:
        """Whether the instant falls inside a working window."""
        if not self.business_hours_only:
            return True

        moment = ensure_utc(instant)
        local = self._local_date(moment)
        # Yesterday's window may still be open when it spans midnight
        for opens, closes in self._windows(local - timedelta(days=1), local):
            if opens <= moment < closes:
                return True
        return False

    def business_time_between(self, start: datetime, end: datetime) -> timedelta:
        """
        Exact business time in [start, end).

        Never negative: end before start yields zero. Additive for
        start <= middle <= end.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            return _ZERO
        if not self.business_hours_only:
            return end - start

        total = _ZERO
        first = self._local_date(start) - timedelta(days=1)
        for opens, closes in self._windows(first, self._local_date(end)):
            overlap = min(closes, end) - max(opens, start)
            if overlap > _ZERO:
                total += overlap
        return total

    def business_minutes_between(self, start: datetime, end: datetime) -> float:
        """Business minutes in [start, end)."""
        return self.business_time_between(start, end).total_seconds() / 60

    def add_business_minutes(self, start: datetime, minutes: float) -> datetime:
        """
        Project the instant at which `minutes` of business time will have
        elapsed after `start`.

        Raises:
            InvalidCalendar: If no working window occurs within the
                projection horizon
        """
        start = ensure_utc(start)
        remaining = timedelta(minutes=minutes)
        if remaining <= _ZERO:
            return start
        if not self.business_hours_only:
            return start + remaining

        day = self._local_date(start) - timedelta(days=1)
        for _ in range(MAX_PROJECTION_DAYS):
            for opens, closes in self._windows(day, day):
                opens = max(opens, start)
                if closes <= opens:
                    continue
                available = closes - opens
                if remaining <= available:
                    return opens + remaining
                remaining -= available
            day += timedelta(days=1)

        raise InvalidCalendar(
            "Target cannot be reached within the projection horizon",
            {"timezone": self.timezone, "minutes": minutes}
        )
