"""Tests for business calendar arithmetic."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from sla_engine.core import InvalidCalendar
from sla_engine.tracking.domain import BusinessCalendar, CalendarSettings, TrackingPolicy


def weekday_calendar(tz: str = "UTC") -> BusinessCalendar:
    return BusinessCalendar.build(tz, [1, 2, 3, 4, 5], "08:00", "18:00")


class TestBusinessTime:

    def test_friday_afternoon_target_lands_on_monday(self):
        calendar = weekday_calendar()
        friday = datetime(2024, 1, 19, 16, 0, tzinfo=timezone.utc)

        due = calendar.add_business_minutes(friday, 480)

        assert due == datetime(2024, 1, 22, 14, 0, tzinfo=timezone.utc)
        assert calendar.business_minutes_between(friday, due) == 480

    def test_projection_uses_local_wall_clock(self):
        calendar = weekday_calendar("America/Sao_Paulo")
        zone = ZoneInfo("America/Sao_Paulo")
        friday = datetime(2024, 1, 19, 16, 0, tzinfo=zone)

        due = calendar.add_business_minutes(friday, 480)

        assert due.astimezone(zone) == datetime(2024, 1, 22, 14, 0, tzinfo=zone)

    def test_weekend_and_night_do_not_count(self):
        calendar = weekday_calendar()
        saturday = datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc)
        sunday_night = datetime(2024, 1, 21, 23, 0, tzinfo=timezone.utc)

        assert calendar.business_time_between(saturday, sunday_night) == timedelta(0)
        assert not calendar.is_business_time(saturday)
        assert calendar.is_business_time(datetime(2024, 1, 22, 8, 0, tzinfo=timezone.utc))
        assert not calendar.is_business_time(datetime(2024, 1, 22, 18, 0, tzinfo=timezone.utc))

    def test_reversed_interval_is_zero(self):
        calendar = weekday_calendar()
        start = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

        assert calendar.business_time_between(start, start - timedelta(hours=3)) == timedelta(0)

    def test_interval_is_additive(self):
        calendar = weekday_calendar("Europe/Berlin")
        start = datetime(2024, 3, 28, 15, 17, tzinfo=timezone.utc)
        end = datetime(2024, 4, 3, 9, 41, tzinfo=timezone.utc)
        whole = calendar.business_time_between(start, end)

        for hours in (1, 17, 40, 77, 120):
            middle = start + timedelta(hours=hours, minutes=13)
            parts = (
                calendar.business_time_between(start, middle)
                + calendar.business_time_between(middle, end)
            )
            assert parts == whole

    def test_always_open_counts_everything(self):
        calendar = BusinessCalendar.always_open()
        start = datetime(2024, 1, 20, 0, 0, tzinfo=timezone.utc)

        assert calendar.business_minutes_between(start, start + timedelta(days=2)) == 2880
        assert calendar.add_business_minutes(start, 90) == start + timedelta(minutes=90)

    def test_naive_datetimes_are_utc(self):
        calendar = weekday_calendar()

        assert calendar.business_minutes_between(
            datetime(2024, 1, 15, 9, 0), datetime(2024, 1, 15, 10, 30)
        ) == 90


class TestWindows:

    def test_window_spanning_midnight(self):
        calendar = BusinessCalendar.build("UTC", [1], "22:00", "06:00")
        monday_night = datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc)
        tuesday_morning = datetime(2024, 1, 16, 5, 0, tzinfo=timezone.utc)

        assert calendar.business_minutes_between(monday_night, tuesday_morning) == 360
        assert calendar.is_business_time(tuesday_morning)
        assert not calendar.is_business_time(datetime(2024, 1, 16, 7, 0, tzinfo=timezone.utc))

    def test_day_names_are_accepted(self):
        calendar = BusinessCalendar.build("UTC", ["Mon", "friday"], "09:00", "17:00")

        assert calendar.working_days == frozenset({1, 5})

    def test_spring_forward_day_is_23_hours(self):
        zone = ZoneInfo("America/New_York")
        calendar = BusinessCalendar.build("America/New_York", range(7), "00:00", "24:00")
        start = datetime(2024, 3, 10, 0, 0, tzinfo=zone)
        end = datetime(2024, 3, 11, 0, 0, tzinfo=zone)

        assert calendar.business_time_between(start, end) == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self):
        zone = ZoneInfo("America/New_York")
        calendar = BusinessCalendar.build("America/New_York", range(7), "00:00", "24:00")
        start = datetime(2024, 11, 3, 0, 0, tzinfo=zone)
        end = datetime(2024, 11, 4, 0, 0, tzinfo=zone)

        assert calendar.business_time_between(start, end) == timedelta(hours=25)

    def test_working_hours_keep_wall_clock_across_dst(self):
        calendar = weekday_calendar("America/New_York")
        # Friday before and Monday after the March switch
        friday = datetime(2024, 3, 8, 13, 0, tzinfo=timezone.utc)   # 08:00 EST
        monday = datetime(2024, 3, 11, 12, 0, tzinfo=timezone.utc)  # 08:00 EDT

        assert calendar.business_minutes_between(friday, monday) == 600


class TestInvalidCalendar:

    def test_unknown_timezone(self):
        with pytest.raises(InvalidCalendar):
            BusinessCalendar.build("Mars/Olympus_Mons", [1], "08:00", "18:00")

    def test_no_working_days(self):
        with pytest.raises(InvalidCalendar):
            BusinessCalendar.build("UTC", [], "08:00", "18:00")

    @pytest.mark.parametrize("value", ["25:00", "eight", 800])
    def test_bad_time_of_day(self, value):
        with pytest.raises(InvalidCalendar):
            BusinessCalendar.build("UTC", [1], value, "18:00")

    def test_day_out_of_range(self):
        with pytest.raises(InvalidCalendar):
            BusinessCalendar.build("UTC", [7], "08:00", "18:00")

    @pytest.mark.parametrize("bounds", [("09:00", "09:00"), ("00:00", "00:00")])
    def test_empty_working_window(self, bounds):
        with pytest.raises(InvalidCalendar, match="Empty working-hours window"):
            BusinessCalendar.build("UTC", [1, 2, 3, 4, 5], *bounds)

    def test_midnight_to_midnight_is_a_full_day(self):
        calendar = BusinessCalendar.build("UTC", [1], "00:00", "24:00")
        monday = datetime(2024, 1, 15, tzinfo=timezone.utc)

        assert calendar.business_minutes_between(monday, monday + timedelta(days=1)) == 1440

    def test_policy_with_empty_window_is_invalid(self):
        policy = TrackingPolicy(
            id="closed",
            response_time_minutes=30,
            calendar=CalendarSettings(working_hours={"start": "09:00", "end": "09:00"}),
        )

        with pytest.raises(InvalidCalendar):
            policy.business_calendar

    def test_policy_defers_calendar_errors(self):
        policy = TrackingPolicy(
            id="broken",
            response_time_minutes=30,
            calendar=CalendarSettings(timezone="Nowhere/Special"),
        )

        with pytest.raises(InvalidCalendar):
            policy.business_calendar
