"""
Shift window rules.
A named time-of-day interval that may cross midnight (e.g. 18:00 -> 06:00).
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

import pytz

from .errors import ValidationError

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]:[0-5][0-9]$")
MINUTES_PER_DAY = 24 * 60

BREAK_RANGE = (0, 240)
GRACE_RANGE = (0, 60)
OVERTIME_RANGE = (60, 1440)


def parse_time_of_day(value: Union[str, time], field: str = "time") -> time:
    """Parse an HH:MM:SS string (or pass through a time) to a naive time."""
    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ValidationError(
            "Times must be in HH:MM:SS format",
            code="INVALID_TIME_FORMAT",
            details={"field": field, "value": value},
        )
    hour, minute, second = (int(part) for part in value.split(":"))
    return time(hour, minute, second)


def _minute_of_day(t: Union[time, datetime]) -> int:
    return t.hour * 60 + t.minute


def _check_range(field: str, value: int, bounds: tuple) -> None:
    low, high = bounds
    if value is None or not low <= value <= high:
        raise ValidationError(
            f"{field} must be between {low} and {high}",
            code="OUT_OF_RANGE",
            details={"field": field, "value": value},
        )


@dataclass(frozen=True)
class ShiftWindow:
    name: str
    start_time: time
    end_time: time
    is_active: bool = True
    break_duration_minutes: int = 30
    grace_period_minutes: int = 15
    overtime_threshold_minutes: int = 480
    timezone: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "start_time", parse_time_of_day(self.start_time, "start_time"))
        object.__setattr__(self, "end_time", parse_time_of_day(self.end_time, "end_time"))
        if self.start_time == self.end_time:
            raise ValidationError(
                "Shift start and end time must differ",
                code="ZERO_LENGTH_SHIFT",
                details={"start_time": self.start_time.isoformat(), "end_time": self.end_time.isoformat()},
            )
        if self.duration_minutes() <= 0:
            raise ValidationError("Shift must last at least one minute", code="ZERO_LENGTH_SHIFT")
        _check_range("break_duration", self.break_duration_minutes, BREAK_RANGE)
        _check_range("grace_period", self.grace_period_minutes, GRACE_RANGE)
        _check_range("overtime_threshold", self.overtime_threshold_minutes, OVERTIME_RANGE)
        if self.timezone is not None:
            try:
                pytz.timezone(self.timezone)
            except pytz.UnknownTimeZoneError:
                raise ValidationError(f"Unknown timezone: {self.timezone}", code="INVALID_TIMEZONE")

    # -- geometry of the window --

    def crosses_midnight(self) -> bool:
        return self.end_time < self.start_time

    def duration_minutes(self) -> int:
        start = _minute_of_day(self.start_time)
        end = _minute_of_day(self.end_time)
        if self.crosses_midnight():
            end += MINUTES_PER_DAY
        return end - start

    # -- instants --

    def _localize(self, naive: datetime) -> datetime:
        if self.timezone is None:
            return naive
        return pytz.timezone(self.timezone).localize(naive)

    def align(self, instant: datetime) -> datetime:
        """
        Make an instant comparable with this window's scheduled instants.
        Aware windows treat naive input as local wall-clock time; naive
        windows take the wall clock of aware input.
        """
        if self.timezone is not None:
            if instant.tzinfo is None:
                return self._localize(instant)
            return instant.astimezone(pytz.timezone(self.timezone))
        if instant.tzinfo is not None:
            return instant.replace(tzinfo=None)
        return instant

    def scheduled_check_in(self, shift_date: date) -> datetime:
        return self._localize(datetime.combine(shift_date, self.start_time))

    def scheduled_check_out(self, shift_date: date) -> datetime:
        checkout_date = shift_date + timedelta(days=1) if self.crosses_midnight() else shift_date
        return self._localize(datetime.combine(checkout_date, self.end_time))

    def is_active_at(self, instant: datetime) -> bool:
        current = _minute_of_day(self.align(instant))
        start = _minute_of_day(self.start_time)
        end = _minute_of_day(self.end_time)
        if self.crosses_midnight():
            return current >= start or current <= end
        return start <= current <= end

    def ends_at(self, instant: datetime) -> bool:
        return _minute_of_day(self.align(instant)) == _minute_of_day(self.end_time)

    def is_late_check_in(self, check_in: datetime, shift_date: date, grace_minutes: Optional[int] = None) -> bool:
        """Strictly after scheduled start plus grace (window grace unless overridden)."""
        grace = self.grace_period_minutes if grace_minutes is None else grace_minutes
        deadline = self.scheduled_check_in(shift_date) + timedelta(minutes=grace)
        return self.align(check_in) > deadline

    def shift_date_for(self, instant: datetime) -> date:
        """
        Calendar date the shift containing this instant started on.
        The after-midnight part of a crossing window belongs to the previous day.
        """
        local = self.align(instant)
        current = _minute_of_day(local)
        if self.crosses_midnight() and current < _minute_of_day(self.start_time) and current <= _minute_of_day(self.end_time):
            return local.date() - timedelta(days=1)
        return local.date()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "is_active": self.is_active,
            "break_duration": self.break_duration_minutes,
            "grace_period": self.grace_period_minutes,
            "overtime_threshold": self.overtime_threshold_minutes,
            "crossesMidnight": self.crosses_midnight(),
            "durationMinutes": self.duration_minutes(),
        }


def window_from_shift(shift, timezone: Optional[str] = None) -> ShiftWindow:
    """Build a ShiftWindow value from a Shift row."""
    return ShiftWindow(
        id=str(shift.id) if shift.id is not None else None,
        name=shift.name,
        start_time=shift.start_time,
        end_time=shift.end_time,
        is_active=bool(shift.is_active),
        break_duration_minutes=shift.break_duration if shift.break_duration is not None else 30,
        grace_period_minutes=shift.grace_period if shift.grace_period is not None else 15,
        overtime_threshold_minutes=shift.overtime_threshold if shift.overtime_threshold is not None else 480,
        timezone=timezone,
    )


def find_current_window(windows, instant: datetime) -> Optional[ShiftWindow]:
    """
    Active window covering the instant, in the given order.
    At a handover minute (18:00 for Day/Night) the window that is starting
    wins over the one that is ending.
    """
    covering = [w for w in windows if w.is_active and w.is_active_at(instant)]
    for window in covering:
        if not window.ends_at(instant):
            return window
    return covering[0] if covering else None


DEFAULT_SHIFTS = (
    {
        "name": "Day Shift",
        "start_time": "06:00:00",
        "end_time": "18:00:00",
        "color_code": "#FFA500",
        "description": "Standard day shift (6 AM to 6 PM)",
    },
    {
        "name": "Night Shift",
        "start_time": "18:00:00",
        "end_time": "06:00:00",
        "color_code": "#191970",
        "description": "Night shift with midnight crossover (6 PM to 6 AM)",
    },
)
