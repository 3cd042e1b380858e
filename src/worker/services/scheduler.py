"""Whole-time scheduling.

Indicators run on clock-aligned boundaries (xx:00, xx:15, ... for 15 minutes; 00:00,
06:00, ... for 6 hours) rather than "N minutes after the last run", so indicators
sharing a frequency fire together and schedules stay predictable.

All functions here are pure: no I/O, no clock reads.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from src.worker.errors import InvalidFrequency
from src.worker.schemas.common import EPOCH, as_utc
from src.worker.schemas.indicators import Indicator

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440


# PUBLIC_INTERFACE
def validate_frequency(frequency_minutes: object, indicator_id: Optional[str] = None) -> int:
    """Return the frequency as an int, raising InvalidFrequency for non-positive or non-integer input."""
    if isinstance(frequency_minutes, bool) or not isinstance(frequency_minutes, int) or frequency_minutes <= 0:
        raise InvalidFrequency(frequency_minutes, indicator_id)
    return frequency_minutes


def _next_minute_of_hour(ref: datetime, interval: int) -> datetime:
    hour_start = ref.replace(minute=0, second=0, microsecond=0)
    next_minute = (ref.minute // interval + 1) * interval
    if next_minute >= MINUTES_PER_HOUR:
        return hour_start + timedelta(hours=1)
    return hour_start + timedelta(minutes=next_minute)


def _next_hour_of_day(ref: datetime, interval_hours: int) -> datetime:
    midnight = ref.replace(hour=0, minute=0, second=0, microsecond=0)
    next_hour = (ref.hour // interval_hours + 1) * interval_hours
    if next_hour >= 24:
        return midnight + timedelta(days=1)
    return midnight + timedelta(hours=next_hour)


def _next_midnight(ref: datetime) -> datetime:
    return ref.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def _next_epoch_multiple(ref: datetime, interval: int) -> datetime:
    step = timedelta(minutes=interval)
    elapsed = ref - EPOCH
    periods = elapsed // step
    return EPOCH + (periods + 1) * step


# PUBLIC_INTERFACE
def next_run(frequency_minutes: int, reference_time: datetime) -> datetime:
    """
    Return the first whole-time boundary strictly after reference_time.

    - frequency < 60: next minute-of-hour that is a multiple of the frequency
    - multiple of 60 below a day: next hour-of-day that is a multiple of frequency/60
    - 1440: next UTC midnight
    - anything else: next multiple of the frequency counted from the Unix epoch
    """
    freq = validate_frequency(frequency_minutes)
    ref = as_utc(reference_time)

    if freq < MINUTES_PER_HOUR:
        return _next_minute_of_hour(ref, freq)
    if freq % MINUTES_PER_HOUR == 0 and freq < MINUTES_PER_DAY:
        return _next_hour_of_day(ref, freq // MINUTES_PER_HOUR)
    if freq == MINUTES_PER_DAY:
        return _next_midnight(ref)
    return _next_epoch_multiple(ref, freq)


# PUBLIC_INTERFACE
def is_due(indicator: Indicator, now: datetime) -> bool:
    """True when now has reached the boundary following the indicator's last run (never-run indicators are due)."""
    last = indicator.last_run or EPOCH
    return as_utc(now) >= next_run(validate_frequency(indicator.frequency_minutes, indicator.id), last)


# PUBLIC_INTERFACE
def describe_schedule(frequency_minutes: int) -> str:
    """Human-readable description of a whole-time schedule."""
    freq = validate_frequency(frequency_minutes)
    if freq == 1:
        return "Every minute at xx:00 seconds"
    if freq == MINUTES_PER_HOUR:
        return "Every hour at xx:00"
    if freq == MINUTES_PER_DAY:
        return "Daily at 00:00"
    if freq < MINUTES_PER_HOUR:
        marks = [f"xx:{m:02d}" for m in range(0, MINUTES_PER_HOUR, freq)]
        shown = ", ".join(marks[:4]) + (", etc." if len(marks) > 4 else "")
        return f"Every {freq} minutes ({shown})"
    if freq % MINUTES_PER_HOUR == 0 and freq < MINUTES_PER_DAY:
        hours = freq // MINUTES_PER_HOUR
        marks = [f"{h:02d}:00" for h in range(0, 24, hours)]
        shown = ", ".join(marks[:4]) + (", etc." if len(marks) > 4 else "")
        return f"Every {hours} hours ({shown})"
    return f"Every {freq} minutes at epoch-aligned boundaries"
