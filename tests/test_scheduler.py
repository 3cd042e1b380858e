from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.worker.errors import InvalidFrequency
from src.worker.services.scheduler import describe_schedule, is_due, next_run, validate_frequency


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "freq, ref, expected",
    [
        (15, _utc(2024, 1, 1, 10, 7), _utc(2024, 1, 1, 10, 15)),
        (15, _utc(2024, 1, 1, 10, 15), _utc(2024, 1, 1, 10, 30)),
        (5, _utc(2024, 1, 1, 10, 58, 30), _utc(2024, 1, 1, 11, 0)),
        (1, _utc(2024, 1, 1, 10, 7, 59), _utc(2024, 1, 1, 10, 8)),
        (30, _utc(2024, 1, 1, 23, 45), _utc(2024, 1, 2, 0, 0)),
    ],
)
def test_minute_frequencies_align_to_minute_of_hour(freq, ref, expected):
    assert next_run(freq, ref) == expected


def test_non_divisor_minute_frequency_restarts_each_hour():
    assert next_run(7, _utc(2024, 1, 1, 10, 55)) == _utc(2024, 1, 1, 10, 56)
    assert next_run(7, _utc(2024, 1, 1, 10, 57)) == _utc(2024, 1, 1, 11, 0)


def test_hourly_frequencies_align_to_hour_of_day():
    assert next_run(60, _utc(2024, 1, 1, 10, 0)) == _utc(2024, 1, 1, 11, 0)
    assert next_run(360, _utc(2024, 1, 1, 7, 10)) == _utc(2024, 1, 1, 12, 0)
    assert next_run(360, _utc(2024, 1, 1, 19, 0)) == _utc(2024, 1, 2, 0, 0)


def test_daily_frequency_is_next_midnight():
    assert next_run(1440, _utc(2024, 1, 1, 23, 59)) == _utc(2024, 1, 2, 0, 0)
    assert next_run(1440, _utc(2024, 1, 2, 0, 0)) == _utc(2024, 1, 3, 0, 0)


def test_other_frequencies_use_epoch_multiples():
    # 2024-01-01T00:00Z is an exact multiple of 90 minutes since the epoch.
    assert next_run(90, _utc(2024, 1, 1, 0, 10)) == _utc(2024, 1, 1, 1, 30)
    assert next_run(90, _utc(2024, 1, 1, 1, 30)) == _utc(2024, 1, 1, 3, 0)


def test_naive_reference_is_treated_as_utc():
    assert next_run(15, datetime(2024, 1, 1, 10, 7)) == _utc(2024, 1, 1, 10, 15)


def test_next_run_is_strictly_after_reference():
    ref = _utc(2024, 1, 1, 10, 0)
    for freq in (1, 5, 15, 60, 120, 1440, 90, 7):
        assert next_run(freq, ref) > ref


@pytest.mark.parametrize("bad", [0, -5, True, 1.5, "15", None])
def test_invalid_frequency_rejected(bad):
    with pytest.raises(InvalidFrequency):
        next_run(bad, _utc(2024, 1, 1))


def test_invalid_frequency_is_a_value_error_naming_the_indicator():
    with pytest.raises(ValueError) as exc:
        validate_frequency(0, "cpu")
    assert "cpu" in str(exc.value)


def test_is_due_transitions(make_indicator):
    never_run = make_indicator(frequency_minutes=15)
    assert is_due(never_run, _utc(2024, 1, 1, 10, 1)) is True

    ind = make_indicator(frequency_minutes=15, last_run=_utc(2024, 1, 1, 10, 0))
    assert is_due(ind, _utc(2024, 1, 1, 10, 14, 59)) is False
    assert is_due(ind, _utc(2024, 1, 1, 10, 15)) is True
    assert is_due(ind, _utc(2024, 1, 1, 12, 0)) is True


def test_is_due_rejects_invalid_frequency(make_indicator):
    with pytest.raises(InvalidFrequency):
        is_due(make_indicator(frequency_minutes=0), _utc(2024, 1, 1))


def test_describe_schedule():
    assert describe_schedule(1) == "Every minute at xx:00 seconds"
    assert describe_schedule(15) == "Every 15 minutes (xx:00, xx:15, xx:30, xx:45)"
    assert describe_schedule(5).endswith("etc.)")
    assert describe_schedule(60) == "Every hour at xx:00"
    assert describe_schedule(360) == "Every 6 hours (00:00, 06:00, 12:00, 18:00)"
    assert describe_schedule(1440) == "Daily at 00:00"
    assert "epoch" in describe_schedule(90)
