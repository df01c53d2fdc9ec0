"""Candidate slot generation for a practitioner's working day."""

from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, NamedTuple

from medbook.core.exceptions import ValidationError

DEFAULT_START_HOUR = 9
DEFAULT_END_HOUR = 17
DEFAULT_SLOT_DURATION_MINUTES = 30
DEFAULT_BREAK_HOURS = (12,)


class CandidateSlot(NamedTuple):
    start_time: time
    end_time: time


def generate_slots(
    start_hour: int,
    end_hour: int,
    duration_minutes: int,
    excluded_hours: Iterable[int] | None = None,
    target_date: date | None = None,
) -> Iterator[CandidateSlot]:
    """Return a one-shot iterator of candidate slots covering ``[start_hour, end_hour)``.

    Steps whose start hour is excluded are skipped, and a trailing slot that
    would end after ``end_hour`` is dropped. A non-positive duration or an
    empty shift yields nothing.
    """
    for hour in (start_hour, end_hour):
        if not 0 <= hour <= 23:
            raise ValidationError(
                'Shift hours must be between 0 and 23.',
                code='invalid_shift_hours',
                details={'start_hour': start_hour, 'end_hour': end_hour},
            )

    if duration_minutes <= 0 or start_hour >= end_hour:
        return iter(())

    excluded = {hour for hour in (excluded_hours or ()) if start_hour <= hour < end_hour}
    return _iterate_slots(start_hour, end_hour, duration_minutes, excluded, target_date or date(2000, 1, 1))


def _iterate_slots(
    start_hour: int,
    end_hour: int,
    duration_minutes: int,
    excluded: set[int],
    anchor: date,
) -> Iterator[CandidateSlot]:
    # The anchor day only carries the arithmetic; slots never cross midnight.
    step = timedelta(minutes=duration_minutes)
    cursor = datetime.combine(anchor, time(start_hour))
    shift_end = datetime.combine(anchor, time(end_hour))

    while cursor + step <= shift_end:
        if cursor.hour not in excluded:
            yield CandidateSlot(cursor.time(), (cursor + step).time())
        cursor += step
