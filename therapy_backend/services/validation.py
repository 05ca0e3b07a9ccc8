import re
from datetime import date, datetime, time

from therapy_backend.core.errors import InvalidInput

CLOCK_TIME_PATTERN = re.compile(r'^\d{2}:\d{2}:\d{2}$')
CALENDAR_DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def parse_clock_time(value: str | time, field_name: str = 'time') -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if not isinstance(value, str) or not CLOCK_TIME_PATTERN.match(value):
        raise InvalidInput(f'Invalid {field_name} {value!r}: expected HH:MM:SS.')
    try:
        return datetime.strptime(value, '%H:%M:%S').time()
    except ValueError as exc:
        raise InvalidInput(f'Invalid {field_name} {value!r}: expected HH:MM:SS.') from exc


def parse_calendar_date(value: str | date | None, field_name: str = 'date') -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not CALENDAR_DATE_PATTERN.match(value):
        raise InvalidInput(f'Please provide a valid {field_name} in YYYY-MM-DD format.')
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInput(f'Please provide a valid {field_name} in YYYY-MM-DD format.') from exc


def parse_time_range(start: str | time, end: str | time) -> tuple[time, time]:
    start_time = parse_clock_time(start, 'start time')
    end_time = parse_clock_time(end, 'end time')
    if end_time <= start_time:
        raise InvalidInput(f'End time {end_time.isoformat()} must be after start time {start_time.isoformat()}.')
    return start_time, end_time
