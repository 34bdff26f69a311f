from zoneinfo import ZoneInfo

from booking_api.scheduling.timestamps import parse_instant
from booking_api.scheduling.windows import VirtualSlot, Window

WEEKDAY_ABBREVIATIONS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
WEEKDAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


def format_window_label(window: Window, timezone_name: str) -> str:
    """Short label such as ``Tue 27/01 08:00–09:00`` in ``timezone_name``."""
    zone = ZoneInfo(timezone_name)
    start = parse_instant(window.start_time).astimezone(zone)
    end = parse_instant(window.end_time).astimezone(zone)
    weekday = WEEKDAY_ABBREVIATIONS[start.weekday()]
    return f'{weekday} {start:%d/%m %H:%M}–{end:%H:%M}'


def label_windows(windows: list[Window], timezone_name: str) -> list[Window]:
    for window in windows:
        window.label = format_window_label(window, timezone_name)
    return windows


def group_windows_by_date(windows: list[Window], timezone_name: str) -> list[dict]:
    """Group windows by local date for the slots endpoint."""
    zone = ZoneInfo(timezone_name)
    hours_by_date: dict[str, list[dict]] = {}
    day_names: dict[str, str] = {}

    for window in windows:
        start = parse_instant(window.start_time).astimezone(zone)
        end = parse_instant(window.end_time).astimezone(zone)
        date_key = start.date().isoformat()
        day_names.setdefault(date_key, WEEKDAY_NAMES[start.weekday()])

        hour = {
            'start': f'{start:%H:%M}',
            'end': f'{end:%H:%M}',
            'id': window.slot_ids[0] if window.slot_refs else VirtualSlot(start).token,
        }
        hours = hours_by_date.setdefault(date_key, [])
        if hour not in hours:
            hours.append(hour)

    return [
        {
            'day': day_names[date_key],
            'date': date_key,
            'hours': sorted(hours_by_date[date_key], key=lambda hour: hour['start']),
        }
        for date_key in sorted(hours_by_date)
    ]
