"""Turn weekly availability into concrete, bookable time windows.

Two strategies live here:

* ``generate_service_windows`` projects weekly ``AvailabilityRule`` rows onto
  each local calendar day of a range and emits back-to-back windows of the
  service duration.
* ``build_service_windows_from_base_slots`` composes windows out of
  pre-existing fixed-size base slots, sliding over them positionally.

All arithmetic happens on UTC instants; the target time zone is only used to
find local days, wall-clock boundaries and the lead-time grid.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Protocol, Sequence
from zoneinfo import ZoneInfo

from booking_api.scheduling.timestamps import instant_key, parse_clock, parse_instant

logger = logging.getLogger(__name__)

VIRTUAL_SLOT_PREFIX = 'virtual-'


@dataclass(frozen=True)
class VirtualSlot:
    """A slot that exists only in memory, identified by its start instant."""
    instant: datetime

    @property
    def token(self) -> str:
        return f'{VIRTUAL_SLOT_PREFIX}{instant_key(self.instant)}'

    def __str__(self) -> str:
        return self.token


@dataclass(frozen=True)
class PersistedSlot:
    """A slot backed by a row in ``slots``."""
    id: int | str

    def __str__(self) -> str:
        return str(self.id)


SlotRef = VirtualSlot | PersistedSlot


@dataclass(frozen=True)
class BaseSlot:
    id: int | str | None
    professional_id: int | None
    start_time: datetime
    end_time: datetime
    is_available: bool = True

    @property
    def ref(self) -> SlotRef:
        if self.id is None:
            return VirtualSlot(parse_instant(self.start_time))
        return PersistedSlot(self.id)


@dataclass
class Window:
    start_time: datetime
    end_time: datetime
    slot_refs: list[SlotRef] = field(default_factory=list)
    label: str | None = None

    @property
    def slot_ids(self) -> list[str]:
        return [str(ref) for ref in self.slot_refs]

    @property
    def is_virtual(self) -> bool:
        return any(isinstance(ref, VirtualSlot) for ref in self.slot_refs)

    def with_refs(self, slot_refs: list[SlotRef]) -> 'Window':
        return replace(self, slot_refs=list(slot_refs))


class WeeklyRule(Protocol):
    day_of_week: int
    start_time: str
    end_time: str


def rule_weekday(day: date) -> int:
    """Weekday in availability numbering (0=Sunday .. 6=Saturday)."""
    return (day.weekday() + 1) % 7


def select_rule(rules: Sequence[WeeklyRule], day_of_week: int) -> WeeklyRule | None:
    matches = [rule for rule in rules if rule.day_of_week == day_of_week]
    if not matches:
        return None
    if len(matches) > 1:
        # Overlapping rules for one weekday have no defined precedence.
        logger.warning(
            'Found %d availability rules for day_of_week=%d; using the first one',
            len(matches),
            day_of_week,
        )
    return matches[0]


def local_datetime(day: date, clock: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, clock, tzinfo=zone)


def passes_lead_time(
    window_start: datetime,
    now: datetime,
    zone: ZoneInfo,
    slot_step_minutes: int,
    min_lead_minutes: int = 0,
) -> bool:
    """Check a window start against ``now + min_lead_minutes``.

    On the threshold's own local day the threshold is rounded up to the next
    ``slot_step_minutes`` boundary since local midnight, so same-day windows
    stay on the slot grid. Other days compare directly: earlier days are in
    the past, later days are always bookable.
    """
    threshold = (parse_instant(now) + timedelta(minutes=min_lead_minutes or 0)).astimezone(zone)
    local_start = parse_instant(window_start).astimezone(zone)

    if local_start.date() != threshold.date():
        return local_start.astimezone(timezone.utc) >= threshold.astimezone(timezone.utc)

    midnight = local_datetime(threshold.date(), time.min, zone)
    seconds_since_midnight = threshold.hour * 3600 + threshold.minute * 60 + threshold.second
    step_seconds = slot_step_minutes * 60
    rounded_minutes = math.ceil(seconds_since_midnight / step_seconds) * slot_step_minutes
    rounded = midnight + timedelta(minutes=rounded_minutes)

    return local_start.astimezone(timezone.utc) >= rounded.astimezone(timezone.utc)


def closing_cutoff(window_start: datetime, closing_time: time, zone: ZoneInfo) -> datetime:
    """UTC instant of ``closing_time`` on the local day ``window_start`` falls on."""
    local_day = parse_instant(window_start).astimezone(zone).date()
    return local_datetime(local_day, closing_time, zone).astimezone(timezone.utc)


def build_service_windows_from_base_slots(
    base_slots: Iterable[BaseSlot],
    duration_minutes: int,
    slot_step_minutes: int,
    now: datetime | str,
    closing_time: str,
    timezone_name: str,
    min_lead_minutes: int | None = None,
) -> list[Window]:
    """Compose service windows from runs of contiguous, available base slots.

    Every start position is tried, so overlapping windows are all returned;
    picking a non-overlapping subset is up to the caller.
    """
    slots = sorted(base_slots, key=lambda slot: parse_instant(slot.start_time))
    if not slots or duration_minutes <= 0 or slot_step_minutes <= 0:
        logger.debug('No base slots to compose (duration=%s, step=%s)', duration_minutes, slot_step_minutes)
        return []

    zone = ZoneInfo(timezone_name)
    closing = parse_clock(closing_time)
    needed = math.ceil(duration_minutes / slot_step_minutes)
    step = timedelta(minutes=slot_step_minutes)
    duration = timedelta(minutes=duration_minutes)
    now_utc = parse_instant(now)
    windows: list[Window] = []
    rejected: dict[str, int] = {}

    for index in range(max(len(slots) - needed + 1, 0)):
        group = slots[index:index + needed]

        if not all(slot.is_available for slot in group):
            rejected['unavailable'] = rejected.get('unavailable', 0) + 1
            continue

        starts = [parse_instant(slot.start_time) for slot in group]
        if any(current - previous != step for previous, current in zip(starts, starts[1:])):
            rejected['not_contiguous'] = rejected.get('not_contiguous', 0) + 1
            continue

        window_start = starts[0]
        window_end = window_start + duration

        if not passes_lead_time(window_start, now_utc, zone, slot_step_minutes, min_lead_minutes or 0):
            rejected['lead_time'] = rejected.get('lead_time', 0) + 1
            continue

        if window_end > closing_cutoff(window_start, closing, zone):
            rejected['after_closing'] = rejected.get('after_closing', 0) + 1
            continue

        windows.append(Window(window_start, window_end, [slot.ref for slot in group]))

    logger.debug(
        'Composed %d windows from %d base slots (needed=%d, rejected=%s)',
        len(windows),
        len(slots),
        needed,
        rejected,
    )
    return windows


def generate_service_windows(
    rules: Sequence[WeeklyRule],
    duration_minutes: int,
    range_start: datetime | str,
    range_end: datetime | str,
    timezone_name: str,
    closing_time: str,
    now: datetime | str,
    min_lead_minutes: int = 0,
    occupied: Iterable[str] = (),
    slot_step_minutes: int = 15,
    busy: Iterable[tuple[datetime, datetime]] = (),
) -> list[Window]:
    """Emit back-to-back windows of ``duration_minutes`` for every rule day.

    Windows start at the rule's start time and advance by the duration until
    the next one would end after ``closing_time``. Only windows whose start is
    inside ``[range_start, range_end]``, past the lead time, not in
    ``occupied`` (instant keys) and not overlapping any ``busy`` range are
    kept.
    """
    if duration_minutes <= 0:
        raise ValueError('duration_minutes must be positive')
    if not rules:
        return []

    zone = ZoneInfo(timezone_name)
    closing = parse_clock(closing_time)
    start_utc = parse_instant(range_start)
    end_utc = parse_instant(range_end)
    now_utc = parse_instant(now)
    occupied_keys = set(occupied)
    busy_ranges = [(parse_instant(start), parse_instant(end)) for start, end in busy]
    duration = timedelta(minutes=duration_minutes)

    windows: list[Window] = []
    current_day = start_utc.astimezone(zone).date()
    last_day = end_utc.astimezone(zone).date()

    while current_day <= last_day:
        rule = select_rule(rules, rule_weekday(current_day))

        if rule is not None:
            day_end = local_datetime(current_day, parse_clock(rule.end_time), zone).astimezone(timezone.utc)
            day_closing = local_datetime(current_day, closing, zone).astimezone(timezone.utc)
            slot_start = local_datetime(current_day, parse_clock(rule.start_time), zone).astimezone(timezone.utc)

            while slot_start < day_end:
                slot_end = slot_start + duration
                if slot_end > day_closing:
                    break

                if (
                    start_utc <= slot_start <= end_utc
                    and passes_lead_time(slot_start, now_utc, zone, slot_step_minutes, min_lead_minutes)
                    and instant_key(slot_start) not in occupied_keys
                    and not overlaps_any(slot_start, slot_end, busy_ranges)
                ):
                    windows.append(Window(slot_start, slot_end, [VirtualSlot(slot_start)]))

                slot_start = slot_end

        current_day += timedelta(days=1)

    logger.debug(
        'Generated %d windows of %d minutes between %s and %s (%s)',
        len(windows),
        duration_minutes,
        start_utc.isoformat(),
        end_utc.isoformat(),
        timezone_name,
    )
    return windows


def generate_unit_slots(
    rules: Sequence[WeeklyRule],
    range_start: datetime | str,
    range_end: datetime | str,
    timezone_name: str,
    slot_step_minutes: int,
    professional_id: int | None = None,
) -> list[BaseSlot]:
    """Virtual ``slot_step_minutes`` units covering each rule, inside the range."""
    if slot_step_minutes <= 0 or not rules:
        return []

    zone = ZoneInfo(timezone_name)
    start_utc = parse_instant(range_start)
    end_utc = parse_instant(range_end)
    step = timedelta(minutes=slot_step_minutes)

    units: list[BaseSlot] = []
    current_day = start_utc.astimezone(zone).date()
    last_day = end_utc.astimezone(zone).date()

    while current_day <= last_day:
        rule = select_rule(rules, rule_weekday(current_day))

        if rule is not None:
            day_end = local_datetime(current_day, parse_clock(rule.end_time), zone).astimezone(timezone.utc)
            unit_start = local_datetime(current_day, parse_clock(rule.start_time), zone).astimezone(timezone.utc)

            while unit_start < day_end:
                unit_end = unit_start + step
                if start_utc <= unit_start <= end_utc:
                    units.append(BaseSlot(None, professional_id, unit_start, unit_end, True))
                unit_start = unit_end
        else:
            logger.debug('No availability for %s (day_of_week=%d)', current_day, rule_weekday(current_day))

        current_day += timedelta(days=1)

    return units


def occupied_instant_keys(rows: Iterable) -> set[str]:
    """Instant keys of already-booked rows (anything with ``start_time``)."""
    return {instant_key(row.start_time) for row in rows}


def occupied_ranges(rows: Iterable) -> list[tuple[datetime, datetime]]:
    """UTC ``(start, end)`` ranges of already-booked rows."""
    return [(parse_instant(row.start_time), parse_instant(row.end_time)) for row in rows]


def overlaps_any(start: datetime, end: datetime, ranges: Sequence[tuple[datetime, datetime]]) -> bool:
    return any(start < busy_end and end > busy_start for busy_start, busy_end in ranges)
