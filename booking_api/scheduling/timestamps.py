"""Instant and wall-clock parsing shared by slot generation and reconciliation.

Every instant that leaves this module is a timezone-aware UTC ``datetime`` or
its canonical string key. Stored rows and freshly generated windows are
matched on that key, so the same instant serialised as
``2026-01-27T11:00:00Z``, ``2026-01-27T11:00:00.000Z`` or
``2026-01-27 11:00:00+00:00`` always lands on one key.
"""

import logging
from datetime import datetime, time, timezone

logger = logging.getLogger(__name__)


def parse_instant(value: datetime | str) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive datetimes and offset-less strings are read as UTC, which is how the
    ``slots`` table stores them.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = value.strip()
        if not raw:
            raise ValueError('Empty timestamp')
        parsed = datetime.fromisoformat(raw)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_utc_iso(value: datetime) -> str:
    utc_value = parse_instant(value)
    return utc_value.strftime('%Y-%m-%dT%H:%M:%S') + f'.{utc_value.microsecond // 1000:03d}Z'


def instant_key(value: datetime | str) -> str:
    """Canonical equality key for an instant.

    Unparseable strings are their own key, so a lookup with a malformed
    stored value simply misses instead of failing the request.
    """
    try:
        return to_utc_iso(parse_instant(value))
    except (TypeError, ValueError):
        logger.debug('Could not normalise timestamp %r; using it verbatim', value)
        return str(value)


def instant_key_without_millis(value: datetime | str) -> str:
    try:
        return parse_instant(value).strftime('%Y-%m-%dT%H:%M:%SZ')
    except (TypeError, ValueError):
        return str(value)


def parse_clock(value: str | time) -> time:
    """Parse a local wall-clock ``HH:MM`` (or ``HH:MM:SS``) value."""
    if isinstance(value, time):
        return value.replace(tzinfo=None)

    parts = value.strip().split(':')
    if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
        raise ValueError(f'Invalid clock time: {value!r}')

    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)
