from datetime import datetime, time, timedelta, timezone

import pytest

from booking_api.scheduling.timestamps import (
    instant_key,
    instant_key_without_millis,
    parse_clock,
    parse_instant,
    to_utc_iso,
)


@pytest.mark.parametrize(
    'value',
    [
        '2026-01-27T11:00:00Z',
        '2026-01-27T11:00:00.000Z',
        '2026-01-27T11:00:00+00:00',
        '2026-01-27T11:00:00.000+00:00',
        '2026-01-27 11:00:00+00:00',
        '2026-01-27T08:00:00-03:00',
        '2026-01-27T11:00:00',
        datetime(2026, 1, 27, 11, 0),
        datetime(2026, 1, 27, 11, 0, tzinfo=timezone.utc),
        datetime(2026, 1, 27, 8, 0, tzinfo=timezone(timedelta(hours=-3))),
    ],
)
def test_instant_key_matches_same_instant_across_formats(value) -> None:
    assert instant_key(value) == '2026-01-27T11:00:00.000Z'


def test_instant_key_keeps_milliseconds() -> None:
    assert instant_key('2026-01-27T11:00:00.123456Z') == '2026-01-27T11:00:00.123Z'


def test_instant_key_falls_back_to_raw_value_when_unparseable() -> None:
    assert instant_key('not-a-date') == 'not-a-date'
    assert instant_key('') == ''


def test_instant_key_without_millis_drops_fraction() -> None:
    assert instant_key_without_millis('2026-01-27T11:00:00.123Z') == '2026-01-27T11:00:00Z'
    assert instant_key_without_millis('garbage') == 'garbage'


def test_parse_instant_returns_aware_utc() -> None:
    parsed = parse_instant('2026-01-27T08:00:00-03:00')

    assert parsed.tzinfo == timezone.utc
    assert parsed == datetime(2026, 1, 27, 11, 0, tzinfo=timezone.utc)


def test_parse_instant_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_instant('tomorrow at noon')


def test_to_utc_iso_uses_z_suffix() -> None:
    assert to_utc_iso(datetime(2026, 1, 27, 8, 30, tzinfo=timezone(timedelta(hours=-3)))) == '2026-01-27T11:30:00.000Z'


@pytest.mark.parametrize(
    ('value', 'expected'),
    [
        ('09:30', time(9, 30)),
        ('09:30:00', time(9, 30)),
        (' 18:00 ', time(18, 0)),
        (time(7, 15), time(7, 15)),
    ],
)
def test_parse_clock_accepts_wall_clock_values(value, expected) -> None:
    assert parse_clock(value) == expected


@pytest.mark.parametrize('value', ['9h', '25:00', '12:60', '', '12'])
def test_parse_clock_rejects_invalid_values(value) -> None:
    with pytest.raises(ValueError):
        parse_clock(value)
