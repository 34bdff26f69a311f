import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

from booking_api.core import config  # noqa: E402
from booking_api.core.errors import NotFoundError, UnprocessableInputError  # noqa: E402
from booking_api.database import Base  # noqa: E402
from booking_api.models.api_key import ApiKey  # noqa: E402, F401
from booking_api.models.availability import AvailabilityRule  # noqa: E402
from booking_api.models.company import Company  # noqa: E402
from booking_api.models.professional import Professional  # noqa: E402
from booking_api.models.service import Service  # noqa: E402
from booking_api.models.slot import Slot  # noqa: E402
from booking_api.models.user import User  # noqa: E402, F401
from booking_api.services.slot_service import SOURCE_BASE_SLOTS, SlotService  # noqa: E402

RANGE_START = '2026-01-27T00:00:00Z'
RANGE_END = '2026-01-27T23:59:59Z'
NOW = datetime(2026, 1, 26, 12, 0, tzinfo=timezone.utc)


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 27, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def slot_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    db.add_all([
        Company(id=1, name='Clinica Centro'),
        Company(id=2, name='Outra Clinica'),
        Professional(id=1, company_id=1, name='Ana'),
        Professional(id=2, company_id=2, name='Bruno'),
        Service(id=1, company_id=1, name='Consulta', price=150, duration_minutes=60),
        Service(id=2, company_id=1, name='Retorno', price=0, duration_minutes=None),
        Service(id=3, company_id=1, name='Avaliacao', price=80, duration_minutes=0),
        AvailabilityRule(company_id=1, professional_id=1, day_of_week=2, start_time='09:00', end_time='12:00'),
    ])
    db.commit()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


def add_slot(db, start: datetime, minutes: int = 15, is_available: bool = True, professional_id: int = 1) -> Slot:
    slot = Slot(
        professional_id=professional_id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        is_available=is_available,
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    return slot


def service_windows(service: SlotService, **overrides):
    params = {
        'professional_id': 1,
        'service_id': 1,
        'range_start': RANGE_START,
        'range_end': RANGE_END,
        'company_id': 1,
        'timezone_name': 'UTC',
        'slot_step_minutes': 15,
        'now': NOW,
    }
    params.update(overrides)
    return service.get_service_windows(**params)


def persisted_slots(db) -> list[Slot]:
    return db.query(Slot).order_by(Slot.start_time.asc()).all()


def test_get_service_windows_materializes_generated_windows(slot_db) -> None:
    result = service_windows(SlotService(slot_db))

    rows = persisted_slots(slot_db)
    assert result.timezone == 'UTC'
    assert result.service.id == 1
    assert [window.start_time for window in result.windows] == [utc(9), utc(10), utc(11)]
    assert not any(window.is_virtual for window in result.windows)
    assert [window.slot_ids for window in result.windows] == [[str(row.id)] for row in rows]
    assert all(row.service_id == 1 and row.is_available for row in rows)
    assert result.windows[0].label == 'Tue 27/01 09:00–10:00'


def test_get_service_windows_is_idempotent(slot_db) -> None:
    first = service_windows(SlotService(slot_db))
    second = service_windows(SlotService(slot_db))

    assert [window.slot_ids for window in first.windows] == [window.slot_ids for window in second.windows]
    assert len(persisted_slots(slot_db)) == 3


def test_get_service_windows_reuses_existing_available_slot(slot_db) -> None:
    existing = add_slot(slot_db, utc(10))

    result = service_windows(SlotService(slot_db))

    assert result.windows[1].slot_ids == [str(existing.id)]
    assert len(persisted_slots(slot_db)) == 3


def test_get_service_windows_skips_booked_instants(slot_db) -> None:
    add_slot(slot_db, utc(10), is_available=False)

    result = service_windows(SlotService(slot_db))

    assert [window.start_time for window in result.windows] == [utc(9), utc(11)]
    assert len(persisted_slots(slot_db)) == 3


def test_get_service_windows_skips_windows_overlapping_a_booking(slot_db) -> None:
    add_slot(slot_db, utc(9, 30), minutes=30, is_available=False)

    result = service_windows(SlotService(slot_db))

    assert [window.start_time for window in result.windows] == [utc(10), utc(11)]


def test_get_service_windows_skips_windows_overlapping_a_booking_from_before_the_range(slot_db) -> None:
    add_slot(slot_db, utc(9), minutes=90, is_available=False)

    result = service_windows(SlotService(slot_db), range_start='2026-01-27T09:30:00Z')

    assert [window.start_time for window in result.windows] == [utc(11)]


@pytest.mark.parametrize(
    ('start_time', 'end_time', 'reason'),
    [
        ('09:00', '24:00', 'Invalid closing time: 24:00'),
        ('09:00', '12h', 'Invalid closing time: 12h'),
        ('9h', '12:00', 'Invalid availability rule time'),
    ],
)
def test_get_service_windows_rejects_malformed_rule_times(slot_db, start_time, end_time, reason) -> None:
    rule = slot_db.query(AvailabilityRule).one()
    rule.start_time = start_time
    rule.end_time = end_time
    slot_db.commit()

    with pytest.raises(UnprocessableInputError) as exception_info:
        service_windows(SlotService(slot_db))

    assert exception_info.value.reason == reason
    assert exception_info.value.status_code == 422


def test_get_service_windows_recovers_from_concurrent_insert(slot_db, monkeypatch: pytest.MonkeyPatch) -> None:
    winner_id = add_slot(slot_db, utc(10)).id
    service = SlotService(slot_db)
    real_existing_slot_ids = service.reconciler.existing_slot_ids
    calls = []

    def stale_then_real(professional_id, instants):
        calls.append(instants)
        if len(calls) == 1:
            return {}
        return real_existing_slot_ids(professional_id, instants)

    # Simulate a request that read the table before another one inserted 10:00.
    monkeypatch.setattr(service.reconciler, 'available_slot_ids', lambda *args: {})
    monkeypatch.setattr(service.reconciler, 'existing_slot_ids', stale_then_real)

    result = service_windows(service)

    assert len(calls) >= 2
    assert result.windows[1].slot_ids == [str(winner_id)]
    assert not any(window.is_virtual for window in result.windows)
    assert len(persisted_slots(slot_db)) == 3


def test_get_service_windows_keeps_virtual_refs_when_insert_fails(slot_db, monkeypatch: pytest.MonkeyPatch) -> None:
    service = SlotService(slot_db)

    def fail_insert(*args, **kwargs):
        raise SQLAlchemyError('database is locked')

    monkeypatch.setattr(service.reconciler, '_insert_batch', fail_insert)

    result = service_windows(service)

    assert len(result.windows) == 3
    assert all(window.is_virtual for window in result.windows)
    assert result.windows[0].slot_ids == ['virtual-2026-01-27T09:00:00.000Z']
    assert persisted_slots(slot_db) == []


def test_get_service_windows_from_base_slots_does_not_insert(slot_db) -> None:
    base = [add_slot(slot_db, utc(9, minute)) for minute in (0, 15, 30, 45)]

    result = service_windows(SlotService(slot_db), source=SOURCE_BASE_SLOTS, closing_time='18:00')

    assert len(result.windows) == 1
    assert result.windows[0].slot_ids == [str(slot.id) for slot in base]
    assert len(persisted_slots(slot_db)) == 4


@pytest.mark.parametrize(
    ('overrides', 'error_type', 'reason'),
    [
        ({'professional_id': 2}, NotFoundError, "Professional not found or doesn't belong to company"),
        ({'service_id': 99}, NotFoundError, 'Service not found'),
        ({'service_id': 2}, UnprocessableInputError, 'Service duration missing'),
        ({'service_id': 3}, UnprocessableInputError, 'Service duration must be positive'),
        ({'timezone_name': 'Mars/Olympus_Mons'}, UnprocessableInputError, 'Invalid timezone: Mars/Olympus_Mons'),
        ({'closing_time': '25:99'}, UnprocessableInputError, 'Invalid closing time: 25:99'),
    ],
)
def test_get_service_windows_rejects_invalid_requests(slot_db, overrides, error_type, reason) -> None:
    with pytest.raises(error_type) as exception_info:
        service_windows(SlotService(slot_db), **overrides)

    assert exception_info.value.reason == reason


def test_resolve_closing_time_prefers_explicit_then_latest_rule_end(slot_db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'DEFAULT_CLOSING_TIME', '18:00')
    service = SlotService(slot_db)
    rules = [SimpleNamespace(end_time='12:00'), SimpleNamespace(end_time='17:30'), SimpleNamespace(end_time='09:45')]

    assert service.resolve_closing_time(rules, '16:00') == '16:00'
    assert service.resolve_closing_time(rules, None) == '17:30'
    assert service.resolve_closing_time([], None) == '18:00'


@pytest.mark.parametrize('end_time', ['24:00', '17h30', ''])
def test_resolve_closing_time_rejects_unparseable_rule_end(slot_db, end_time) -> None:
    rules = [SimpleNamespace(end_time='12:00'), SimpleNamespace(end_time=end_time)]

    with pytest.raises(UnprocessableInputError) as exception_info:
        SlotService(slot_db).resolve_closing_time(rules, None)

    assert exception_info.value.reason == f'Invalid closing time: {end_time}'


def test_get_available_slots_returns_persisted_rows(slot_db) -> None:
    first = add_slot(slot_db, utc(10))
    add_slot(slot_db, utc(10, 15), is_available=False)
    add_slot(slot_db, utc(11), professional_id=2)

    slots = SlotService(slot_db).get_available_slots(1, RANGE_START, RANGE_END, company_id=1)

    assert slots == [{
        'id': first.id,
        'professional_id': 1,
        'service_id': None,
        'start_time': '2026-01-27T10:00:00.000Z',
        'end_time': '2026-01-27T10:15:00.000Z',
        'is_available': True,
    }]


def test_get_available_slots_falls_back_to_virtual_units(slot_db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'DEFAULT_TIMEZONE', 'UTC')
    monkeypatch.setattr(config, 'DEFAULT_SLOT_STEP_MINUTES', 15)

    slots = SlotService(slot_db).get_available_slots(1, RANGE_START, RANGE_END, company_id=1, service_id=1)

    assert len(slots) == 12
    assert slots[0]['id'] == 'virtual-2026-01-27T09:00:00.000Z'
    assert slots[-1]['end_time'] == '2026-01-27T12:00:00.000Z'
    assert all(slot['service_id'] == 1 for slot in slots)
    assert persisted_slots(slot_db) == []


def test_get_available_slots_rejects_professional_of_other_company(slot_db) -> None:
    with pytest.raises(NotFoundError):
        SlotService(slot_db).get_available_slots(2, RANGE_START, RANGE_END, company_id=1)
