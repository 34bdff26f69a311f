import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_api.core import config
from booking_api.core.errors import NotFoundError, PersistenceUnavailableError, UnprocessableInputError
from booking_api.models.availability import AvailabilityRule
from booking_api.models.professional import Professional
from booking_api.models.service import Service
from booking_api.models.slot import Slot
from booking_api.scheduling.labels import label_windows
from booking_api.scheduling.timestamps import instant_key, parse_clock, parse_instant, to_utc_iso
from booking_api.scheduling.windows import (
    BaseSlot,
    PersistedSlot,
    VirtualSlot,
    Window,
    build_service_windows_from_base_slots,
    generate_service_windows,
    generate_unit_slots,
    occupied_instant_keys,
    occupied_ranges,
)

logger = logging.getLogger(__name__)

SOURCE_AVAILABILITY = 'availability'
SOURCE_BASE_SLOTS = 'base_slots'


@dataclass
class ServiceWindowsResult:
    service: Service
    timezone: str
    windows: list[Window] = field(default_factory=list)


def serialize_slot(slot: Slot | BaseSlot, service_id: int | None = None) -> dict:
    if isinstance(slot, BaseSlot):
        slot_id = str(slot.ref)
    else:
        slot_id = slot.id
        service_id = slot.service_id

    return {
        'id': slot_id,
        'professional_id': slot.professional_id,
        'service_id': service_id,
        'start_time': to_utc_iso(slot.start_time),
        'end_time': to_utc_iso(slot.end_time),
        'is_available': slot.is_available,
    }


def resolve_refs(window: Window, slot_ids: dict[str, int]) -> Window:
    """Swap virtual refs whose instant is in ``slot_ids`` for persisted ones."""
    if not window.is_virtual:
        return window

    refs = []
    for ref in window.slot_refs:
        if isinstance(ref, VirtualSlot) and instant_key(ref.instant) in slot_ids:
            refs.append(PersistedSlot(slot_ids[instant_key(ref.instant)]))
        else:
            refs.append(ref)
    return window.with_refs(refs)


class SlotReconciler:
    """Give generated windows real ``slots`` row ids.

    Windows are first matched against available rows already in range. Those
    still virtual are checked again against every row of the professional at
    the same instants, and only the remainder is inserted. The unique index on
    ``(professional_id, start_time)`` settles concurrent inserts: a losing
    insert re-reads the winning row instead of failing.
    """

    def __init__(self, db: Session):
        self.db = db

    def reconcile(
        self,
        windows: list[Window],
        professional_id: int,
        service_id: int | None,
        range_start: datetime,
        range_end: datetime,
    ) -> list[Window]:
        try:
            known_ids = self.available_slot_ids(professional_id, range_start, range_end)
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError('Failed to get slots') from exc
        resolved = [resolve_refs(window, known_ids) for window in windows]

        pending = [window for window in resolved if window.is_virtual]
        if not pending:
            return resolved

        materialized_ids = self.materialize(pending, professional_id, service_id)
        reconciled = [resolve_refs(window, materialized_ids) for window in resolved]

        logger.debug(
            'Reconciled %d windows: %d matched, %d materialized, %d still virtual',
            len(reconciled),
            len(resolved) - len(pending),
            len(materialized_ids),
            sum(1 for window in reconciled if window.is_virtual),
        )
        return reconciled

    def available_slot_ids(self, professional_id: int, range_start: datetime, range_end: datetime) -> dict[str, int]:
        rows = self.db.query(Slot.id, Slot.start_time).filter(
            Slot.professional_id == professional_id,
            Slot.is_available.is_(True),
            Slot.start_time >= parse_instant(range_start),
            Slot.start_time <= parse_instant(range_end),
        ).all()
        return {instant_key(start_time): slot_id for slot_id, start_time in rows}

    def existing_slot_ids(self, professional_id: int, instants: list[datetime]) -> dict[str, int]:
        if not instants:
            return {}

        rows = self.db.query(Slot.id, Slot.start_time).filter(
            Slot.professional_id == professional_id,
            Slot.start_time.in_(instants),
        ).all()
        return {instant_key(start_time): slot_id for slot_id, start_time in rows}

    def materialize(self, windows: list[Window], professional_id: int, service_id: int | None) -> dict[str, int]:
        candidates: dict[str, Window] = {}
        for window in windows:
            candidates.setdefault(instant_key(window.start_time), window)

        instants = [parse_instant(window.start_time) for window in candidates.values()]
        try:
            slot_ids = self.existing_slot_ids(professional_id, instants)
        except SQLAlchemyError:
            logger.exception('Failed to look up existing slots for professional %s', professional_id)
            return {}

        to_insert = [window for key, window in candidates.items() if key not in slot_ids]
        if not to_insert:
            return slot_ids

        try:
            try:
                slot_ids.update(self._insert_batch(to_insert, professional_id, service_id))
            except IntegrityError:
                self.db.rollback()
                logger.info(
                    'Concurrent slot creation detected for professional %s; retrying row by row',
                    professional_id,
                )
                slot_ids.update(self._insert_each(to_insert, professional_id, service_id))
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception('Failed to create %d slots in database', len(to_insert))

        return slot_ids

    def _new_slot(self, window: Window, professional_id: int, service_id: int | None) -> Slot:
        return Slot(
            professional_id=professional_id,
            service_id=service_id,
            start_time=parse_instant(window.start_time),
            end_time=parse_instant(window.end_time),
            is_available=True,
        )

    def _insert_batch(self, windows: list[Window], professional_id: int, service_id: int | None) -> dict[str, int]:
        slots = [self._new_slot(window, professional_id, service_id) for window in windows]
        self.db.add_all(slots)
        self.db.flush()
        created = {instant_key(slot.start_time): slot.id for slot in slots}
        self.db.commit()
        logger.debug('Created %d slots for professional %s', len(created), professional_id)
        return created

    def _insert_each(self, windows: list[Window], professional_id: int, service_id: int | None) -> dict[str, int]:
        instants = [parse_instant(window.start_time) for window in windows]
        slot_ids = self.existing_slot_ids(professional_id, instants)

        for window in windows:
            key = instant_key(window.start_time)
            if key in slot_ids:
                continue

            slot = self._new_slot(window, professional_id, service_id)
            self.db.add(slot)
            try:
                self.db.flush()
                slot_id = slot.id
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                slot_ids.update(self.existing_slot_ids(professional_id, [parse_instant(window.start_time)]))
                continue
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception('Failed to create slot at %s', key)
                continue

            slot_ids[key] = slot_id

        return slot_ids


class SlotService:
    def __init__(self, db: Session):
        self.db = db
        self.reconciler = SlotReconciler(db)

    def require_professional(self, professional_id: int, company_id: int) -> Professional:
        try:
            professional = self.db.query(Professional).filter(
                Professional.id == professional_id,
                Professional.company_id == company_id,
            ).first()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError('Failed to get slots') from exc

        if professional is None:
            raise NotFoundError("Professional not found or doesn't belong to company")
        return professional

    def get_service(self, service_id: int, company_id: int) -> Service:
        try:
            service = self.db.query(Service).filter(
                Service.id == service_id,
                Service.company_id == company_id,
            ).first()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError('Failed to get slots') from exc

        if service is None:
            raise NotFoundError('Service not found')
        return service

    def list_availability_rules(self, company_id: int, professional_id: int) -> list[AvailabilityRule]:
        try:
            return self.db.query(AvailabilityRule).filter(
                AvailabilityRule.company_id == company_id,
                AvailabilityRule.professional_id == professional_id,
            ).order_by(AvailabilityRule.id.asc()).all()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError('Failed to get slots') from exc

    def get_available_slots(
        self,
        professional_id: int,
        range_start: datetime | str,
        range_end: datetime | str,
        company_id: int,
        service_id: int | None = None,
    ) -> list[dict]:
        """Persisted available slots in range, or virtual units from availability."""
        self.require_professional(professional_id, company_id)
        start_utc = parse_instant(range_start)
        end_utc = parse_instant(range_end)

        try:
            query = self.db.query(Slot).filter(
                Slot.professional_id == professional_id,
                Slot.is_available.is_(True),
                Slot.start_time >= start_utc,
                Slot.start_time <= end_utc,
            )
            if service_id is not None:
                query = query.filter(or_(Slot.service_id == service_id, Slot.service_id.is_(None)))
            slots = query.order_by(Slot.start_time.asc()).all()
        except SQLAlchemyError as exc:
            logger.exception('Failed to get slots for professional %s (company %s)', professional_id, company_id)
            raise PersistenceUnavailableError('Failed to get slots') from exc

        if slots:
            logger.debug('Found %d slots in database for professional %s', len(slots), professional_id)
            return [serialize_slot(slot) for slot in slots]

        logger.debug('No slots in database for professional %s; generating from availabilities', professional_id)
        rules = self.list_availability_rules(company_id, professional_id)
        units = generate_unit_slots(
            rules,
            start_utc,
            end_utc,
            config.DEFAULT_TIMEZONE,
            config.DEFAULT_SLOT_STEP_MINUTES,
            professional_id=professional_id,
        )
        return [serialize_slot(unit, service_id=service_id) for unit in units]

    def resolve_closing_time(self, rules: list[AvailabilityRule], closing_time: str | None) -> str:
        if closing_time:
            candidates = [closing_time]
        elif rules:
            candidates = [rule.end_time for rule in rules]
        else:
            candidates = [config.DEFAULT_CLOSING_TIME]

        for candidate in candidates:
            try:
                parse_clock(candidate)
            except ValueError as exc:
                raise UnprocessableInputError(f'Invalid closing time: {candidate}') from exc
        return max(candidates, key=parse_clock)

    def get_service_windows(
        self,
        professional_id: int,
        service_id: int,
        range_start: datetime | str,
        range_end: datetime | str,
        company_id: int,
        slot_step_minutes: int | None = None,
        min_lead_minutes: int | None = None,
        closing_time: str | None = None,
        timezone_name: str | None = None,
        now: datetime | None = None,
        source: str = SOURCE_AVAILABILITY,
    ) -> ServiceWindowsResult:
        """Bookable windows for one service, each backed by a real slot id when possible."""
        self.require_professional(professional_id, company_id)
        service = self.get_service(service_id, company_id)

        duration = service.duration_minutes
        if duration is None:
            raise UnprocessableInputError('Service duration missing')
        if duration <= 0:
            raise UnprocessableInputError('Service duration must be positive')

        slot_step = slot_step_minutes or config.DEFAULT_SLOT_STEP_MINUTES
        if slot_step <= 0:
            raise UnprocessableInputError('Slot step must be positive')
        lead = max(min_lead_minutes or 0, 0)
        timezone_name = timezone_name or config.DEFAULT_TIMEZONE
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise UnprocessableInputError(f'Invalid timezone: {timezone_name}') from exc

        start_utc = parse_instant(range_start)
        end_utc = parse_instant(range_end)
        now = parse_instant(now or datetime.now(timezone.utc))
        rules = self.list_availability_rules(company_id, professional_id)
        closing = self.resolve_closing_time(rules, closing_time)

        logger.debug(
            'Building service windows: professional=%s service=%s duration=%s step=%s closing=%s tz=%s source=%s',
            professional_id,
            service_id,
            duration,
            slot_step,
            closing,
            timezone_name,
            source,
        )

        if source == SOURCE_BASE_SLOTS:
            windows = build_service_windows_from_base_slots(
                self._base_slots(professional_id, start_utc, end_utc),
                duration,
                slot_step,
                now,
                closing,
                timezone_name,
                min_lead_minutes=lead,
            )
        else:
            try:
                # Bookings that started before the range can still overlap its first windows.
                occupied_rows = self.db.query(Slot.start_time, Slot.end_time).filter(
                    Slot.professional_id == professional_id,
                    Slot.is_available.is_(False),
                    Slot.end_time > start_utc,
                    Slot.start_time < end_utc + timedelta(minutes=duration),
                ).all()
            except SQLAlchemyError as exc:
                raise PersistenceUnavailableError('Failed to get slots') from exc

            try:
                windows = generate_service_windows(
                    rules,
                    duration,
                    start_utc,
                    end_utc,
                    timezone_name,
                    closing,
                    now,
                    min_lead_minutes=lead,
                    occupied=occupied_instant_keys(occupied_rows),
                    slot_step_minutes=slot_step,
                    busy=occupied_ranges(occupied_rows),
                )
            except ValueError as exc:
                logger.warning('Invalid availability rule for professional %s: %s', professional_id, exc)
                raise UnprocessableInputError('Invalid availability rule time') from exc
            windows = self.reconciler.reconcile(windows, professional_id, service.id, start_utc, end_utc)

        label_windows(windows, timezone_name)
        return ServiceWindowsResult(service=service, timezone=timezone_name, windows=windows)

    def _base_slots(self, professional_id: int, range_start: datetime, range_end: datetime) -> list[BaseSlot]:
        try:
            rows = self.db.query(Slot).filter(
                Slot.professional_id == professional_id,
                Slot.start_time >= range_start,
                Slot.start_time <= range_end,
            ).all()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError('Failed to get slots') from exc

        return [
            BaseSlot(row.id, row.professional_id, parse_instant(row.start_time), parse_instant(row.end_time), row.is_available)
            for row in rows
        ]
