import logging
import re
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from booking_api.auth.dependencies import require_api_key
from booking_api.core import config
from booking_api.core.errors import BadRequestError
from booking_api.database import ensure_slot_schema, get_db
from booking_api.models.api_key import ApiKey
from booking_api.scheduling.labels import group_windows_by_date
from booking_api.scheduling.timestamps import parse_instant, to_utc_iso
from booking_api.services.slot_service import SOURCE_AVAILABILITY, SOURCE_BASE_SLOTS, SlotService

logger = logging.getLogger(__name__)

router = APIRouter(tags=['slots'])

WINDOW_SOURCES = {SOURCE_AVAILABILITY, SOURCE_BASE_SLOTS}

# "+00:00" arrives as " 00:00" when a client forgets to URL-encode the plus sign.
_DECODED_PLUS_OFFSET = re.compile(r'^(\S+T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?) (\d{2}(?::?\d{2})?)$')


class ServiceSummary(BaseModel):
    id: int
    name: str
    duration_minutes: int | None = None
    price: float | None = None


class SlotHour(BaseModel):
    start: str
    end: str
    id: str
    professional_id: int


class SlotDate(BaseModel):
    day: str
    date: str
    hours: list[SlotHour]


class ServiceSlotsData(BaseModel):
    service: ServiceSummary
    timezone: str
    dates: list[SlotDate]


class ResponseMeta(BaseModel):
    serverTime: str
    statusCode: int
    message: str


class ServiceSlotsResponse(BaseModel):
    data: ServiceSlotsData
    meta: ResponseMeta


def normalize_datetime_param(value: str | None, name: str) -> datetime:
    """Parse a ``from``/``to`` query value, forgiving common client mistakes."""
    if value is None or not value.strip():
        raise BadRequestError("Query parameters 'from' and 'to' are required and must be valid ISO date strings")

    candidate = value.strip()
    decoded_plus = _DECODED_PLUS_OFFSET.match(candidate)
    if decoded_plus:
        candidate = f'{decoded_plus.group(1)}+{decoded_plus.group(2)}'
    candidate = re.sub(r'\s+', 'T', candidate)

    try:
        return parse_instant(candidate)
    except ValueError as exc:
        logger.warning('Invalid %s query param: %r', name, value)
        raise BadRequestError(
            "Query parameters 'from' and 'to' are required and must be valid ISO date strings"
        ) from exc


def first_present(*values):
    for value in values:
        if value is not None:
            return value
    return None


def build_service_slots_response(result, professional_id: int) -> ServiceSlotsResponse:
    dates = group_windows_by_date(result.windows, result.timezone)
    service = result.service
    return ServiceSlotsResponse(
        data=ServiceSlotsData(
            service=ServiceSummary(
                id=service.id,
                name=service.name,
                duration_minutes=service.duration_minutes,
                price=float(service.price) if service.price is not None else None,
            ),
            timezone=result.timezone,
            dates=[
                SlotDate(
                    day=entry['day'],
                    date=entry['date'],
                    hours=[SlotHour(professional_id=professional_id, **hour) for hour in entry['hours']],
                )
                for entry in dates
            ],
        ),
        meta=ResponseMeta(
            serverTime=to_utc_iso(datetime.now(timezone.utc)),
            statusCode=200,
            message='FOUND',
        ),
    )


@router.get('/professionals/{professional_id}/slots')
def list_professional_slots(
    professional_id: int,
    from_: str | None = Query(default=None, alias='from'),
    to: str | None = Query(default=None),
    service_id: int | None = Query(default=None, alias='serviceId'),
    service_id_snake: int | None = Query(default=None, alias='service_id'),
    service: int | None = Query(default=None),
    slot_step: int | None = Query(default=None, alias='slotStep', gt=0),
    slot_step_minutes: int | None = Query(default=None, alias='slotStepMinutes', gt=0),
    min_lead_minutes: int = Query(default=0, alias='minLeadMinutes', ge=0),
    closing_time: str | None = Query(default=None, alias='closingTime'),
    timezone_name: str | None = Query(default=None, alias='timezone'),
    source: str = Query(default=SOURCE_AVAILABILITY),
    api_key: ApiKey = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    range_start = normalize_datetime_param(from_, 'from')
    range_end = normalize_datetime_param(to, 'to')
    resolved_service_id = first_present(service_id, service_id_snake, service)

    if source not in WINDOW_SOURCES:
        raise BadRequestError(f"Query parameter 'source' must be one of: {', '.join(sorted(WINDOW_SOURCES))}")

    ensure_slot_schema()
    slot_service = SlotService(db)

    logger.debug(
        'Slots request: professional=%s service=%s from=%s to=%s company=%s api_key=%s',
        professional_id,
        resolved_service_id,
        range_start.isoformat(),
        range_end.isoformat(),
        api_key.company_id,
        api_key.id,
    )

    if resolved_service_id is not None:
        result = slot_service.get_service_windows(
            professional_id=professional_id,
            service_id=resolved_service_id,
            range_start=range_start,
            range_end=range_end,
            company_id=api_key.company_id,
            slot_step_minutes=first_present(slot_step, slot_step_minutes, config.DEFAULT_SLOT_STEP_MINUTES),
            min_lead_minutes=min_lead_minutes,
            closing_time=closing_time or None,
            timezone_name=timezone_name or config.DEFAULT_TIMEZONE,
            source=source,
        )
        return [build_service_slots_response(result, professional_id)]

    slots = slot_service.get_available_slots(
        professional_id=professional_id,
        range_start=range_start,
        range_end=range_end,
        company_id=api_key.company_id,
    )
    return {'success': True, 'data': slots}
