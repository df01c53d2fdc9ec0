from datetime import date

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.auth.dependencies import get_current_actor
from medbook.core.actor import Actor
from medbook.core.exceptions import SchedulingError
from medbook.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    ensure_practitioner_access,
    get_db,
    get_scheduling_service,
)
from medbook.schemas import AvailabilitySlotResponse, SlotWindow
from medbook.scheduling.availability_store import get_slot
from medbook.scheduling.service import SchedulingService
from medbook.scheduling.slot_generator import (
    DEFAULT_BREAK_HOURS,
    DEFAULT_END_HOUR,
    DEFAULT_SLOT_DURATION_MINUTES,
    DEFAULT_START_HOUR,
)

router = APIRouter(tags=['availability'])

MAX_SLOTS_PER_REQUEST = 96


class CreateAvailabilityRequest(BaseModel):
    practitioner_id: int
    location_id: int
    date: date
    slots: list[SlotWindow]

    @field_validator('slots')
    @classmethod
    def validate_slots(cls, value: list[SlotWindow]) -> list[SlotWindow]:
        if not value:
            raise ValueError('At least one slot is required.')
        if len(value) > MAX_SLOTS_PER_REQUEST:
            raise ValueError(f'At most {MAX_SLOTS_PER_REQUEST} slots can be created at once.')
        return value


class GenerateAvailabilityRequest(BaseModel):
    practitioner_id: int
    location_id: int
    date: date
    start_hour: int = DEFAULT_START_HOUR
    end_hour: int = DEFAULT_END_HOUR
    duration_minutes: int = DEFAULT_SLOT_DURATION_MINUTES
    excluded_hours: list[int] = list(DEFAULT_BREAK_HOURS)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError('Slot duration must be positive.')
        return value


def _practitioner_for_slot(db: Session, slot_id: int) -> int:
    try:
        return get_slot(db, slot_id).practitioner_id
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc


@router.post('/slots', response_model=list[AvailabilitySlotResponse], status_code=status.HTTP_201_CREATED)
def create_availability(
    data: CreateAvailabilityRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, data.practitioner_id)
        return service.create_availability(db, data.practitioner_id, data.location_id, data.date, data.slots)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/generate', response_model=list[AvailabilitySlotResponse], status_code=status.HTTP_201_CREATED)
def generate_availability(
    data: GenerateAvailabilityRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, data.practitioner_id)
        created = service.generate_availability(
            db,
            data.practitioner_id,
            data.location_id,
            data.date,
            start_hour=data.start_hour,
            end_hour=data.end_hour,
            duration_minutes=data.duration_minutes,
            excluded_hours=data.excluded_hours,
        )
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return created


@router.get('/slots', response_model=list[AvailabilitySlotResponse])
def list_availability(
    practitioner_id: int = Query(...),
    location_id: int = Query(...),
    slot_date: date = Query(..., alias='date'),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        return service.list_availability(db, practitioner_id, location_id, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/practitioners/{practitioner_id}/slots', response_model=list[AvailabilitySlotResponse])
def list_practitioner_availability(
    practitioner_id: int,
    slot_date: date | None = Query(None, alias='date'),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        return service.list_practitioner_availability(db, practitioner_id, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/slots/{slot_id}/close', response_model=AvailabilitySlotResponse)
def close_slot(
    slot_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, _practitioner_for_slot(db, slot_id))
        return service.close_slot(db, slot_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/slots/{slot_id}/reopen', response_model=AvailabilitySlotResponse)
def reopen_slot(
    slot_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, _practitioner_for_slot(db, slot_id))
        return service.reopen_slot(db, slot_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
