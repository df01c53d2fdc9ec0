from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.auth.dependencies import get_current_actor, require_roles
from medbook.core.actor import ADMIN, CLIENT, SYSTEM, Actor
from medbook.core.exceptions import SchedulingError
from medbook.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    get_db,
    get_scheduling_service,
)
from medbook.schemas import AppointmentResponse, BookingConfirmation
from medbook.scheduling.booking import MAX_APPOINTMENT_NOTES_LENGTH
from medbook.scheduling.policy import NotificationMode
from medbook.scheduling.service import SchedulingService

router = APIRouter(tags=['appointments'])


class BookAppointmentRequest(BaseModel):
    practitioner_id: int
    location_id: int
    slot_id: int
    date: date
    notes: str | None = None
    client_id: int | None = None
    notification_mode: NotificationMode | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
        return normalized or None


class TransitionRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError('Status is required.')
        return normalized


class ExpireStaleResponse(BaseModel):
    expired_ids: list[int]


def _resolve_client_id(actor: Actor, requested_client_id: int | None) -> int:
    if actor.role == CLIENT:
        if requested_client_id is not None and requested_client_id != actor.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Clients can only book for themselves.')
        return actor.user_id

    if actor.is_system:
        if requested_client_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='client_id is required.')
        return requested_client_id

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only clients or admins can book appointments.')


@router.post('/', response_model=BookingConfirmation, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: BookAppointmentRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()
    client_id = _resolve_client_id(actor, data.client_id)

    try:
        return service.book_appointment(
            db,
            client_id,
            data.practitioner_id,
            data.location_id,
            data.slot_id,
            data.date,
            notes=data.notes,
            mode=data.notification_mode,
            defer=background_tasks.add_task,
        )
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        return service.list_appointments(db, actor)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{appointment_id}/transitions', response_model=AppointmentResponse)
def transition_appointment(
    appointment_id: int,
    data: TransitionRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        return service.transition_appointment(
            db,
            appointment_id,
            data.status,
            actor,
            defer=background_tasks.add_task,
        )
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/expire-stale', response_model=ExpireStaleResponse)
def expire_stale_appointments(
    actor: Actor = Depends(require_roles(ADMIN, SYSTEM)),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        expired_ids = service.expire_stale_appointments(db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return ExpireStaleResponse(expired_ids=expired_ids)
