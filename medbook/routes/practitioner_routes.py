from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.auth.dependencies import get_current_actor, require_roles
from medbook.core.actor import ADMIN, PRACTITIONER, SYSTEM, Actor
from medbook.core.exceptions import SchedulingError
from medbook.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    ensure_practitioner_access,
    get_db,
    get_scheduling_service,
)
from medbook.schemas import LocationResponse, OnboardingStatus, PractitionerResponse
from medbook.scheduling import practitioners
from medbook.scheduling.service import SchedulingService

router = APIRouter(tags=['practitioners'])


class RegisterPractitionerRequest(BaseModel):
    user_id: int | None = None


class ProfileUpdateRequest(BaseModel):
    specialty_id: int | None = None
    years_of_experience: int | None = None
    license_number: str | None = None
    bio: str | None = None
    fee: Decimal | None = None

    @field_validator('years_of_experience')
    @classmethod
    def validate_years(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError('Years of experience cannot be negative.')
        return value

    @field_validator('fee')
    @classmethod
    def validate_fee(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value < 0:
            raise ValueError('Fee cannot be negative.')
        return value


class CreateLocationRequest(BaseModel):
    name: str
    address: str
    phone: str | None = None
    email: str | None = None

    @field_validator('name', 'address')
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('This field is required.')
        return normalized


@router.post('/', response_model=PractitionerResponse, status_code=status.HTTP_201_CREATED)
def register_practitioner(
    data: RegisterPractitionerRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    user_id = data.user_id if data.user_id is not None else actor.user_id
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='user_id is required.')
    if not actor.is_system and user_id != actor.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only admins can register other users.')

    try:
        return practitioners.register_practitioner(db, user_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{practitioner_id}', response_model=PractitionerResponse)
def get_practitioner(practitioner_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return practitioners.get_practitioner(db, practitioner_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{practitioner_id}/profile', response_model=PractitionerResponse)
def update_profile(
    practitioner_id: int,
    data: ProfileUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, practitioner_id)
        return practitioners.update_profile(db, practitioner_id, **data.model_dump(exclude_unset=True))
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{practitioner_id}/deactivate', response_model=PractitionerResponse)
def deactivate_practitioner(
    practitioner_id: int,
    actor: Actor = Depends(require_roles(ADMIN, SYSTEM)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return practitioners.deactivate_practitioner(db, practitioner_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/locations', response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
def create_location(
    data: CreateLocationRequest,
    actor: Actor = Depends(require_roles(PRACTITIONER, ADMIN, SYSTEM)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return practitioners.create_location(
            db,
            data.name,
            data.address,
            created_by=actor.user_id,
            phone=data.phone,
            email=data.email,
        )
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{practitioner_id}/locations', response_model=list[LocationResponse])
def list_locations(practitioner_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return practitioners.list_locations(db, practitioner_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{practitioner_id}/locations/{location_id}', status_code=status.HTTP_204_NO_CONTENT)
def attach_location(
    practitioner_id: int,
    location_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, practitioner_id)
        practitioners.attach_location(db, practitioner_id, location_id, clock=service.clock)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/{practitioner_id}/locations/{location_id}', status_code=status.HTTP_204_NO_CONTENT)
def detach_location(
    practitioner_id: int,
    location_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, practitioner_id)
        practitioners.detach_location(db, practitioner_id, location_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{practitioner_id}/onboarding', response_model=OnboardingStatus)
def get_onboarding_status(
    practitioner_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
):
    ensure_database_ready()

    try:
        ensure_practitioner_access(db, actor, practitioner_id)
        return service.get_onboarding_status(db, practitioner_id)
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
