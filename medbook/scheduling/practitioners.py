"""Practitioner registration, profile edits and location attachments.

Each write refreshes the practitioner's cached onboarding flags in the same
transaction.
"""

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from medbook.core.clock import Clock, SystemClock
from medbook.core.exceptions import NotFoundError, ValidationError
from medbook.database import run_in_transaction
from medbook.models.location import Location, PractitionerLocation
from medbook.models.practitioner import Practitioner, Specialty
from medbook.models.user import User
from medbook.scheduling.availability_store import lock_practitioner
from medbook.scheduling.onboarding import refresh_flags

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('specialty_id', 'years_of_experience', 'license_number', 'bio', 'fee')


def get_practitioner(db: Session, practitioner_id: int) -> Practitioner:
    practitioner = db.query(Practitioner).filter(Practitioner.id == practitioner_id).first()
    if practitioner is None:
        raise NotFoundError(f'Practitioner {practitioner_id} not found.', details={'practitioner_id': practitioner_id})
    return practitioner


def get_practitioner_for_user(db: Session, user_id: int) -> Practitioner:
    practitioner = db.query(Practitioner).filter(Practitioner.user_id == user_id).first()
    if practitioner is None:
        raise NotFoundError(f'No practitioner profile for user {user_id}.', details={'user_id': user_id})
    return practitioner


def register_practitioner(db: Session, user_id: int) -> Practitioner:
    """Give a user the practitioner role and create its practitioner row.

    Registering an already registered user returns the existing row.
    """

    def _register(session: Session) -> Practitioner:
        user = session.query(User).filter(User.id == user_id).with_for_update().first()
        if user is None:
            raise NotFoundError(f'User {user_id} not found.', details={'user_id': user_id})

        practitioner = session.query(Practitioner).filter(Practitioner.user_id == user_id).first()
        if practitioner is None:
            practitioner = Practitioner(user_id=user_id, fee=Decimal('0'))
            session.add(practitioner)
            session.flush()
            logger.info('Registered practitioner %s for user %s', practitioner.id, user_id)

        user.role = 'practitioner'
        return practitioner

    practitioner = run_in_transaction(db, _register)
    db.refresh(practitioner)
    return practitioner


def _validate_profile_changes(session: Session, changes: dict[str, Any]) -> None:
    unknown = set(changes) - set(PROFILE_FIELDS)
    if unknown:
        raise ValidationError('Unknown profile fields.', code='unknown_profile_fields', details={'fields': sorted(unknown)})

    specialty_id = changes.get('specialty_id')
    if specialty_id is not None and session.query(Specialty.id).filter(Specialty.id == specialty_id).first() is None:
        raise NotFoundError(f'Specialty {specialty_id} not found.', details={'specialty_id': specialty_id})

    years = changes.get('years_of_experience')
    if years is not None and years < 0:
        raise ValidationError('Years of experience cannot be negative.', code='invalid_experience')

    fee = changes.get('fee')
    if fee is not None and fee < 0:
        raise ValidationError('Fee cannot be negative.', code='invalid_fee')


def update_profile(db: Session, practitioner_id: int, **changes: Any) -> Practitioner:
    def _update(session: Session) -> Practitioner:
        practitioner = lock_practitioner(session, practitioner_id)
        _validate_profile_changes(session, changes)

        for field, value in changes.items():
            if isinstance(value, str):
                value = value.strip() or None
            setattr(practitioner, field, value)

        session.flush()
        refresh_flags(session, practitioner_id)
        return practitioner

    practitioner = run_in_transaction(db, _update)
    db.refresh(practitioner)
    return practitioner


def deactivate_practitioner(db: Session, practitioner_id: int) -> Practitioner:
    def _deactivate(session: Session) -> Practitioner:
        practitioner = lock_practitioner(session, practitioner_id)
        practitioner.is_active = False
        return practitioner

    practitioner = run_in_transaction(db, _deactivate)
    db.refresh(practitioner)
    logger.info('Deactivated practitioner %s', practitioner_id)
    return practitioner


def create_location(
    db: Session,
    name: str,
    address: str,
    created_by: int | None = None,
    phone: str | None = None,
    email: str | None = None,
) -> Location:
    name, address = (name or '').strip(), (address or '').strip()
    if not name or not address:
        raise ValidationError('Location name and address are required.', code='invalid_location')

    def _create(session: Session) -> Location:
        location = Location(name=name, address=address, created_by=created_by, phone=phone, email=email)
        session.add(location)
        session.flush()
        return location

    location = run_in_transaction(db, _create)
    db.refresh(location)
    return location


def list_locations(db: Session, practitioner_id: int) -> list[Location]:
    return db.query(Location).join(
        PractitionerLocation, PractitionerLocation.location_id == Location.id,
    ).filter(
        PractitionerLocation.practitioner_id == practitioner_id,
    ).order_by(Location.name.asc()).all()


def attach_location(db: Session, practitioner_id: int, location_id: int, clock: Clock | None = None) -> PractitionerLocation:
    """Associate a practitioner with a location. Attaching twice is a no-op."""
    clock = clock or SystemClock()

    def _attach(session: Session) -> PractitionerLocation:
        lock_practitioner(session, practitioner_id)
        if session.query(Location.id).filter(Location.id == location_id).first() is None:
            raise NotFoundError(f'Location {location_id} not found.', details={'location_id': location_id})

        association = session.query(PractitionerLocation).filter(
            PractitionerLocation.practitioner_id == practitioner_id,
            PractitionerLocation.location_id == location_id,
        ).first()
        if association is None:
            association = PractitionerLocation(
                practitioner_id=practitioner_id,
                location_id=location_id,
                created_at=clock.now(),
            )
            session.add(association)
            session.flush()

        refresh_flags(session, practitioner_id)
        return association

    association = run_in_transaction(db, _attach)
    db.refresh(association)
    return association


def detach_location(db: Session, practitioner_id: int, location_id: int) -> None:
    def _detach(session: Session) -> None:
        lock_practitioner(session, practitioner_id)
        deleted = session.query(PractitionerLocation).filter(
            PractitionerLocation.practitioner_id == practitioner_id,
            PractitionerLocation.location_id == location_id,
        ).delete(synchronize_session=False)
        if not deleted:
            raise NotFoundError(
                'Practitioner is not attached to this location.',
                details={'practitioner_id': practitioner_id, 'location_id': location_id},
            )
        refresh_flags(session, practitioner_id)

    run_in_transaction(db, _detach)
