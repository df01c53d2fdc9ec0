"""Derived onboarding readiness for practitioners.

The status is always computed from the practitioner row, its location
attachments and its published slots. The booleans stored on the practitioner
row are only a cache, rewritten by ``refresh_flags`` whenever one of those
inputs changes.
"""

import logging

from sqlalchemy.orm import Session

from medbook.core.exceptions import NotFoundError
from medbook.models.location import PractitionerLocation
from medbook.models.practitioner import Practitioner
from medbook.schemas import OnboardingStatus
from medbook.scheduling.availability_store import has_any_slots

logger = logging.getLogger(__name__)

STEP_PROFILE = 'profile'
STEP_LOCATIONS = 'locations'
STEP_AVAILABILITY = 'availability'
STEP_COMPLETE = 'complete'

STEP_DESCRIPTIONS = {
    STEP_PROFILE: 'Complete your profile with specialty, experience, license and bio.',
    STEP_LOCATIONS: 'Add or select the locations where you practice.',
    STEP_AVAILABILITY: 'Publish availability so clients can book you.',
    STEP_COMPLETE: 'Onboarding complete. You can now receive appointment bookings.',
}


def _is_filled(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def is_profile_complete(practitioner: Practitioner) -> bool:
    return all(
        _is_filled(value)
        for value in (
            practitioner.specialty_id,
            practitioner.years_of_experience,
            practitioner.license_number,
            practitioner.bio,
        )
    )


def has_attached_locations(db: Session, practitioner_id: int) -> bool:
    return db.query(PractitionerLocation.id).filter(
        PractitionerLocation.practitioner_id == practitioner_id,
    ).first() is not None


def compute_status(db: Session, practitioner_id: int) -> OnboardingStatus:
    practitioner = db.query(Practitioner).filter(Practitioner.id == practitioner_id).first()
    if practitioner is None:
        raise NotFoundError(f'Practitioner {practitioner_id} not found.', details={'practitioner_id': practitioner_id})

    flags = [
        (STEP_PROFILE, is_profile_complete(practitioner)),
        (STEP_LOCATIONS, has_attached_locations(db, practitioner_id)),
        (STEP_AVAILABILITY, has_any_slots(db, practitioner_id)),
    ]
    next_step = next((step for step, done in flags if not done), STEP_COMPLETE)
    completed = sum(1 for _, done in flags if done)

    return OnboardingStatus(
        practitioner_id=practitioner_id,
        profile_completed=flags[0][1],
        locations_attached=flags[1][1],
        availability_published=flags[2][1],
        next_step=next_step,
        is_complete=next_step == STEP_COMPLETE,
        progress=round(completed * 100 / len(flags)),
        next_step_description=STEP_DESCRIPTIONS[next_step],
    )


def refresh_flags(db: Session, practitioner_id: int) -> OnboardingStatus:
    """Copy the computed status onto the practitioner row. The caller commits."""
    status = compute_status(db, practitioner_id)
    practitioner = db.query(Practitioner).filter(Practitioner.id == practitioner_id).first()

    changed = (
        practitioner.profile_completed != status.profile_completed
        or practitioner.locations_attached != status.locations_attached
        or practitioner.availability_published != status.availability_published
    )
    if changed:
        practitioner.profile_completed = status.profile_completed
        practitioner.locations_attached = status.locations_attached
        practitioner.availability_published = status.availability_published
        logger.info('Onboarding for practitioner %s advanced to step %s', practitioner_id, status.next_step)

    return status
