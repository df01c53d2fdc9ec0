"""Persistence and integrity rules for availability slots.

Every slot of a practitioner at one location on one date covers a
``[start_time, end_time)`` range, and those ranges never intersect. Writes
that read existing slots first lock the practitioner row so concurrent
writers for the same practitioner are serialized.
"""

import logging
from datetime import date, time
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medbook.core.clock import Clock, SystemClock
from medbook.core.exceptions import (
    ConflictError,
    NotFoundError,
    OnboardingIncompleteError,
    SlotUnavailableError,
    ValidationError,
)
from medbook.database import run_in_transaction
from medbook.models.availability import AvailabilitySlot
from medbook.models.location import Location, PractitionerLocation
from medbook.models.practitioner import Practitioner

logger = logging.getLogger(__name__)


def _format_range(start: time, end: time) -> str:
    return f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"


def find_overlap(ranges: Iterable[tuple[time, time]]) -> tuple[tuple[time, time], tuple[time, time]] | None:
    """Return the first pair of intersecting ranges, or ``None``."""
    ordered = sorted(ranges)
    for current, following in zip(ordered, ordered[1:]):
        if following[0] < current[1]:
            return current, following
    return None


def lock_practitioner(db: Session, practitioner_id: int) -> Practitioner:
    practitioner = db.query(Practitioner).filter(
        Practitioner.id == practitioner_id,
    ).with_for_update().populate_existing().first()

    if practitioner is None:
        raise NotFoundError(f'Practitioner {practitioner_id} not found.', details={'practitioner_id': practitioner_id})

    return practitioner


def _ensure_location_attached(db: Session, practitioner_id: int, location_id: int) -> None:
    attached_location_ids = {
        row.location_id
        for row in db.query(PractitionerLocation.location_id).filter(
            PractitionerLocation.practitioner_id == practitioner_id,
        ).all()
    }

    if not attached_location_ids:
        raise OnboardingIncompleteError(
            'Attach at least one practice location before publishing availability.',
            code='locations_not_attached',
            details={'practitioner_id': practitioner_id},
        )

    if location_id not in attached_location_ids:
        raise OnboardingIncompleteError(
            'Practitioner is not attached to this location.',
            code='location_not_attached',
            details={'practitioner_id': practitioner_id, 'location_id': location_id},
        )


def _validate_windows(slots: Sequence, default_capacity: int) -> list[tuple[time, time, int]]:
    windows: list[tuple[time, time, int]] = []

    for index, slot in enumerate(slots):
        start_time, end_time = slot.start_time, slot.end_time
        capacity = getattr(slot, 'max_bookings', None)
        if capacity is None:
            capacity = default_capacity

        if start_time is None or end_time is None or start_time >= end_time:
            raise ValidationError(
                'Slot start time must be before its end time.',
                code='invalid_slot_range',
                details={'index': index, 'start_time': str(start_time), 'end_time': str(end_time)},
            )

        if capacity < 1:
            raise ValidationError(
                'Slot capacity must be at least 1.',
                code='invalid_slot_capacity',
                details={'index': index, 'max_bookings': capacity},
            )

        windows.append((start_time, end_time, capacity))

    return windows


def create_slots(
    db: Session,
    practitioner_id: int,
    location_id: int,
    slot_date: date,
    slots: Sequence,
    clock: Clock | None = None,
    default_capacity: int = 1,
) -> list[AvailabilitySlot]:
    """Persist a batch of slots, all or nothing.

    ``slots`` holds objects exposing ``start_time`` and ``end_time`` (and
    optionally ``max_bookings``). The batch is checked together with every
    slot already stored for the same practitioner, location and date.
    """
    clock = clock or SystemClock()
    windows = _validate_windows(slots, default_capacity)

    if not windows:
        raise ValidationError('At least one slot is required.', code='empty_slot_batch')

    def _create(session: Session) -> list[AvailabilitySlot]:
        lock_practitioner(session, practitioner_id)

        if session.query(Location.id).filter(Location.id == location_id).first() is None:
            raise NotFoundError(f'Location {location_id} not found.', details={'location_id': location_id})

        _ensure_location_attached(session, practitioner_id, location_id)

        existing = session.query(AvailabilitySlot.start_time, AvailabilitySlot.end_time).filter(
            AvailabilitySlot.practitioner_id == practitioner_id,
            AvailabilitySlot.location_id == location_id,
            AvailabilitySlot.date == slot_date,
        ).all()

        candidate_ranges = [(start, end) for start, end, _ in windows]
        overlap = find_overlap(candidate_ranges + [(row.start_time, row.end_time) for row in existing])
        if overlap:
            first, second = overlap
            logger.warning(
                'Rejected overlapping slots for practitioner %s at location %s on %s: %s and %s',
                practitioner_id,
                location_id,
                slot_date,
                _format_range(*first),
                _format_range(*second),
            )
            raise ConflictError(
                f'Slot {_format_range(*first)} overlaps slot {_format_range(*second)}.',
                code='slot_overlap',
                details={'first': _format_range(*first), 'second': _format_range(*second), 'date': slot_date.isoformat()},
            )

        created_at = clock.now()
        created = [
            AvailabilitySlot(
                practitioner_id=practitioner_id,
                location_id=location_id,
                date=slot_date,
                start_time=start_time,
                end_time=end_time,
                is_open=True,
                max_bookings=capacity,
                booked_count=0,
                created_at=created_at,
            )
            for start_time, end_time, capacity in sorted(windows)
        ]
        session.add_all(created)
        session.flush()
        return created

    try:
        created = run_in_transaction(db, _create)
    except IntegrityError as exc:
        raise ConflictError(
            'A slot starting at the same time was published concurrently.',
            code='slot_overlap',
            details={'date': slot_date.isoformat()},
        ) from exc
    for slot in created:
        db.refresh(slot)

    logger.info(
        'Published %s slots for practitioner %s at location %s on %s',
        len(created),
        practitioner_id,
        location_id,
        slot_date,
    )
    return created


def list_open_slots(db: Session, practitioner_id: int, location_id: int, slot_date: date) -> list[AvailabilitySlot]:
    return db.query(AvailabilitySlot).filter(
        AvailabilitySlot.practitioner_id == practitioner_id,
        AvailabilitySlot.location_id == location_id,
        AvailabilitySlot.date == slot_date,
        AvailabilitySlot.is_open.is_(True),
    ).order_by(AvailabilitySlot.start_time.asc()).all()


def list_practitioner_open_slots(db: Session, practitioner_id: int, slot_date: date | None = None) -> list[AvailabilitySlot]:
    """Open slots of a practitioner across every location, by date then start time."""
    query = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.practitioner_id == practitioner_id,
        AvailabilitySlot.is_open.is_(True),
    )
    if slot_date is not None:
        query = query.filter(AvailabilitySlot.date == slot_date)

    return query.order_by(
        AvailabilitySlot.date.asc(),
        AvailabilitySlot.start_time.asc(),
        AvailabilitySlot.location_id.asc(),
    ).all()


def get_slot(db: Session, slot_id: int, for_update: bool = False) -> AvailabilitySlot:
    query = db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id)
    if for_update:
        query = query.with_for_update().populate_existing()

    slot = query.first()
    if slot is None:
        raise NotFoundError(f'Availability slot {slot_id} not found.', details={'slot_id': slot_id})
    return slot


def close_slot(db: Session, slot_id: int, clock: Clock | None = None) -> AvailabilitySlot:
    """Withdraw a slot from booking. Closing a closed slot changes nothing."""
    clock = clock or SystemClock()

    def _close(session: Session) -> AvailabilitySlot:
        slot = get_slot(session, slot_id, for_update=True)
        if slot.withdrawn_at is None:
            slot.withdrawn_at = clock.now()
        slot.is_open = False
        return slot

    slot = run_in_transaction(db, _close)
    db.refresh(slot)
    return slot


def reopen_slot(db: Session, slot_id: int) -> AvailabilitySlot:
    """Undo a withdrawal. A slot with no remaining capacity stays closed."""

    def _reopen(session: Session) -> AvailabilitySlot:
        slot = get_slot(session, slot_id, for_update=True)
        slot.withdrawn_at = None
        slot.is_open = slot.booked_count < slot.max_bookings
        return slot

    slot = run_in_transaction(db, _reopen)
    db.refresh(slot)
    return slot


def hold_slot(db: Session, slot_id: int) -> None:
    """Take one unit of capacity from an open slot. The caller commits.

    The check and the increment are one conditional UPDATE, so two sessions
    racing for the last unit cannot both succeed.
    """
    held = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.is_open.is_(True),
        AvailabilitySlot.booked_count < AvailabilitySlot.max_bookings,
    ).update(
        {AvailabilitySlot.booked_count: AvailabilitySlot.booked_count + 1},
        synchronize_session=False,
    )

    if held != 1:
        raise SlotUnavailableError(
            'This time slot is no longer available. Please pick another time.',
            code='slot_unavailable',
            details={'slot_id': slot_id},
        )

    db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.booked_count >= AvailabilitySlot.max_bookings,
    ).update({AvailabilitySlot.is_open: False}, synchronize_session=False)


def release_slot(db: Session, slot_id: int) -> None:
    """Give one unit of capacity back. The caller commits."""
    db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.booked_count > 0,
    ).update(
        {AvailabilitySlot.booked_count: AvailabilitySlot.booked_count - 1},
        synchronize_session=False,
    )

    db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.withdrawn_at.is_(None),
        AvailabilitySlot.booked_count < AvailabilitySlot.max_bookings,
    ).update({AvailabilitySlot.is_open: True}, synchronize_session=False)


def has_any_slots(db: Session, practitioner_id: int) -> bool:
    return db.query(AvailabilitySlot.id).filter(
        AvailabilitySlot.practitioner_id == practitioner_id,
    ).first() is not None
