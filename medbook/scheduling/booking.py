"""Atomic reservation of an availability slot into an appointment.

Both booking paths, immediate confirmation and deferred notification, go
through ``BookingEngine.book_slot``. The ``mode`` argument only chooses when
the ``created`` notification is sent.
"""

import logging
from datetime import date, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medbook.core.actor import CLIENT, Actor
from medbook.core.clock import Clock, SystemClock
from medbook.core.exceptions import (
    BusinessRuleError,
    ClientConflictError,
    DoctorConflictError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from medbook.database import run_in_transaction
from medbook.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from medbook.models.availability import AvailabilitySlot
from medbook.models.location import Location
from medbook.models.practitioner import Practitioner
from medbook.models.user import User
from medbook.schemas import AppointmentResponse, BookingConfirmation
from medbook.scheduling.availability_store import get_slot, hold_slot, lock_practitioner
from medbook.scheduling.notifications import Defer, NotificationDispatcher, build_event
from medbook.scheduling.policy import BookingPolicy, NotificationMode
from medbook.scheduling.state_machine import record_status_change

logger = logging.getLogger(__name__)

MAX_APPOINTMENT_NOTES_LENGTH = 600

ACTIVE_STATUS_VALUES = [status.value for status in ACTIVE_STATUSES]

CONFIRMATION_MESSAGES = {
    NotificationMode.IMMEDIATE: 'Appointment booked. Confirmation details have been sent.',
    NotificationMode.DEFERRED: 'Appointment booked. You will receive a confirmation shortly.',
}


def _overlapping_active_appointments(db: Session, slot: AvailabilitySlot):
    return db.query(Appointment).filter(
        Appointment.date == slot.date,
        Appointment.status.in_(ACTIVE_STATUS_VALUES),
        Appointment.start_time < slot.end_time,
        Appointment.end_time > slot.start_time,
    )


def _load_available_slot(
    db: Session,
    slot_id: int,
    practitioner_id: int,
    location_id: int,
    slot_date: date,
) -> AvailabilitySlot:
    slot = get_slot(db, slot_id, for_update=True)

    if (slot.practitioner_id, slot.location_id, slot.date) != (practitioner_id, location_id, slot_date):
        raise ValidationError(
            'The slot does not belong to this practitioner, location and date.',
            code='slot_mismatch',
            details={'slot_id': slot_id},
        )

    if not slot.is_open or slot.remaining_capacity == 0:
        raise SlotUnavailableError(
            'This time slot is no longer available. Please pick another time.',
            code='slot_unavailable',
            details={'slot_id': slot_id},
        )

    return slot


def _check_practitioner_conflict(db: Session, slot: AvailabilitySlot) -> None:
    # Bookings on this same slot are bounded by its capacity instead.
    conflict = _overlapping_active_appointments(db, slot).filter(
        Appointment.practitioner_id == slot.practitioner_id,
        or_(Appointment.slot_id.is_(None), Appointment.slot_id != slot.id),
    ).first()

    if conflict is not None:
        logger.warning('Practitioner %s already booked at %s %s', slot.practitioner_id, slot.date, slot.start_time)
        raise DoctorConflictError(
            "This doctor's time was just taken by another booking. Please choose a different time.",
            code='doctor_conflict',
            details={'slot_id': slot.id, 'conflicting_appointment_id': conflict.id},
        )


def _check_client_conflict(db: Session, slot: AvailabilitySlot, client_id: int) -> None:
    conflict = _overlapping_active_appointments(db, slot).filter(
        Appointment.client_id == client_id,
    ).first()

    if conflict is not None:
        raise ClientConflictError(
            'You already have an appointment that overlaps this time.',
            code='client_conflict',
            details={'slot_id': slot.id, 'conflicting_appointment_id': conflict.id},
        )


class BookingEngine:
    def __init__(
        self,
        clock: Clock | None = None,
        policy: BookingPolicy | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.policy = policy or BookingPolicy()
        self.dispatcher = dispatcher or NotificationDispatcher()

    def check_business_rules(self, slot: AvailabilitySlot, practitioner: Practitioner) -> None:
        now = self.clock.now()
        today = now.date()

        if slot.date < today:
            raise BusinessRuleError('Cannot book an appointment in the past.', code='date_in_past')

        if slot.date == today and slot.start_time <= now.time():
            raise BusinessRuleError('This slot has already started.', code='slot_already_started')

        if slot.date > today + timedelta(days=self.policy.booking_horizon_days):
            raise BusinessRuleError(
                f'Cannot book more than {self.policy.booking_horizon_days} days in advance.',
                code='beyond_booking_horizon',
                details={'booking_horizon_days': self.policy.booking_horizon_days},
            )

        if practitioner.fee is None or practitioner.fee <= 0:
            raise BusinessRuleError('Appointment fee must be greater than 0.', code='fee_not_positive')

        if not practitioner.is_active:
            raise BusinessRuleError('This practitioner is not currently accepting bookings.', code='practitioner_inactive')

        if self.policy.require_verified_practitioner and not practitioner.is_verified:
            raise BusinessRuleError('Cannot book with an unverified practitioner.', code='practitioner_unverified')

    def reserve(
        self,
        db: Session,
        client_id: int,
        practitioner_id: int,
        location_id: int,
        slot_id: int,
        slot_date: date,
        notes: str | None = None,
    ) -> Appointment:
        """Run every booking check and create the appointment in one transaction."""
        if notes is not None and len(notes) > MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValidationError(
                f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.',
                code='notes_too_long',
            )

        def _reserve(session: Session) -> Appointment:
            slot = _load_available_slot(session, slot_id, practitioner_id, location_id, slot_date)
            practitioner = lock_practitioner(session, practitioner_id)

            client = session.query(User).filter(User.id == client_id).with_for_update().populate_existing().first()
            if client is None:
                raise NotFoundError(f'Client {client_id} not found.', details={'client_id': client_id})

            _check_practitioner_conflict(session, slot)
            _check_client_conflict(session, slot, client_id)
            self.check_business_rules(slot, practitioner)

            now = self.clock.now()
            hold_slot(session, slot.id)

            appointment = Appointment(
                practitioner_id=practitioner_id,
                client_id=client_id,
                location_id=location_id,
                slot_id=slot.id,
                date=slot.date,
                start_time=slot.start_time,
                end_time=slot.end_time,
                status=AppointmentStatus.SCHEDULED.value,
                fee=practitioner.fee,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
            session.add(appointment)
            session.flush()

            practitioner.total_appointments = (practitioner.total_appointments or 0) + 1
            record_status_change(
                session,
                appointment,
                None,
                AppointmentStatus.SCHEDULED.value,
                Actor(user_id=client_id, role=CLIENT),
                now,
            )
            return appointment

        try:
            appointment = run_in_transaction(db, _reserve)
        except IntegrityError as exc:
            raise SlotUnavailableError(
                'This time slot is no longer available. Please pick another time.',
                code='slot_unavailable',
                details={'slot_id': slot_id},
            ) from exc

        db.refresh(appointment)
        logger.info(
            'Booked appointment %s for client %s with practitioner %s on %s at %s',
            appointment.id,
            client_id,
            practitioner_id,
            appointment.date,
            appointment.start_time,
        )
        return appointment

    def book_slot(
        self,
        db: Session,
        client_id: int,
        practitioner_id: int,
        location_id: int,
        slot_id: int,
        slot_date: date,
        notes: str | None = None,
        mode: NotificationMode | None = None,
        defer: Defer | None = None,
    ) -> BookingConfirmation:
        mode = NotificationMode(mode or self.policy.notification_mode)
        appointment = self.reserve(db, client_id, practitioner_id, location_id, slot_id, slot_date, notes=notes)

        event, snapshot = build_event('created', appointment, self.clock.now())
        self.dispatcher.publish(event, snapshot, mode, defer=defer)

        return self._build_confirmation(db, appointment, mode)

    def _build_confirmation(self, db: Session, appointment: Appointment, mode: NotificationMode) -> BookingConfirmation:
        practitioner_name = db.query(User.full_name).join(
            Practitioner, Practitioner.user_id == User.id,
        ).filter(Practitioner.id == appointment.practitioner_id).scalar()
        location_name = db.query(Location.name).filter(Location.id == appointment.location_id).scalar()

        return BookingConfirmation(
            appointment=AppointmentResponse.model_validate(appointment),
            reference=f'APT-{appointment.id:06d}',
            practitioner_name=practitioner_name,
            location_name=location_name,
            message=CONFIRMATION_MESSAGES[mode],
            notification_mode=mode.value,
        )
