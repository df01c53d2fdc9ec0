"""Library boundary of the scheduling core.

``SchedulingService`` wires the generator, store, tracker, booking engine and
state machine around one clock, one policy and one notification dispatcher.
Callers hand in the ``Session`` for each call, so no state is shared between
requests beyond what the database holds.
"""

import logging
from datetime import date
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from medbook.core.actor import CLIENT, PRACTITIONER, Actor
from medbook.core.clock import Clock, SystemClock
from medbook.database import run_in_transaction
from medbook.models.appointment import Appointment, AppointmentStatus
from medbook.models.availability import AvailabilitySlot
from medbook.models.practitioner import Practitioner
from medbook.schemas import BookingConfirmation, OnboardingStatus
from medbook.scheduling import availability_store, onboarding
from medbook.scheduling.booking import BookingEngine
from medbook.scheduling.notifications import Defer, NotificationDispatcher, Notifier
from medbook.scheduling.policy import BookingPolicy, NotificationMode
from medbook.scheduling.slot_generator import (
    DEFAULT_BREAK_HOURS,
    DEFAULT_END_HOUR,
    DEFAULT_SLOT_DURATION_MINUTES,
    DEFAULT_START_HOUR,
    generate_slots,
)
from medbook.scheduling.state_machine import AppointmentStateMachine

logger = logging.getLogger(__name__)


class SchedulingService:
    def __init__(
        self,
        clock: Clock | None = None,
        policy: BookingPolicy | None = None,
        notifier: Notifier | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.policy = policy or BookingPolicy.from_config()
        self.dispatcher = dispatcher or NotificationDispatcher(notifier)
        self.booking = BookingEngine(self.clock, self.policy, self.dispatcher)
        self.state_machine = AppointmentStateMachine(self.clock, self.policy, self.dispatcher)

    def create_availability(
        self,
        db: Session,
        practitioner_id: int,
        location_id: int,
        slot_date: date,
        slots: Sequence,
    ) -> list[AvailabilitySlot]:
        created = availability_store.create_slots(
            db,
            practitioner_id,
            location_id,
            slot_date,
            slots,
            clock=self.clock,
            default_capacity=self.policy.default_slot_capacity,
        )
        run_in_transaction(db, lambda session: onboarding.refresh_flags(session, practitioner_id))
        return created

    def generate_availability(
        self,
        db: Session,
        practitioner_id: int,
        location_id: int,
        slot_date: date,
        start_hour: int = DEFAULT_START_HOUR,
        end_hour: int = DEFAULT_END_HOUR,
        duration_minutes: int = DEFAULT_SLOT_DURATION_MINUTES,
        excluded_hours: Iterable[int] | None = DEFAULT_BREAK_HOURS,
    ) -> list[AvailabilitySlot]:
        """Generate a day of slots from shift settings and publish them."""
        candidates = list(generate_slots(start_hour, end_hour, duration_minutes, excluded_hours, slot_date))
        return self.create_availability(db, practitioner_id, location_id, slot_date, candidates)

    def list_availability(
        self,
        db: Session,
        practitioner_id: int,
        location_id: int,
        slot_date: date,
    ) -> list[AvailabilitySlot]:
        return availability_store.list_open_slots(db, practitioner_id, location_id, slot_date)

    def list_practitioner_availability(
        self,
        db: Session,
        practitioner_id: int,
        slot_date: date | None = None,
    ) -> list[AvailabilitySlot]:
        return availability_store.list_practitioner_open_slots(db, practitioner_id, slot_date)

    def close_slot(self, db: Session, slot_id: int) -> AvailabilitySlot:
        return availability_store.close_slot(db, slot_id, clock=self.clock)

    def reopen_slot(self, db: Session, slot_id: int) -> AvailabilitySlot:
        return availability_store.reopen_slot(db, slot_id)

    def book_appointment(
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
        return self.booking.book_slot(
            db,
            client_id,
            practitioner_id,
            location_id,
            slot_id,
            slot_date,
            notes=notes,
            mode=mode,
            defer=defer,
        )

    def transition_appointment(
        self,
        db: Session,
        appointment_id: int,
        target_status: str | AppointmentStatus,
        actor: Actor,
        defer: Defer | None = None,
    ) -> Appointment:
        return self.state_machine.transition(
            db,
            appointment_id,
            target_status,
            actor,
            mode=self.policy.notification_mode,
            defer=defer,
        )

    def expire_stale_appointments(self, db: Session) -> list[int]:
        expired = self.state_machine.expire_stale_appointments(db)
        self.flush_notifications()
        return expired

    def flush_notifications(self) -> int:
        """Deliver deferred events that were published without a ``defer`` hook."""
        delivered = self.dispatcher.flush()
        if delivered:
            logger.info('Delivered %s deferred notifications', delivered)
        return delivered

    def get_onboarding_status(self, db: Session, practitioner_id: int) -> OnboardingStatus:
        return onboarding.compute_status(db, practitioner_id)

    def list_appointments(self, db: Session, actor: Actor) -> list[Appointment]:
        """Appointments visible to the actor, earliest first."""
        query = db.query(Appointment)

        if actor.role == CLIENT:
            query = query.filter(Appointment.client_id == actor.user_id)
        elif actor.role == PRACTITIONER:
            practitioner_ids = db.query(Practitioner.id).filter(Practitioner.user_id == actor.user_id)
            query = query.filter(Appointment.practitioner_id.in_(practitioner_ids.scalar_subquery()))
        elif not actor.is_system:
            return []

        return query.order_by(Appointment.date.asc(), Appointment.start_time.asc()).all()
