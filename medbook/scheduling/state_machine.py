"""Appointment lifecycle after creation.

Every status change runs in one transaction together with its slot and
counter effects and its audit row. Notifications go out only once that
transaction has committed.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from medbook.core.actor import CLIENT, PRACTITIONER, SYSTEM, SYSTEM_ACTOR, Actor
from medbook.core.clock import Clock, SystemClock
from medbook.core.exceptions import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from medbook.database import run_in_transaction
from medbook.models.appointment import Appointment, AppointmentStatus, AppointmentStatusChange
from medbook.models.practitioner import Practitioner
from medbook.scheduling.availability_store import release_slot
from medbook.scheduling.notifications import Defer, NotificationDispatcher, build_event
from medbook.scheduling.policy import BookingPolicy, NotificationMode

logger = logging.getLogger(__name__)

S = AppointmentStatus

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.CANCELLED, S.NO_SHOW, S.EXPIRED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
}

ALLOWED_ROLES: dict[AppointmentStatus, frozenset[str]] = {
    S.CONFIRMED: frozenset({PRACTITIONER, SYSTEM}),
    S.IN_PROGRESS: frozenset({PRACTITIONER, SYSTEM}),
    S.COMPLETED: frozenset({PRACTITIONER, SYSTEM}),
    S.CANCELLED: frozenset({CLIENT, PRACTITIONER, SYSTEM}),
    S.NO_SHOW: frozenset({PRACTITIONER, SYSTEM}),
    S.EXPIRED: frozenset({SYSTEM}),
}

# Transitions that hand the held slot capacity back.
RELEASING_STATUSES = frozenset({S.CANCELLED, S.EXPIRED})


def parse_status(value: str | AppointmentStatus) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError as exc:
        raise ValidationError(
            f'Unknown appointment status {value!r}.',
            code='unknown_status',
            details={'status': str(value), 'allowed': [status.value for status in AppointmentStatus]},
        ) from exc


def appointment_start(appointment: Appointment) -> datetime:
    return datetime.combine(appointment.date, appointment.start_time)


def record_status_change(
    db: Session,
    appointment: Appointment,
    from_status: str | None,
    to_status: str,
    actor: Actor,
    changed_at: datetime,
) -> AppointmentStatusChange:
    change = AppointmentStatusChange(
        appointment_id=appointment.id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor.user_id,
        actor_role=actor.role,
        changed_at=changed_at,
    )
    db.add(change)
    return change


def load_appointment(db: Session, appointment_id: int, for_update: bool = False) -> Appointment:
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if for_update:
        query = query.with_for_update().populate_existing()

    appointment = query.first()
    if appointment is None:
        raise NotFoundError(f'Appointment {appointment_id} not found.', details={'appointment_id': appointment_id})
    return appointment


def _check_actor(db: Session, appointment: Appointment, target: AppointmentStatus, actor: Actor) -> None:
    role = SYSTEM if actor.is_system else actor.role
    if role not in ALLOWED_ROLES[target]:
        raise ForbiddenError(
            f'A {actor.role} cannot move an appointment to {target.value}.',
            code='transition_not_permitted',
            details={'role': actor.role, 'target_status': target.value},
        )

    if role == CLIENT and appointment.client_id != actor.user_id:
        raise ForbiddenError('Only the client who booked this appointment can change it.', code='not_appointment_client')

    if role == PRACTITIONER:
        owner_user_id = db.query(Practitioner.user_id).filter(Practitioner.id == appointment.practitioner_id).scalar()
        if owner_user_id != actor.user_id:
            raise ForbiddenError(
                'Only the practitioner of this appointment can change it.',
                code='not_appointment_practitioner',
            )


def _check_edge(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(
            f'Cannot move an appointment from {current.value} to {target.value}.',
            code='invalid_transition',
            details={'from_status': current.value, 'to_status': target.value},
        )


def _check_timing(
    appointment: Appointment,
    current: AppointmentStatus,
    target: AppointmentStatus,
    now: datetime,
    policy: BookingPolicy,
) -> None:
    if target in (S.COMPLETED, S.NO_SHOW) and now < appointment_start(appointment):
        raise InvalidTransitionError(
            f'An appointment cannot be marked {target.value} before it starts.',
            code='appointment_not_started',
            details={'from_status': current.value, 'to_status': target.value},
        )

    if target == S.EXPIRED and now - appointment.created_at <= policy.expiry_timeout:
        raise InvalidTransitionError(
            'The appointment has not been left unconfirmed long enough to expire.',
            code='expiry_timeout_not_reached',
            details={'from_status': current.value, 'to_status': target.value},
        )


def _apply_effects(db: Session, appointment: Appointment, target: AppointmentStatus) -> None:
    if target in RELEASING_STATUSES and appointment.slot_id is not None:
        release_slot(db, appointment.slot_id)

    if target == S.CANCELLED:
        if appointment.fee_captured:
            appointment.refund_requested = True
        db.query(Practitioner).filter(
            Practitioner.id == appointment.practitioner_id,
            Practitioner.total_appointments > 0,
        ).update(
            {Practitioner.total_appointments: Practitioner.total_appointments - 1},
            synchronize_session=False,
        )

    if target == S.COMPLETED:
        appointment.review_open = True
        db.query(Practitioner).filter(Practitioner.id == appointment.practitioner_id).update(
            {Practitioner.completed_appointments: Practitioner.completed_appointments + 1},
            synchronize_session=False,
        )


class AppointmentStateMachine:
    def __init__(
        self,
        clock: Clock | None = None,
        policy: BookingPolicy | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.policy = policy or BookingPolicy()
        self.dispatcher = dispatcher or NotificationDispatcher()

    def transition(
        self,
        db: Session,
        appointment_id: int,
        target_status: str | AppointmentStatus,
        actor: Actor,
        mode: NotificationMode | None = None,
        defer: Defer | None = None,
    ) -> Appointment:
        target = parse_status(target_status)
        now = self.clock.now()

        def _transition(session: Session) -> tuple[Appointment, str]:
            appointment = load_appointment(session, appointment_id, for_update=True)
            current = AppointmentStatus(appointment.status)

            _check_edge(current, target)
            _check_actor(session, appointment, target, actor)
            _check_timing(appointment, current, target, now, self.policy)
            _apply_effects(session, appointment, target)

            appointment.status = target.value
            appointment.updated_at = now
            record_status_change(session, appointment, current.value, target.value, actor, now)
            return appointment, current.value

        appointment, previous_status = run_in_transaction(db, _transition)
        db.refresh(appointment)
        logger.info('Appointment %s moved from %s to %s by %s', appointment.id, previous_status, target.value, actor.role)

        event, snapshot = build_event(target.value, appointment, now, previous_status=previous_status)
        self.dispatcher.publish(event, snapshot, NotificationMode(mode or self.policy.notification_mode), defer=defer)
        return appointment

    def expire(self, db: Session, appointment_id: int) -> Appointment:
        """Expire one stale appointment. An already expired one is left as is."""
        appointment = load_appointment(db, appointment_id)
        db.refresh(appointment)
        if appointment.status == S.EXPIRED.value:
            return appointment
        return self.transition(db, appointment_id, S.EXPIRED, SYSTEM_ACTOR)

    def expire_stale_appointments(self, db: Session) -> list[int]:
        """Expire every ``scheduled`` appointment older than the expiry timeout.

        Meant to be driven by an external periodic trigger. Running it again
        finds nothing new to expire.
        """
        cutoff = self.clock.now() - self.policy.expiry_timeout
        stale_ids = [
            row.id
            for row in db.query(Appointment.id).filter(
                Appointment.status == S.SCHEDULED.value,
                Appointment.created_at < cutoff,
            ).order_by(Appointment.id.asc()).all()
        ]

        expired: list[int] = []
        for appointment_id in stale_ids:
            try:
                self.expire(db, appointment_id)
            except InvalidTransitionError:
                # Confirmed or cancelled since the candidate query ran.
                logger.info('Skipped expiring appointment %s; its status changed meanwhile', appointment_id)
                continue
            expired.append(appointment_id)

        if expired:
            logger.info('Expired %s stale appointments', len(expired))
        return expired
