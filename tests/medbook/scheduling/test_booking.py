import threading
from datetime import date
from decimal import Decimal

import pytest

from medbook.core.exceptions import (
    BusinessRuleError,
    ClientConflictError,
    DoctorConflictError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from medbook.models.appointment import Appointment, AppointmentStatusChange
from medbook.models.practitioner import Practitioner
from medbook.scheduling import availability_store, practitioners
from medbook.scheduling.booking import MAX_APPOINTMENT_NOTES_LENGTH
from medbook.scheduling.policy import BookingPolicy, NotificationMode
from medbook.scheduling.service import SchedulingService

TOMORROW = date(2026, 3, 3)


def _book(service, db, clinic, slot_index=0, client_id=None, **kwargs):
    slot = clinic.slots[slot_index]
    return service.book_appointment(
        db,
        client_id or clinic.client.id,
        clinic.practitioner.id,
        clinic.location.id,
        slot.id,
        slot.date,
        **kwargs,
    )


def _onboarded(seed, fee='80.00', slot_date=TOMORROW, window=(9, 0, 9, 30), capacity=None, full_name='Dr. Ada Park'):
    doctor = seed.practitioner(fee=fee, full_name=full_name)
    location = seed.location()
    seed.attach(doctor, location)
    (slot,) = seed.slots(doctor, location, slot_date=slot_date, windows=(window,), capacity=capacity)
    return doctor, location, slot


def test_book_slot_creates_scheduled_appointment_and_holds_slot(db, clinic, service, notifier) -> None:
    confirmation = _book(service, db, clinic, notes='  First visit  ')
    appointment = confirmation.appointment

    assert appointment.status == 'scheduled'
    assert appointment.fee == Decimal('80.00')
    assert appointment.slot_id == clinic.slots[0].id
    assert (appointment.start_time, appointment.end_time) == (clinic.slots[0].start_time, clinic.slots[0].end_time)
    assert confirmation.reference == f'APT-{appointment.id:06d}'
    assert confirmation.practitioner_name == 'Dr. Ada Park'
    assert confirmation.location_name == 'Downtown Clinic'
    assert confirmation.notification_mode == 'immediate'

    slot = availability_store.get_slot(db, clinic.slots[0].id)
    assert slot.booked_count == 1
    assert slot.is_open is False
    assert db.query(Practitioner).filter(Practitioner.id == clinic.practitioner.id).one().total_appointments == 1

    audit = db.query(AppointmentStatusChange).filter(AppointmentStatusChange.appointment_id == appointment.id).all()
    assert [(change.from_status, change.to_status, change.actor_role) for change in audit] == [
        (None, 'scheduled', 'client'),
    ]
    assert notifier.events == [('created', appointment.id, 'scheduled')]


def test_booking_the_same_slot_twice_fails_on_second_call(db, clinic, seed, service) -> None:
    _book(service, db, clinic)
    other_client = seed.user()

    with pytest.raises(SlotUnavailableError) as exception_info:
        _book(service, db, clinic, client_id=other_client.id)

    assert exception_info.value.code == 'slot_unavailable'
    assert db.query(Appointment).count() == 1
    assert availability_store.get_slot(db, clinic.slots[0].id).booked_count == 1


def test_client_cannot_hold_two_overlapping_appointments(db, clinic, seed, service) -> None:
    _book(service, db, clinic)
    other_doctor, other_location, overlapping = _onboarded(seed, window=(9, 15, 9, 45), full_name='Dr. Lee')

    with pytest.raises(ClientConflictError) as exception_info:
        service.book_appointment(
            db,
            clinic.client.id,
            other_doctor.id,
            other_location.id,
            overlapping.id,
            overlapping.date,
        )

    assert exception_info.value.code == 'client_conflict'
    assert availability_store.get_slot(db, overlapping.id).booked_count == 0


def test_practitioner_cannot_be_booked_at_two_locations_at_once(db, clinic, seed, service) -> None:
    uptown = seed.location('Uptown Clinic')
    seed.attach(clinic.practitioner, uptown)
    (uptown_slot,) = seed.slots(clinic.practitioner, uptown, windows=((9, 0, 9, 30),))
    _book(service, db, clinic)
    other_client = seed.user()

    with pytest.raises(DoctorConflictError) as exception_info:
        service.book_appointment(
            db,
            other_client.id,
            clinic.practitioner.id,
            uptown.id,
            uptown_slot.id,
            uptown_slot.date,
        )

    assert exception_info.value.code == 'doctor_conflict'
    assert str(exception_info.value) != 'This time slot is no longer available. Please pick another time.'


def test_group_slot_accepts_bookings_up_to_capacity(db, seed, service) -> None:
    doctor, location, slot = _onboarded(seed, capacity=2)
    clients = [seed.user() for _ in range(3)]

    for client in clients[:2]:
        service.book_appointment(db, client.id, doctor.id, location.id, slot.id, slot.date)

    with pytest.raises(SlotUnavailableError):
        service.book_appointment(db, clients[2].id, doctor.id, location.id, slot.id, slot.date)

    assert availability_store.get_slot(db, slot.id).booked_count == 2


def test_booking_rejects_slot_from_another_date(db, clinic, service) -> None:
    slot = clinic.slots[0]

    with pytest.raises(ValidationError) as exception_info:
        service.book_appointment(
            db,
            clinic.client.id,
            clinic.practitioner.id,
            clinic.location.id,
            slot.id,
            date(2026, 3, 4),
        )

    assert exception_info.value.code == 'slot_mismatch'


def test_booking_rejects_unknown_client(db, clinic, service) -> None:
    with pytest.raises(NotFoundError):
        _book(service, db, clinic, client_id=9999)

    assert availability_store.get_slot(db, clinic.slots[0].id).booked_count == 0


def test_booking_rejects_overlong_notes(db, clinic, service) -> None:
    with pytest.raises(ValidationError) as exception_info:
        _book(service, db, clinic, notes='x' * (MAX_APPOINTMENT_NOTES_LENGTH + 1))

    assert exception_info.value.code == 'notes_too_long'


@pytest.mark.parametrize(
    ('overrides', 'code'),
    [
        ({'slot_date': date(2026, 3, 1)}, 'date_in_past'),
        ({'slot_date': date(2026, 3, 2), 'window': (7, 30, 8, 0)}, 'slot_already_started'),
        ({'slot_date': date(2026, 4, 5)}, 'beyond_booking_horizon'),
        ({'fee': '0'}, 'fee_not_positive'),
    ],
)
def test_booking_enforces_business_rules(db, seed, service, overrides: dict, code: str) -> None:
    doctor, location, slot = _onboarded(seed, **overrides)
    client = seed.user()

    with pytest.raises(BusinessRuleError) as exception_info:
        service.book_appointment(db, client.id, doctor.id, location.id, slot.id, slot.date)

    assert exception_info.value.code == code
    assert db.query(Appointment).count() == 0
    assert availability_store.get_slot(db, slot.id).booked_count == 0


def test_booking_on_the_last_day_of_the_horizon_is_allowed(db, seed, service) -> None:
    doctor, location, slot = _onboarded(seed, slot_date=date(2026, 4, 1))
    client = seed.user()

    confirmation = service.book_appointment(db, client.id, doctor.id, location.id, slot.id, slot.date)

    assert confirmation.appointment.date == date(2026, 4, 1)


def test_booking_rejects_inactive_practitioner(db, clinic, service) -> None:
    practitioners.deactivate_practitioner(db, clinic.practitioner.id)

    with pytest.raises(BusinessRuleError) as exception_info:
        _book(service, db, clinic)

    assert exception_info.value.code == 'practitioner_inactive'


def test_booking_can_require_verified_practitioner(db, clinic, clock, notifier) -> None:
    strict = SchedulingService(clock=clock, policy=BookingPolicy(require_verified_practitioner=True), notifier=notifier)

    with pytest.raises(BusinessRuleError) as exception_info:
        _book(strict, db, clinic)

    assert exception_info.value.code == 'practitioner_unverified'


def test_deferred_booking_queues_notification_until_flush(db, clinic, service, notifier) -> None:
    confirmation = _book(service, db, clinic, mode=NotificationMode.DEFERRED)

    assert confirmation.notification_mode == 'deferred'
    assert notifier.events == []
    assert service.dispatcher.pending_count == 1

    assert service.dispatcher.flush() == 1
    assert notifier.names == ['created']
    assert service.dispatcher.pending_count == 0


def test_deferred_booking_hands_dispatch_to_background_hook(db, clinic, service, notifier) -> None:
    scheduled = []

    _book(service, db, clinic, mode=NotificationMode.DEFERRED, defer=lambda func, *args: scheduled.append((func, args)))

    assert notifier.events == []
    assert len(scheduled) == 1
    func, args = scheduled[0]
    func(*args)
    assert notifier.names == ['created']


def test_notifier_failure_does_not_undo_booking(db, clinic, service, notifier) -> None:
    notifier.fail = True

    confirmation = _book(service, db, clinic)

    assert db.query(Appointment).filter(Appointment.id == confirmation.appointment.id).count() == 1
    assert availability_store.get_slot(db, clinic.slots[0].id).booked_count == 1


def test_two_sessions_racing_for_one_slot_book_it_once(file_session_factory, make_seeder, service) -> None:
    setup = file_session_factory()
    seeder = make_seeder(setup)
    doctor, location, slot = _onboarded(seeder)
    first_client_id, second_client_id = seeder.user().id, seeder.user().id
    doctor_id, location_id, slot_id, slot_date = doctor.id, location.id, slot.id, slot.date
    setup.close()

    first, second = file_session_factory(), file_session_factory()
    try:
        # The second session sees the slot open before the first one commits its booking.
        assert availability_store.get_slot(second, slot_id).is_open is True

        service.book_appointment(first, first_client_id, doctor_id, location_id, slot_id, slot_date)

        with pytest.raises(SlotUnavailableError):
            availability_store.hold_slot(second, slot_id)
        second.rollback()

        with pytest.raises(SlotUnavailableError):
            service.book_appointment(second, second_client_id, doctor_id, location_id, slot_id, slot_date)

        assert second.query(Appointment).count() == 1
        assert availability_store.get_slot(second, slot_id).booked_count == 1
    finally:
        first.close()
        second.close()


def test_concurrent_bookings_for_last_unit_commit_once(file_session_factory, make_seeder, service) -> None:
    setup = file_session_factory()
    seeder = make_seeder(setup)
    doctor, location, slot = _onboarded(seeder)
    client_ids = [seeder.user().id, seeder.user().id]
    doctor_id, location_id, slot_id, slot_date = doctor.id, location.id, slot.id, slot.date
    setup.close()

    barrier = threading.Barrier(len(client_ids))
    results: list[str] = []

    def _attempt(client_id: int) -> None:
        session = file_session_factory()
        try:
            barrier.wait()
            service.book_appointment(session, client_id, doctor_id, location_id, slot_id, slot_date)
            results.append('ok')
        except SlotUnavailableError as exc:
            results.append(type(exc).__name__)
        finally:
            session.close()

    workers = [threading.Thread(target=_attempt, args=(client_id,)) for client_id in client_ids]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert sorted(results) == ['SlotUnavailableError', 'ok']

    check = file_session_factory()
    try:
        assert check.query(Appointment).filter(Appointment.slot_id == slot_id).count() == 1
        assert availability_store.get_slot(check, slot_id).booked_count == 1
    finally:
        check.close()
