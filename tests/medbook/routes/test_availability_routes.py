from datetime import date, time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from medbook.core.actor import ADMIN, CLIENT, PRACTITIONER, Actor
from medbook.routes.availability_routes import (
    CreateAvailabilityRequest,
    GenerateAvailabilityRequest,
    close_slot,
    create_availability,
    generate_availability,
    list_availability,
    list_practitioner_availability,
    reopen_slot,
)
from medbook.schemas import SlotWindow

TOMORROW = date(2026, 3, 3)


@pytest.fixture(autouse=True)
def database_ready(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('medbook.routes.availability_routes.ensure_database_ready', lambda: None)


@pytest.fixture
def onboarding_practitioner(seed):
    doctor = seed.practitioner()
    downtown = seed.location()
    seed.attach(doctor, downtown)
    return doctor, downtown


def _owner(doctor) -> Actor:
    return Actor(user_id=doctor.user_id, role=PRACTITIONER)


def test_create_availability_request_requires_slots() -> None:
    with pytest.raises(ValidationError):
        CreateAvailabilityRequest(practitioner_id=1, location_id=1, date=TOMORROW, slots=[])


def test_generate_availability_request_rejects_non_positive_duration() -> None:
    with pytest.raises(ValidationError):
        GenerateAvailabilityRequest(practitioner_id=1, location_id=1, date=TOMORROW, duration_minutes=0)


def test_generate_availability_request_defaults_to_working_day() -> None:
    request = GenerateAvailabilityRequest(practitioner_id=1, location_id=1, date=TOMORROW)

    assert (request.start_hour, request.end_hour, request.duration_minutes) == (9, 17, 30)
    assert request.excluded_hours == [12]


def test_create_availability_returns_created_slots(db, service, onboarding_practitioner) -> None:
    doctor, downtown = onboarding_practitioner
    request = CreateAvailabilityRequest(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        date=TOMORROW,
        slots=[SlotWindow(start_time=time(9, 0), end_time=time(9, 30))],
    )

    created = create_availability(data=request, actor=_owner(doctor), db=db, service=service)

    assert [(slot.start_time, slot.end_time) for slot in created] == [(time(9, 0), time(9, 30))]


def test_create_availability_rejects_other_practitioner(db, seed, service, onboarding_practitioner) -> None:
    doctor, downtown = onboarding_practitioner
    other = seed.practitioner(full_name='Dr. Lee')
    request = CreateAvailabilityRequest(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        date=TOMORROW,
        slots=[SlotWindow(start_time=time(9, 0), end_time=time(9, 30))],
    )

    with pytest.raises(HTTPException) as exception_info:
        create_availability(data=request, actor=_owner(other), db=db, service=service)

    assert exception_info.value.status_code == 403


def test_create_availability_maps_overlap_to_conflict(db, service, onboarding_practitioner) -> None:
    doctor, downtown = onboarding_practitioner
    request = CreateAvailabilityRequest(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        date=TOMORROW,
        slots=[
            SlotWindow(start_time=time(9, 0), end_time=time(10, 0)),
            SlotWindow(start_time=time(9, 30), end_time=time(10, 30)),
        ],
    )

    with pytest.raises(HTTPException) as exception_info:
        create_availability(data=request, actor=Actor(user_id=None, role=ADMIN), db=db, service=service)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['code'] == 'slot_overlap'


def test_create_availability_without_location_is_precondition_failure(db, seed, service) -> None:
    doctor = seed.practitioner()
    downtown = seed.location()
    request = CreateAvailabilityRequest(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        date=TOMORROW,
        slots=[SlotWindow(start_time=time(9, 0), end_time=time(9, 30))],
    )

    with pytest.raises(HTTPException) as exception_info:
        create_availability(data=request, actor=_owner(doctor), db=db, service=service)

    assert exception_info.value.status_code == 412


def test_generate_availability_then_list_open_slots(db, service, onboarding_practitioner) -> None:
    doctor, downtown = onboarding_practitioner
    request = GenerateAvailabilityRequest(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        date=TOMORROW,
        start_hour=9,
        end_hour=12,
        duration_minutes=60,
        excluded_hours=[],
    )

    generate_availability(data=request, actor=_owner(doctor), db=db, service=service)
    listed = list_availability(
        practitioner_id=doctor.id,
        location_id=downtown.id,
        slot_date=TOMORROW,
        db=db,
        service=service,
    )

    assert [slot.start_time for slot in listed] == [time(9, 0), time(10, 0), time(11, 0)]


def test_close_and_reopen_slot_routes(db, service, clinic) -> None:
    slot_id = clinic.slots[0].id
    owner = _owner(clinic.practitioner)

    assert close_slot(slot_id=slot_id, actor=owner, db=db, service=service).is_open is False
    assert reopen_slot(slot_id=slot_id, actor=owner, db=db, service=service).is_open is True


def test_client_cannot_close_slot(db, service, clinic) -> None:
    with pytest.raises(HTTPException) as exception_info:
        close_slot(slot_id=clinic.slots[0].id, actor=Actor(user_id=clinic.client.id, role=CLIENT), db=db, service=service)

    assert exception_info.value.status_code == 403


def test_close_unknown_slot_is_not_found(db, service) -> None:
    with pytest.raises(HTTPException) as exception_info:
        close_slot(slot_id=999, actor=Actor(user_id=None, role=ADMIN), db=db, service=service)

    assert exception_info.value.status_code == 404


def test_practitioner_availability_lists_every_open_slot(db, seed, service, onboarding_practitioner) -> None:
    doctor, downtown = onboarding_practitioner
    seed.slots(doctor, downtown, slot_date=date(2026, 3, 4), windows=((9, 0, 9, 30),))
    seed.slots(doctor, downtown, windows=((10, 0, 10, 30),))

    everything = list_practitioner_availability(practitioner_id=doctor.id, slot_date=None, db=db, service=service)
    one_day = list_practitioner_availability(practitioner_id=doctor.id, slot_date=TOMORROW, db=db, service=service)

    assert [(slot.date, slot.start_time) for slot in everything] == [
        (TOMORROW, time(10, 0)),
        (date(2026, 3, 4), time(9, 0)),
    ]
    assert [slot.date for slot in one_day] == [TOMORROW]
