import os
from datetime import date, datetime, time
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from medbook.core.clock import FixedClock  # noqa: E402
from medbook.database import Base, build_engine  # noqa: E402
from medbook.models import appointment, availability, location, practitioner, user  # noqa: E402,F401
from medbook.models.practitioner import Specialty  # noqa: E402
from medbook.models.user import User  # noqa: E402
from medbook.schemas import SlotWindow  # noqa: E402
from medbook.scheduling import availability_store, practitioners  # noqa: E402
from medbook.scheduling.policy import BookingPolicy  # noqa: E402
from medbook.scheduling.service import SchedulingService  # noqa: E402

TODAY = datetime(2026, 3, 2, 8, 0)
TOMORROW = date(2026, 3, 3)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events = []
        self.fail = False

    def notify(self, event, appointment) -> None:
        if self.fail:
            raise RuntimeError('notifier is down')
        self.events.append((event.name, appointment.id, appointment.status))

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]


class Seeder:
    """Builds users, practitioners, locations and slots through the real services."""

    def __init__(self, db, clock) -> None:
        self.db = db
        self.clock = clock
        self._emails = 0

    def user(self, role: str = 'client', full_name: str | None = None) -> User:
        self._emails += 1
        record = User(email=f'user{self._emails}@example.com', full_name=full_name, role=role)
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def practitioner(self, fee: str = '80.00', complete_profile: bool = True, full_name: str = 'Dr. Ada Park'):
        account = self.user(role='practitioner', full_name=full_name)
        record = practitioners.register_practitioner(self.db, account.id)
        changes = {'fee': Decimal(fee)}
        if complete_profile:
            changes.update(years_of_experience=7, license_number='LIC-1001', bio='General practice.')
            changes['specialty_id'] = self.specialty().id
        return practitioners.update_profile(self.db, record.id, **changes)

    def specialty(self, name: str = 'General Medicine'):
        existing = self.db.query(Specialty).filter(Specialty.name == name).first()
        if existing is not None:
            return existing
        record = Specialty(name=name)
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def location(self, name: str = 'Downtown Clinic'):
        return practitioners.create_location(self.db, name, '1 Main Street')

    def attach(self, practitioner_record, location_record):
        return practitioners.attach_location(self.db, practitioner_record.id, location_record.id, clock=self.clock)

    def slots(self, practitioner_record, location_record, slot_date=TOMORROW, windows=((9, 0, 9, 30),), capacity=None):
        return availability_store.create_slots(
            self.db,
            practitioner_record.id,
            location_record.id,
            slot_date,
            [
                SlotWindow(start_time=time(sh, sm), end_time=time(eh, em), max_bookings=capacity)
                for sh, sm, eh, em in windows
            ],
            clock=self.clock,
        )


@pytest.fixture
def engine():
    test_engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def db(engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TODAY)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(clock, notifier) -> SchedulingService:
    return SchedulingService(clock=clock, policy=BookingPolicy(), notifier=notifier)


@pytest.fixture
def seed(db, clock) -> Seeder:
    return Seeder(db, clock)


@pytest.fixture
def clinic(seed):
    """One onboarded practitioner with two morning slots tomorrow and one client."""
    doctor = seed.practitioner()
    downtown = seed.location()
    seed.attach(doctor, downtown)
    slots = seed.slots(doctor, downtown, windows=((9, 0, 9, 30), (9, 30, 10, 0)))
    client = seed.user(full_name='Sam Client')
    return SimpleNamespace(practitioner=doctor, location=downtown, slots=slots, client=client)


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file-backed database, so two sessions see each other's commits."""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'scheduling.db'}", 'SERIALIZABLE')
    Base.metadata.create_all(bind=file_engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    finally:
        file_engine.dispose()


@pytest.fixture
def make_seeder(clock):
    return lambda session: Seeder(session, clock)
