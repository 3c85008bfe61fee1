from datetime import timedelta

import pytest

from app.aggregate import NewAppointment
from app.audit import utcnow
from app.directory import DirectoryFetcher, Employee, Place, User
from app.errors import EmployeeNotFound, PlaceNotFound, UserNotFound
from app.paging import PageTokenCipher

from fakes import (
    FakeTransaction,
    InMemoryAppointmentReadRepository,
    InMemoryAppointmentRepository,
    InMemoryDirectoryRepository,
    InMemoryOrganizationReadRepository,
    InMemoryOrganizationRepository,
    RecordingPublisher,
)


@pytest.fixture
def cipher() -> PageTokenCipher:
    return PageTokenCipher.from_secret("test-secret")


@pytest.fixture
def future():
    return utcnow() + timedelta(days=1)


@pytest.fixture
def new_appointment(future) -> NewAppointment:
    return NewAppointment(
        id="appt-1",
        title="Haircut",
        place_id="place-1",
        scheduled_by="user-1",
        schedule_time=future,
        targeted_to="emp-1",
    )


@pytest.fixture
def call_log() -> list[str]:
    return []


@pytest.fixture
def transaction(call_log) -> FakeTransaction:
    return FakeTransaction(call_log)


@pytest.fixture
def publisher(call_log) -> RecordingPublisher:
    return RecordingPublisher(in_transaction=True, log=call_log)


@pytest.fixture
def organization_store() -> InMemoryOrganizationRepository:
    return InMemoryOrganizationRepository()


@pytest.fixture
def appointment_store() -> InMemoryAppointmentRepository:
    return InMemoryAppointmentRepository()


@pytest.fixture
def organization_reader(organization_store, cipher) -> InMemoryOrganizationReadRepository:
    return InMemoryOrganizationReadRepository(organization_store, cipher)


@pytest.fixture
def appointment_reader(appointment_store, cipher) -> InMemoryAppointmentReadRepository:
    return InMemoryAppointmentReadRepository(appointment_store, cipher)


@pytest.fixture
def places() -> DirectoryFetcher[Place]:
    repo = InMemoryDirectoryRepository("places", [Place("place-1", "Main St"), Place("place-2", "Harbor")])
    return DirectoryFetcher(repo, PlaceNotFound)


@pytest.fixture
def employees() -> DirectoryFetcher[Employee]:
    repo = InMemoryDirectoryRepository("employees", [Employee("emp-1", "Ana Barber")])
    return DirectoryFetcher(repo, EmployeeNotFound)


@pytest.fixture
def users() -> DirectoryFetcher[User]:
    repo = InMemoryDirectoryRepository("platform_users", [User("user-1", "Kim Client"), User("user-2", "Lee Client")])
    return DirectoryFetcher(repo, UserNotFound)
