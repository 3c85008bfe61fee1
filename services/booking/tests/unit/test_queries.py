"""Unit tests for the read-side fetchers and listers."""
from dataclasses import replace
from datetime import timedelta

import pytest

from app.aggregate import Appointment, Organization
from app.directory import Employee, Place, User
from app.errors import AppointmentNotFound, NoResults, OrganizationNotFound, PlaceNotFound
from app.queries import AppointmentFetcher, OrganizationFetcher, OrganizationLister


@pytest.fixture
def fetcher(appointment_reader, places, employees, users) -> AppointmentFetcher:
    return AppointmentFetcher(appointment_reader, places=places, employees=employees, users=users)


async def _seed(store, new_appointment, count: int = 3, prefix: str = "appt", **overrides) -> list[Appointment]:
    saved = []
    for i in range(count):
        args = replace(
            new_appointment,
            id=f"{prefix}-{i}",
            schedule_time=new_appointment.schedule_time + timedelta(hours=i),
            **overrides,
        )
        appt = Appointment.new(args, args.scheduled_by)
        await store.save(appt)
        saved.append(appt)
    return saved


# ── Organizations ────────────────────────────────


class TestOrganizationQueries:
    @pytest.mark.asyncio
    async def test_get_by_id(self, organization_store, organization_reader):
        await organization_store.save(Organization.new("org-1", "Acme", "user-1"))
        org = await OrganizationFetcher(organization_reader).get_by_id("org-1")
        assert org.name == "Acme"

    @pytest.mark.asyncio
    async def test_get_deleted_is_not_found(self, organization_store, organization_reader):
        org = Organization.new("org-1", "Acme", "user-1")
        org.delete("user-1")
        await organization_store.save(org)
        with pytest.raises(OrganizationNotFound):
            await OrganizationFetcher(organization_reader).get_by_id("org-1")

    @pytest.mark.asyncio
    async def test_list_skips_deleted(self, organization_store, organization_reader):
        for i, name in enumerate(["A", "B", "C"]):
            org = Organization.new(f"org-{i}", name, "user-1")
            if name == "B":
                org.delete("user-1")
            await organization_store.save(org)

        page = await OrganizationLister(organization_reader).list(page_size=10)
        assert [org.name for org in page.items] == ["A", "C"]
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_list_including_deleted(self, organization_store, organization_reader):
        org = Organization.new("org-1", "A", "user-1")
        org.delete("user-1")
        await organization_store.save(org)
        page = await OrganizationLister(organization_reader).list(non_deleted_only=False)
        assert page.total_items == 1

    @pytest.mark.asyncio
    async def test_empty_list_is_no_results(self, organization_reader):
        with pytest.raises(NoResults):
            await OrganizationLister(organization_reader).list()


# ── Appointments ─────────────────────────────────


class TestAppointmentFetcher:
    @pytest.mark.asyncio
    async def test_get_by_key_resolves_references(self, appointment_store, fetcher, new_appointment):
        await appointment_store.save(Appointment.new(new_appointment, "user-1"))
        details = await fetcher.get_by_key("appt-1")
        assert details.place == Place("place-1", "Main St")
        assert details.targeted_to == Employee("emp-1", "Ana Barber")
        assert details.scheduled_by == User("user-1", "Kim Client")
        assert details.status == "SCHEDULED"

    @pytest.mark.asyncio
    async def test_get_by_key_without_employee(self, appointment_store, fetcher, new_appointment):
        await appointment_store.save(Appointment.new(replace(new_appointment, targeted_to=None), "user-1"))
        details = await fetcher.get_by_key("appt-1")
        assert details.targeted_to is None

    @pytest.mark.asyncio
    async def test_get_by_key_with_unknown_place(self, appointment_store, fetcher, new_appointment):
        await appointment_store.save(Appointment.new(replace(new_appointment, place_id="nowhere"), "user-1"))
        with pytest.raises(PlaceNotFound):
            await fetcher.get_by_key("appt-1")

    @pytest.mark.asyncio
    async def test_get_missing(self, fetcher):
        with pytest.raises(AppointmentNotFound):
            await fetcher.get_by_key("missing")

    @pytest.mark.asyncio
    async def test_list_by_user_newest_first(self, appointment_store, fetcher, new_appointment):
        await _seed(appointment_store, new_appointment, count=3)
        await _seed(appointment_store, new_appointment, count=1, prefix="other", scheduled_by="user-2")

        page = await fetcher.list_by_user("user-1", page_size=2)
        assert [item.id for item in page.items] == ["appt-2", "appt-1"]
        assert page.items[0].place == Place("place-1", "Main St")
        assert page.next_page_token is not None

        rest = await fetcher.list_by_user("user-1", page_token=page.next_page_token)
        assert [item.id for item in rest.items] == ["appt-0"]
        assert rest.next_page_token is None

    @pytest.mark.asyncio
    async def test_list_by_place_resolves_users_in_one_batch(self, appointment_store, fetcher, users, new_appointment):
        await _seed(appointment_store, new_appointment, count=3)
        page = await fetcher.list_by_place("place-1")
        assert page.total_items == 3
        assert all(item.scheduled_by == User("user-1", "Kim Client") for item in page.items)
        assert users._repository.batch_calls == [["user-1"]]

    @pytest.mark.asyncio
    async def test_listing_hides_deleted(self, appointment_store, fetcher, new_appointment):
        saved = await _seed(appointment_store, new_appointment, count=2)
        saved[0].delete("admin")
        await appointment_store.save(saved[0])
        page = await fetcher.list_by_place("place-1")
        assert [item.id for item in page.items] == ["appt-1"]

    @pytest.mark.asyncio
    async def test_empty_listing_is_no_results(self, fetcher):
        with pytest.raises(NoResults):
            await fetcher.list_by_user("nobody")

    @pytest.mark.asyncio
    async def test_unknown_references_are_left_empty(self, appointment_store, fetcher, new_appointment):
        await _seed(appointment_store, new_appointment, count=1, place_id="nowhere", targeted_to="ghost")
        page = await fetcher.list_by_user("user-1")
        assert page.items[0].place is None
        assert page.items[0].targeted_to is None
