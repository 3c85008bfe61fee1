"""
Booking Service: クエリハンドラ (CQRS の Read 側)

読み取りはリード用リポジトリだけを通り、イベント発行には触れない。
予約の行は場所・従業員・利用者を id で参照する。
fetcher は directory を通してそれらを解決する (1 ページにつき一括取得 1 回)。
"""

import logging

from .aggregate import Organization
from .directory import DirectoryFetcher, Employee, Place, User
from .errors import AppointmentNotFound, NoResults, OrganizationNotFound
from .models import AppointmentDetails, AppointmentRow, PlaceAppointment, UserAppointment
from .paging import DEFAULT_PAGE_SIZE, Filter, ListRequest, Page
from .repository import AppointmentReadRepository, OrganizationReadRepository

logger = logging.getLogger(__name__)


class OrganizationFetcher:
    def __init__(self, repository: OrganizationReadRepository):
        self._repository = repository

    async def get_by_id(self, id: str) -> Organization:
        org = await self._repository.find_by_key(id)
        if org is None or org.is_deleted:
            raise OrganizationNotFound(id)
        return org


class OrganizationLister:
    def __init__(self, repository: OrganizationReadRepository):
        self._repository = repository

    async def list(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_token: str | None = None,
        non_deleted_only: bool = True,
    ) -> Page[Organization]:
        filters = (Filter(field="is_deleted", value=False),) if non_deleted_only else ()
        page = await self._repository.find_all(
            ListRequest(filters=filters, page_size=page_size, page_token=page_token)
        )
        if not page.items and not page_token:
            raise NoResults("organizations")
        return page


class AppointmentFetcher:
    def __init__(
        self,
        repository: AppointmentReadRepository,
        places: DirectoryFetcher[Place],
        employees: DirectoryFetcher[Employee],
        users: DirectoryFetcher[User],
    ):
        self._repository = repository
        self._places = places
        self._employees = employees
        self._users = users

    async def get_by_key(self, key: str) -> AppointmentDetails:
        row = await self._repository.find_by_key(key)
        if row is None or row.is_deleted:
            raise AppointmentNotFound(key)

        place = await self._places.get_by_key(row.place_id)
        user = await self._users.get_by_key(row.scheduled_by)
        employee = await self._employees.get_by_key(row.targeted_to) if row.targeted_to else None
        return AppointmentDetails(
            id=row.id,
            title=row.title,
            place=place,
            targeted_to=employee,
            scheduled_by=user,
            schedule_time=row.schedule_time,
            status=row.status,
            notes=row.notes,
        )

    async def _list(self, filters: tuple[Filter, ...], page_size: int, page_token: str | None) -> Page[AppointmentRow]:
        page = await self._repository.find_all(
            ListRequest(filters=filters, page_size=page_size, page_token=page_token)
        )
        if not page.items and not page_token:
            raise NoResults("appointments")
        return page

    async def list_by_user(
        self, user_id: str, page_size: int = DEFAULT_PAGE_SIZE, page_token: str | None = None
    ) -> Page[UserAppointment]:
        page = await self._list((Filter(field="scheduled_by", value=user_id),), page_size, page_token)
        places = await self._places.list_by_keys([row.place_id for row in page.items])
        employees = await self._employees.list_by_keys([row.targeted_to for row in page.items])

        return page.map(
            lambda row: UserAppointment(
                id=row.id,
                title=row.title,
                place=places.get(row.place_id),
                targeted_to=employees.get(row.targeted_to) if row.targeted_to else None,
                schedule_time=row.schedule_time,
                status=row.status,
            )
        )

    async def list_by_place(
        self, place_id: str, page_size: int = DEFAULT_PAGE_SIZE, page_token: str | None = None
    ) -> Page[PlaceAppointment]:
        page = await self._list((Filter(field="place_id", value=place_id),), page_size, page_token)
        employees = await self._employees.list_by_keys([row.targeted_to for row in page.items])
        users = await self._users.list_by_keys([row.scheduled_by for row in page.items])

        return page.map(
            lambda row: PlaceAppointment(
                id=row.id,
                title=row.title,
                targeted_to=employees.get(row.targeted_to) if row.targeted_to else None,
                scheduled_by=users.get(row.scheduled_by),
                schedule_time=row.schedule_time,
                status=row.status,
            )
        )
