"""In-memory stand-ins for the PostgreSQL repositories, the publisher and the session.

The write repositories enforce the same conditional-write rule as the SQL
ones: each load returns a fresh aggregate instance, and a save whose
persisted_version no longer matches the stored row raises VersionConflict.
"""
from typing import Any, Callable, Sequence

from app.aggregate import Appointment, AppointmentStatus, Organization
from app.audit import Auditable
from app.directory import DirectoryRepository, Employee, Place, User
from app.errors import UnknownField, VersionConflict
from app.events import DomainEvent
from app.models import AppointmentRow
from app.paging import (
    Cursor,
    Direction,
    ListRequest,
    Operator,
    Page,
    PageQuery,
    PageTokenCipher,
    Sort,
    beyond_operator,
    paginate,
)
from app.publisher import EventPublisher
from app.repository import (
    APPOINTMENT_DEFAULT_SORT,
    ORGANIZATION_DEFAULT_SORT,
    AppointmentReadRepository,
    AppointmentRepository,
    OrganizationReadRepository,
    OrganizationRepository,
)


# ── Session / publisher ──────────────────────────


class FakeTransaction:
    def __init__(self, log: list[str] | None = None):
        self.commits = 0
        self.log = log if log is not None else []

    async def commit(self) -> None:
        self.commits += 1
        self.log.append("commit")


class RecordingPublisher(EventPublisher):
    def __init__(self, in_transaction: bool = True, log: list[str] | None = None):
        self.in_transaction = in_transaction
        self.published: list[DomainEvent] = []
        self.log = log if log is not None else []

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        self.published.extend(events)
        self.log.append("publish")


# ── Listing ──────────────────────────────────────


class ListPageSource:
    """PageSource over a Python list, mirroring the SQL row-value comparisons."""

    def __init__(
        self,
        items: list,
        key_of: Callable[[Any], str],
        fields: dict[str, Callable[[Any], Any]],
    ):
        self._items = items
        self._key_of = key_of
        self._fields = fields

    def _get(self, field_name: str) -> Callable[[Any], Any]:
        try:
            return self._fields[field_name]
        except KeyError:
            raise UnknownField(field_name) from None

    def cursor_of(self, item, sort: Sort) -> Cursor:
        return Cursor(value=self._get(sort.field)(item), key=self._key_of(item))

    def _matching(self, query: PageQuery) -> list:
        rows = self._items
        for f in query.filters:
            get = self._get(f.field)
            if f.op is Operator.IN:
                rows = [r for r in rows if get(r) in f.value]
            else:
                rows = [r for r in rows if get(r) == f.value]
        return rows

    def _beyond(self, rows: list, sort: Sort, direction: Direction, cursor: Cursor) -> list:
        get = self._get(sort.field)
        bound = (cursor.value, cursor.key)
        if beyond_operator(sort, direction) == ">":
            return [r for r in rows if (get(r), self._key_of(r)) > bound]
        return [r for r in rows if (get(r), self._key_of(r)) < bound]

    async def fetch(self, query: PageQuery) -> list:
        rows = self._matching(query)
        if query.cursor is not None:
            rows = self._beyond(rows, query.sort, query.direction, query.cursor)
        get = self._get(query.sort.field)
        rows = sorted(rows, key=lambda r: (get(r), self._key_of(r)), reverse=query.fetch_descending)
        return rows[: query.page_size]

    async def has_neighbours(self, query: PageQuery, first: Cursor, last: Cursor) -> tuple[bool, bool]:
        rows = self._matching(query)
        has_previous = bool(self._beyond(rows, query.sort, Direction.BACKWARD, first))
        has_next = bool(self._beyond(rows, query.sort, Direction.FORWARD, last))
        return has_previous, has_next


# ── Organizations ────────────────────────────────


def _audit_snapshot(audit: Auditable) -> dict:
    return {
        "create_time": audit.create_time,
        "create_by": audit.create_by,
        "last_update_time": audit.last_update_time,
        "last_update_by": audit.last_update_by,
        "version": audit.version,
        "is_deleted": audit.is_deleted,
    }


class InMemoryOrganizationRepository(OrganizationRepository):
    def __init__(self, soft_delete: bool = True):
        self.rows: dict[str, dict] = {}
        self.soft_delete = soft_delete

    def _check(self, org: Organization) -> None:
        audit = org.audit
        stored = self.rows.get(org.id)
        if audit.is_new:
            if stored is not None:
                raise VersionConflict("organization", org.id, None)
        elif stored is None or stored["version"] != audit.persisted_version:
            raise VersionConflict("organization", org.id, audit.persisted_version)

    async def save(self, organization: Organization) -> None:
        self._check(organization)
        self.rows[organization.id] = {"id": organization.id, "name": organization.name, **_audit_snapshot(organization.audit)}
        organization.audit.mark_persisted()

    def load(self, key: str) -> Organization | None:
        row = self.rows.get(key)
        if row is None:
            return None
        audit = Auditable.restore(
            row["create_time"], row["create_by"], row["last_update_time"],
            row["last_update_by"], row["version"], row["is_deleted"],
        )
        return Organization(id=row["id"], name=row["name"], audit=audit)

    async def find_by_key(self, key: str) -> Organization | None:
        return self.load(key)

    async def exists_by_name(self, name: str) -> bool:
        return any(r["name"] == name and not r["is_deleted"] for r in self.rows.values())

    async def delete(self, organization: Organization) -> None:
        if organization.is_new:
            return
        if self.soft_delete:
            await self.save(organization)
            return
        self._check(organization)
        del self.rows[organization.id]

    async def delete_by_key(self, key: str) -> None:
        self.rows.pop(key, None)


class InMemoryOrganizationReadRepository(OrganizationReadRepository):
    def __init__(self, store: InMemoryOrganizationRepository, cipher: PageTokenCipher):
        self._store = store
        self._cipher = cipher

    async def find_by_key(self, key: str) -> Organization | None:
        return self._store.load(key)

    async def find_all(self, request: ListRequest) -> Page[Organization]:
        items = [self._store.load(key) for key in self._store.rows]
        source = ListPageSource(
            items,
            key_of=lambda org: org.id,
            fields={
                "organization_id": lambda org: org.id,
                "name": lambda org: org.name,
                "is_deleted": lambda org: org.is_deleted,
                "create_time": lambda org: org.create_time,
            },
        )
        return await paginate(source, self._cipher, request, ORGANIZATION_DEFAULT_SORT)


# ── Appointments ─────────────────────────────────


class InMemoryAppointmentRepository(AppointmentRepository):
    def __init__(self, soft_delete: bool = True):
        self.rows: dict[str, dict] = {}
        self.soft_delete = soft_delete

    def _check(self, appointment: Appointment) -> None:
        audit = appointment.audit
        stored = self.rows.get(appointment.id)
        if audit.is_new:
            if stored is not None:
                raise VersionConflict("appointment", appointment.id, None)
        elif stored is None or stored["version"] != audit.persisted_version:
            raise VersionConflict("appointment", appointment.id, audit.persisted_version)

    async def save(self, appointment: Appointment) -> None:
        self._check(appointment)
        self.rows[appointment.id] = {
            "id": appointment.id,
            "title": appointment.title,
            "place_id": appointment.place_id,
            "targeted_to": appointment.targeted_to,
            "scheduled_by": appointment.scheduled_by,
            "schedule_time": appointment.schedule_time,
            "status": str(appointment.status),
            "notes": appointment.notes,
            **_audit_snapshot(appointment.audit),
        }
        appointment.audit.mark_persisted()

    def load(self, key: str) -> Appointment | None:
        row = self.rows.get(key)
        if row is None:
            return None
        audit = Auditable.restore(
            row["create_time"], row["create_by"], row["last_update_time"],
            row["last_update_by"], row["version"], row["is_deleted"],
        )
        return Appointment(
            id=row["id"],
            title=row["title"],
            place_id=row["place_id"],
            scheduled_by=row["scheduled_by"],
            schedule_time=row["schedule_time"],
            status=AppointmentStatus.parse(row["status"]),
            audit=audit,
            targeted_to=row["targeted_to"],
            notes=row["notes"],
        )

    async def find_by_key(self, key: str) -> Appointment | None:
        return self.load(key)

    async def delete(self, appointment: Appointment) -> None:
        if appointment.is_new:
            return
        if self.soft_delete:
            await self.save(appointment)
            return
        self._check(appointment)
        del self.rows[appointment.id]

    async def delete_by_key(self, key: str) -> None:
        self.rows.pop(key, None)


class InMemoryAppointmentReadRepository(AppointmentReadRepository):
    def __init__(self, store: InMemoryAppointmentRepository, cipher: PageTokenCipher):
        self._store = store
        self._cipher = cipher

    def _row(self, row: dict) -> AppointmentRow:
        return AppointmentRow(
            id=row["id"],
            title=row["title"],
            place_id=row["place_id"],
            targeted_to=row["targeted_to"],
            scheduled_by=row["scheduled_by"],
            schedule_time=row["schedule_time"],
            status=row["status"],
            notes="".join(f"{note}\n" for note in row["notes"]),
            create_time=row["create_time"],
            is_deleted=row["is_deleted"],
        )

    async def find_by_key(self, key: str) -> AppointmentRow | None:
        row = self._store.rows.get(key)
        return self._row(row) if row is not None else None

    async def find_all(self, request: ListRequest) -> Page[AppointmentRow]:
        items = [self._row(r) for r in self._store.rows.values() if not r["is_deleted"]]
        source = ListPageSource(
            items,
            key_of=lambda row: row.id,
            fields={
                "appointment_id": lambda row: row.id,
                "place_id": lambda row: row.place_id,
                "scheduled_by": lambda row: row.scheduled_by,
                "targeted_to": lambda row: row.targeted_to,
                "status": lambda row: row.status,
                "schedule_time": lambda row: row.schedule_time,
                "create_time": lambda row: row.create_time,
            },
        )
        return await paginate(source, self._cipher, request, APPOINTMENT_DEFAULT_SORT)


# ── Directory ────────────────────────────────────


class InMemoryDirectoryRepository(DirectoryRepository):
    def __init__(self, table: str, entities: list[Place | Employee | User]):
        super().__init__(session=None)
        self.table = table
        self._entities = {e.id: e for e in entities}
        self.batch_calls: list[list[str]] = []

    async def find_by_key(self, key: str):
        return self._entities.get(key)

    async def find_all_by_keys(self, keys: list[str]):
        self.batch_calls.append(list(keys))
        return [self._entities[k] for k in keys if k in self._entities]

