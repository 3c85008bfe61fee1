"""
Booking Service: リポジトリ

書き込み用リポジトリは集約全体を条件付き書き込みで保存する:

    INSERT                          一度も保存されていない集約
    UPDATE ... WHERE row_version = <最後に読んだ version>   それ以外

影響行数 0 は別のライターが先に保存したことを意味する。その場合は
VersionConflict で失敗し、何も上書きしない。書き込みに成功したら
集約の persisted_version を進めるので、同じインスタンスを続けて変更・保存できる。

リード用リポジトリは SqlPageSource で一覧を返す。SqlPageSource は
(ソート列, id) の行値比較でカーソルページングのストレージ側 (paging.py 参照) を実装する。
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Generic, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Appointment, AppointmentStatus, Note, Organization
from .audit import Auditable
from .errors import OrganizationAlreadyExists, UnknownField, VersionConflict
from .models import AppointmentRow
from .paging import (
    Cursor,
    Direction,
    Filter,
    ListRequest,
    Operator,
    Page,
    PageQuery,
    PageTokenCipher,
    Sort,
    beyond_operator,
    paginate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _violates(exc: IntegrityError, constraint: str) -> bool:
    """ドライバのエラーが指定した制約・インデックスを指していれば True"""
    name = getattr(exc.orig, "constraint_name", None) or getattr(
        getattr(exc.orig, "__cause__", None), "constraint_name", None
    )
    if name:
        return name == constraint
    return constraint in str(exc.orig)


def _audit_from_row(row) -> Auditable:
    return Auditable.restore(
        create_time=row.create_time,
        create_by=row.create_by,
        last_update_time=row.last_update_time,
        last_update_by=row.last_update_by,
        version=row.row_version,
        is_deleted=row.is_deleted,
    )


def _audit_params(audit: Auditable) -> dict:
    return {
        "create_time": audit.create_time,
        "create_by": audit.create_by,
        "last_update_time": audit.last_update_time,
        "last_update_by": audit.last_update_by,
        "row_version": audit.version,
        "is_deleted": audit.is_deleted,
        "expected_version": audit.persisted_version,
    }


def _dump_notes(notes: tuple[Note, ...]) -> str:
    return json.dumps(
        [{"action": n.action, "reason": n.reason, "time": n.time.isoformat(), "by": n.by} for n in notes]
    )


def _load_notes(raw) -> tuple[Note, ...]:
    if not raw:
        return ()
    items = json.loads(raw) if isinstance(raw, str) else raw
    return tuple(
        Note(action=i["action"], reason=i["reason"], time=datetime.fromisoformat(i["time"]), by=i["by"])
        for i in items
    )


def organization_from_row(row) -> Organization:
    return Organization(id=row.organization_id, name=row.name, audit=_audit_from_row(row))


def appointment_from_row(row) -> Appointment:
    return Appointment(
        id=row.appointment_id,
        title=row.title,
        place_id=row.place_id,
        scheduled_by=row.scheduled_by,
        schedule_time=row.schedule_time,
        status=AppointmentStatus.parse(row.status_type),
        audit=_audit_from_row(row),
        targeted_to=row.targeted_to,
        notes=_load_notes(row.notes),
    )


def appointment_row_from_row(row) -> AppointmentRow:
    return AppointmentRow(
        id=row.appointment_id,
        title=row.title,
        place_id=row.place_id,
        targeted_to=row.targeted_to,
        scheduled_by=row.scheduled_by,
        schedule_time=row.schedule_time,
        status=row.status_type,
        notes="".join(f"{note}\n" for note in _load_notes(row.notes)),
        create_time=row.create_time,
        is_deleted=row.is_deleted,
    )


# ── Contracts ────────────────────────────────────


class OrganizationRepository(ABC):
    @abstractmethod
    async def save(self, organization: Organization) -> None: ...

    @abstractmethod
    async def find_by_key(self, key: str) -> Organization | None: ...

    @abstractmethod
    async def exists_by_name(self, name: str) -> bool: ...

    @abstractmethod
    async def delete(self, organization: Organization) -> None: ...

    @abstractmethod
    async def delete_by_key(self, key: str) -> None: ...


class OrganizationReadRepository(ABC):
    @abstractmethod
    async def find_by_key(self, key: str) -> Organization | None: ...

    @abstractmethod
    async def find_all(self, request: ListRequest) -> Page[Organization]: ...


class AppointmentRepository(ABC):
    @abstractmethod
    async def save(self, appointment: Appointment) -> None: ...

    @abstractmethod
    async def find_by_key(self, key: str) -> Appointment | None: ...

    @abstractmethod
    async def delete(self, appointment: Appointment) -> None: ...

    @abstractmethod
    async def delete_by_key(self, key: str) -> None: ...


class AppointmentReadRepository(ABC):
    @abstractmethod
    async def find_by_key(self, key: str) -> AppointmentRow | None: ...

    @abstractmethod
    async def find_all(self, request: ListRequest) -> Page[AppointmentRow]: ...


# ── Listing support ──────────────────────────────


class SqlPageSource(Generic[T]):
    """
    1 テーブルに対するカーソルページング。

    フィルタに使えるのは `columns` にある項目、ソートに使えるのは
    `sortable` にある項目だけ。この 2 つがホワイトリストで、
    クライアントが渡した名前は SQL 文に入らない。
    """

    def __init__(
        self,
        session: AsyncSession,
        table: str,
        id_column: str,
        columns: dict[str, str],
        to_item: Callable[[object], T],
        key_of: Callable[[T], str],
        sortable: dict[str, Callable[[T], datetime]],
        base_condition: str = "TRUE",
    ):
        self._session = session
        self._table = table
        self._id_column = id_column
        self._columns = columns
        self._to_item = to_item
        self._key_of = key_of
        self._sortable = sortable
        self._base_condition = base_condition

    def cursor_of(self, item: T, sort: Sort) -> Cursor:
        return Cursor(value=self._sort_value(sort.field)(item), key=self._key_of(item))

    def _sort_value(self, field: str) -> Callable[[T], datetime]:
        try:
            return self._sortable[field]
        except KeyError:
            raise UnknownField(field) from None

    def _sort_column(self, sort: Sort) -> str:
        self._sort_value(sort.field)
        return self._column(sort.field)

    def _column(self, field: str) -> str:
        try:
            return self._columns[field]
        except KeyError:
            raise UnknownField(field) from None

    def _where(self, filters: tuple[Filter, ...]) -> tuple[list[str], dict]:
        clauses = [self._base_condition]
        params: dict = {}
        for i, f in enumerate(filters):
            column = self._column(f.field)
            name = f"f{i}"
            if f.op is Operator.IN:
                clauses.append(f"{column} = ANY(:{name})")
                params[name] = list(f.value)
            else:
                clauses.append(f"{column} = :{name}")
                params[name] = f.value
        return clauses, params

    def _beyond(self, sort: Sort, direction: Direction, prefix: str) -> str:
        return (
            f"({self._sort_column(sort)}, {self._id_column}) "
            f"{beyond_operator(sort, direction)} (:{prefix}_value, :{prefix}_key)"
        )

    async def fetch(self, query: PageQuery) -> list[T]:
        clauses, params = self._where(query.filters)
        if query.cursor is not None:
            clauses.append(self._beyond(query.sort, query.direction, "cursor"))
            params["cursor_value"] = query.cursor.value
            params["cursor_key"] = query.cursor.key
        order = "DESC" if query.fetch_descending else "ASC"
        params["limit"] = query.page_size

        result = await self._session.execute(
            text(f"""
                SELECT * FROM {self._table}
                WHERE {" AND ".join(clauses)}
                ORDER BY {self._sort_column(query.sort)} {order}, {self._id_column} {order}
                LIMIT :limit
            """),
            params,
        )
        return [self._to_item(row) for row in result.fetchall()]

    async def has_neighbours(self, query: PageQuery, first: Cursor, last: Cursor) -> tuple[bool, bool]:
        clauses, params = self._where(query.filters)
        where = " AND ".join(clauses)
        params.update(
            first_value=first.value,
            first_key=first.key,
            last_value=last.value,
            last_key=last.key,
        )
        result = await self._session.execute(
            text(f"""
                SELECT
                    EXISTS (SELECT 1 FROM {self._table}
                            WHERE {where} AND {self._beyond(query.sort, Direction.BACKWARD, "first")})
                        AS has_previous,
                    EXISTS (SELECT 1 FROM {self._table}
                            WHERE {where} AND {self._beyond(query.sort, Direction.FORWARD, "last")})
                        AS has_next
            """),
            params,
        )
        row = result.one()
        return bool(row.has_previous), bool(row.has_next)


# ── Organization (PostgreSQL) ────────────────────


ORGANIZATION_COLUMNS = {
    "organization_id": "organization_id",
    "name": "name",
    "is_deleted": "is_deleted",
    "create_time": "create_time",
    "last_update_time": "last_update_time",
}
ORGANIZATION_DEFAULT_SORT = Sort(field="create_time")
ACTIVE_NAME_INDEX = "uq_organizations_active_name"


class PostgresOrganizationRepository(OrganizationRepository):
    def __init__(self, session: AsyncSession, soft_delete: bool = True):
        self._session = session
        self._soft_delete = soft_delete

    async def save(self, organization: Organization) -> None:
        audit = organization.audit
        params = {"organization_id": organization.id, "name": organization.name, **_audit_params(audit)}
        try:
            if audit.is_new:
                await self._session.execute(
                    text("""
                        INSERT INTO organizations
                            (organization_id, name, create_time, create_by,
                             last_update_time, last_update_by, row_version, is_deleted)
                        VALUES
                            (:organization_id, :name, :create_time, :create_by,
                             :last_update_time, :last_update_by, :row_version, :is_deleted)
                    """),
                    params,
                )
            else:
                result = await self._session.execute(
                    text("""
                        UPDATE organizations
                        SET name = :name,
                            last_update_time = :last_update_time,
                            last_update_by = :last_update_by,
                            row_version = :row_version,
                            is_deleted = :is_deleted
                        WHERE organization_id = :organization_id
                          AND row_version = :expected_version
                    """),
                    params,
                )
                if result.rowcount == 0:
                    logger.warning("Stale write rejected: organization %s", organization.id)
                    raise VersionConflict("organization", organization.id, audit.persisted_version)
        except IntegrityError as exc:
            if _violates(exc, ACTIVE_NAME_INDEX):
                logger.warning("Name clash on write: organization %s (%s)", organization.id, organization.name)
                raise OrganizationAlreadyExists(organization.name) from exc
            raise VersionConflict("organization", organization.id, audit.persisted_version) from exc
        audit.mark_persisted()

    async def find_by_key(self, key: str) -> Organization | None:
        result = await self._session.execute(
            text("SELECT * FROM organizations WHERE organization_id = :key"),
            {"key": key},
        )
        row = result.fetchone()
        if not row:
            return None
        return organization_from_row(row)

    async def exists_by_name(self, name: str) -> bool:
        result = await self._session.execute(
            text("""
                SELECT EXISTS (
                    SELECT 1 FROM organizations WHERE name = :name AND is_deleted = FALSE
                )
            """),
            {"name": name},
        )
        return bool(result.scalar())

    async def delete(self, organization: Organization) -> None:
        """集約に記録済みの削除を永続化する。"""
        if organization.is_new:
            return
        if self._soft_delete:
            await self.save(organization)
            return
        result = await self._session.execute(
            text("""
                DELETE FROM organizations
                WHERE organization_id = :key AND row_version = :expected_version
            """),
            {"key": organization.id, "expected_version": organization.audit.persisted_version},
        )
        if result.rowcount == 0:
            raise VersionConflict("organization", organization.id, organization.audit.persisted_version)

    async def delete_by_key(self, key: str) -> None:
        """無条件の物理削除"""
        await self._session.execute(
            text("DELETE FROM organizations WHERE organization_id = :key"),
            {"key": key},
        )


class PostgresOrganizationReadRepository(OrganizationReadRepository):
    def __init__(self, session: AsyncSession, cipher: PageTokenCipher):
        self._session = session
        self._cipher = cipher
        self._source = SqlPageSource(
            session,
            table="organizations",
            id_column="organization_id",
            columns=ORGANIZATION_COLUMNS,
            to_item=organization_from_row,
            key_of=lambda org: org.id,
            sortable={
                "create_time": lambda org: org.create_time,
                "last_update_time": lambda org: org.last_update_time,
            },
        )

    async def find_by_key(self, key: str) -> Organization | None:
        result = await self._session.execute(
            text("SELECT * FROM organizations WHERE organization_id = :key"),
            {"key": key},
        )
        row = result.fetchone()
        if not row:
            return None
        return organization_from_row(row)

    async def find_all(self, request: ListRequest) -> Page[Organization]:
        return await paginate(self._source, self._cipher, request, ORGANIZATION_DEFAULT_SORT)


# ── Appointment (PostgreSQL) ─────────────────────


APPOINTMENT_COLUMNS = {
    "appointment_id": "appointment_id",
    "place_id": "place_id",
    "scheduled_by": "scheduled_by",
    "targeted_to": "targeted_to",
    "status": "status_type",
    "schedule_time": "schedule_time",
    "create_time": "create_time",
}
APPOINTMENT_DEFAULT_SORT = Sort(field="schedule_time", descending=True)


class PostgresAppointmentRepository(AppointmentRepository):
    def __init__(self, session: AsyncSession, soft_delete: bool = True):
        self._session = session
        self._soft_delete = soft_delete

    async def save(self, appointment: Appointment) -> None:
        audit = appointment.audit
        params = {
            "appointment_id": appointment.id,
            "title": appointment.title,
            "place_id": appointment.place_id,
            "targeted_to": appointment.targeted_to,
            "scheduled_by": appointment.scheduled_by,
            "schedule_time": appointment.schedule_time,
            "notes": _dump_notes(appointment.notes),
            "status_type": str(appointment.status),
            **_audit_params(audit),
        }
        if audit.is_new:
            await self._insert(params, appointment.id)
        else:
            result = await self._session.execute(
                text("""
                    UPDATE appointments
                    SET title = :title,
                        targeted_to = :targeted_to,
                        schedule_time = :schedule_time,
                        notes = CAST(:notes AS JSONB),
                        status_type = :status_type,
                        last_update_time = :last_update_time,
                        last_update_by = :last_update_by,
                        row_version = :row_version,
                        is_deleted = :is_deleted
                    WHERE appointment_id = :appointment_id
                      AND row_version = :expected_version
                """),
                params,
            )
            if result.rowcount == 0:
                logger.warning("Stale write rejected: appointment %s", appointment.id)
                raise VersionConflict("appointment", appointment.id, audit.persisted_version)
        audit.mark_persisted()

    async def _insert(self, params: dict, key: str) -> None:
        try:
            await self._session.execute(
                text("""
                    INSERT INTO appointments
                        (appointment_id, title, place_id, targeted_to, scheduled_by,
                         schedule_time, notes, status_type, create_time, create_by,
                         last_update_time, last_update_by, row_version, is_deleted)
                    VALUES
                        (:appointment_id, :title, :place_id, :targeted_to, :scheduled_by,
                         :schedule_time, CAST(:notes AS JSONB), :status_type, :create_time, :create_by,
                         :last_update_time, :last_update_by, :row_version, :is_deleted)
                """),
                params,
            )
        except IntegrityError as exc:
            raise VersionConflict("appointment", key, None) from exc

    async def find_by_key(self, key: str) -> Appointment | None:
        result = await self._session.execute(
            text("SELECT * FROM appointments WHERE appointment_id = :key"),
            {"key": key},
        )
        row = result.fetchone()
        if not row:
            return None
        return appointment_from_row(row)

    async def delete(self, appointment: Appointment) -> None:
        """集約に記録済みの削除を永続化する。"""
        if appointment.is_new:
            return
        if self._soft_delete:
            await self.save(appointment)
            return
        result = await self._session.execute(
            text("""
                DELETE FROM appointments
                WHERE appointment_id = :key AND row_version = :expected_version
            """),
            {"key": appointment.id, "expected_version": appointment.audit.persisted_version},
        )
        if result.rowcount == 0:
            raise VersionConflict("appointment", appointment.id, appointment.audit.persisted_version)

    async def delete_by_key(self, key: str) -> None:
        await self._session.execute(
            text("DELETE FROM appointments WHERE appointment_id = :key"),
            {"key": key},
        )


class PostgresAppointmentReadRepository(AppointmentReadRepository):
    """一覧には削除されていない予約だけを出す。"""

    def __init__(self, session: AsyncSession, cipher: PageTokenCipher):
        self._session = session
        self._cipher = cipher
        self._source = SqlPageSource(
            session,
            table="appointments",
            id_column="appointment_id",
            columns=APPOINTMENT_COLUMNS,
            to_item=appointment_row_from_row,
            key_of=lambda row: row.id,
            sortable={
                "schedule_time": lambda row: row.schedule_time,
                "create_time": lambda row: row.create_time,
            },
            base_condition="is_deleted = FALSE",
        )

    async def find_by_key(self, key: str) -> AppointmentRow | None:
        result = await self._session.execute(
            text("SELECT * FROM appointments WHERE appointment_id = :key"),
            {"key": key},
        )
        row = result.fetchone()
        if not row:
            return None
        return appointment_row_from_row(row)

    async def find_all(self, request: ListRequest) -> Page[AppointmentRow]:
        return await paginate(self._source, self._cipher, request, APPOINTMENT_DEFAULT_SORT)
