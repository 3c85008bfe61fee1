"""
Booking Service: 集約 (Appointment / Organization)

集約はフィールドを外部から書き換えさせない。状態は下のコマンドメソッド
経由でのみ変わる。各コマンドは「検証 → 監査情報の更新 → イベントを 1 つ登録」
の順に進むので、検証に失敗した場合は集約・version・未発行イベントは変化しない。

Appointment の状態遷移:
    SCHEDULED -> CANCELLED   (cancel)
    SCHEDULED -> COMPLETED   (mark_as_completed)
    SCHEDULED -> SCHEDULED   (reschedule)
    CANCELLED -> SCHEDULED   (reschedule)
    COMPLETED からは cancel / reschedule できない
"""

import enum
from dataclasses import dataclass, fields
from datetime import datetime, timezone

from .audit import Auditable, utcnow
from .errors import AppointmentAlreadyCompleted, InvalidStatus, ScheduledBeforeNow
from .events import (
    AppointmentCancelled,
    AppointmentCompleted,
    AppointmentDeleted,
    AppointmentRescheduled,
    AppointmentScheduled,
    AppointmentUpdated,
    DomainEvent,
    EventBuffer,
    OrganizationCreated,
    OrganizationDeleted,
    OrganizationUpdated,
)


def to_utc(value: datetime) -> datetime:
    """UTC の aware datetime に正規化する。naive な値は UTC とみなす。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AggregateRoot:
    """全集約に共通の監査情報と未発行イベントバッファ"""

    def __init__(self, audit: Auditable) -> None:
        self._audit = audit
        self._events = EventBuffer()

    @property
    def audit(self) -> Auditable:
        return self._audit

    @property
    def version(self) -> int:
        return self._audit.version

    @property
    def create_time(self) -> datetime:
        return self._audit.create_time

    @property
    def create_by(self) -> str:
        return self._audit.create_by

    @property
    def last_update_time(self) -> datetime:
        return self._audit.last_update_time

    @property
    def last_update_by(self) -> str:
        return self._audit.last_update_by

    @property
    def is_deleted(self) -> bool:
        return self._audit.is_deleted

    @property
    def is_new(self) -> bool:
        return self._audit.is_new

    @property
    def pending_events(self) -> tuple[DomainEvent, ...]:
        return self._events.pending

    def pull_events(self) -> list[DomainEvent]:
        return self._events.pull_events()


# ── Appointment ──────────────────────────────────


class AppointmentStatus(enum.Enum):
    UNKNOWN = 0
    SCHEDULED = 1
    CANCELLED = 2
    COMPLETED = 3

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, label: str) -> "AppointmentStatus":
        """ラベルをステータスに変換する。UNKNOWN と未知のラベルは拒否する。"""
        status = cls.__members__.get(label.strip().upper())
        if status is None or status is cls.UNKNOWN:
            raise InvalidStatus(label)
        return status


@dataclass(frozen=True)
class Note:
    """予約の操作履歴の 1 件"""

    action: str
    reason: str
    time: datetime
    by: str

    def __str__(self) -> str:
        return f"{self.action}: {self.reason}"


@dataclass(frozen=True)
class NewAppointment:
    id: str
    title: str
    place_id: str
    scheduled_by: str
    schedule_time: datetime
    targeted_to: str | None = None


@dataclass(frozen=True)
class AppointmentUpdate:
    """管理者が変更できる項目。None は「変更しない」を意味する。"""

    title: str | None = None
    targeted_to: str | None = None
    schedule_time: datetime | None = None
    note: str | None = None
    status: AppointmentStatus | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


def _validate(status: AppointmentStatus, schedule_time: datetime | None = None) -> None:
    # schedule_time は時刻を設定・変更する遷移からのみ渡される
    if schedule_time is not None and schedule_time < utcnow():
        raise ScheduledBeforeNow()
    if status is AppointmentStatus.UNKNOWN:
        raise InvalidStatus(str(status))


class Appointment(AggregateRoot):
    def __init__(
        self,
        id: str,
        title: str,
        place_id: str,
        scheduled_by: str,
        schedule_time: datetime,
        status: AppointmentStatus,
        audit: Auditable,
        targeted_to: str | None = None,
        notes: tuple[Note, ...] = (),
    ) -> None:
        super().__init__(audit)
        self._id = id
        self._title = title
        self._place_id = place_id
        self._targeted_to = targeted_to
        self._scheduled_by = scheduled_by
        self._schedule_time = to_utc(schedule_time)
        self._notes = tuple(notes)
        self._status = status

    @classmethod
    def new(cls, args: NewAppointment, actor: str) -> "Appointment":
        schedule_time = to_utc(args.schedule_time)
        _validate(AppointmentStatus.SCHEDULED, schedule_time)
        appointment = cls(
            id=args.id,
            title=args.title,
            place_id=args.place_id,
            scheduled_by=args.scheduled_by,
            schedule_time=schedule_time,
            status=AppointmentStatus.SCHEDULED,
            audit=Auditable.new(actor),
            targeted_to=args.targeted_to,
        )
        appointment._events.register(appointment._scheduled_event())
        return appointment

    # ── 読み取り専用の状態 ────────────────────────

    @property
    def id(self) -> str:
        return self._id

    @property
    def title(self) -> str:
        return self._title

    @property
    def place_id(self) -> str:
        return self._place_id

    @property
    def targeted_to(self) -> str | None:
        return self._targeted_to

    @property
    def scheduled_by(self) -> str:
        return self._scheduled_by

    @property
    def schedule_time(self) -> datetime:
        return self._schedule_time

    @property
    def notes(self) -> tuple[Note, ...]:
        return self._notes

    @property
    def notes_text(self) -> str:
        """操作履歴を 1 行 1 件のテキストで表したもの (旧形式)"""
        return "".join(f"{note}\n" for note in self._notes)

    @property
    def status(self) -> AppointmentStatus:
        return self._status

    # ── コマンド ──────────────────────────────────

    def cancel(self, reason: str, actor: str) -> None:
        if self._status is AppointmentStatus.COMPLETED:
            raise AppointmentAlreadyCompleted(self._id)
        _validate(AppointmentStatus.CANCELLED)

        self._audit.record_update(actor)
        self._append_note("CANCEL", reason, actor)
        self._status = AppointmentStatus.CANCELLED
        self._events.register(self._cancelled_event())

    def reschedule(self, reason: str, new_time: datetime, actor: str) -> bool:
        """予約を移動する。new_time が現在の予約時刻と同じなら False を返す。"""
        if self._status is AppointmentStatus.COMPLETED:
            raise AppointmentAlreadyCompleted(self._id)
        new_time = to_utc(new_time)
        if new_time == self._schedule_time:
            return False
        _validate(AppointmentStatus.SCHEDULED, new_time)

        self._audit.record_update(actor)
        self._append_note("RESCHEDULE", reason, actor)
        self._status = AppointmentStatus.SCHEDULED
        self._schedule_time = new_time
        self._events.register(self._rescheduled_event())
        return True

    def mark_as_completed(self, actor: str) -> None:
        self._audit.record_update(actor)
        self._status = AppointmentStatus.COMPLETED
        self._events.register(self._completed_event())

    def update(self, changes: AppointmentUpdate, actor: str) -> bool:
        """指定された項目をまとめて 1 回の変更として適用する。何も指定がなければ False。"""
        if changes.is_empty():
            return False
        status = changes.status if changes.status is not None else self._status
        schedule_time = to_utc(changes.schedule_time) if changes.schedule_time is not None else None
        _validate(status, schedule_time)

        self._audit.record_update(actor)
        if changes.title is not None:
            self._title = changes.title
        if changes.targeted_to is not None:
            self._targeted_to = changes.targeted_to
        if schedule_time is not None:
            self._schedule_time = schedule_time
        if changes.note is not None:
            self._append_note("NOTE", changes.note, actor)
        self._status = status
        self._events.register(self._updated_event())
        return True

    def delete(self, actor: str) -> None:
        self._audit.record_delete(actor)
        self._events.register(self._deleted_event())

    # ── Private ───────────────────────────────────

    def _append_note(self, action: str, reason: str, actor: str) -> None:
        self._notes += (Note(action, reason, self._audit.last_update_time, actor),)

    def _scheduled_event(self) -> AppointmentScheduled:
        return AppointmentScheduled(
            appointment_id=self._id,
            place_id=self._place_id,
            title=self._title,
            targeted_to=self._targeted_to,
            scheduled_by=self._scheduled_by,
            schedule_time=self._schedule_time,
            notes=self.notes_text,
            status=str(self._status),
            create_time=self.create_time,
            create_by=self.create_by,
            occurred_at=self.create_time,
            version=self.version,
        )

    def _updated_event(self) -> AppointmentUpdated:
        return AppointmentUpdated(
            appointment_id=self._id,
            place_id=self._place_id,
            title=self._title,
            targeted_to=self._targeted_to,
            scheduled_by=self._scheduled_by,
            schedule_time=self._schedule_time,
            notes=self.notes_text,
            status=str(self._status),
            create_time=self.create_time,
            create_by=self.create_by,
            update_time=self.last_update_time,
            update_by=self.last_update_by,
            occurred_at=self.last_update_time,
            version=self.version,
        )

    def _cancelled_event(self) -> AppointmentCancelled:
        return AppointmentCancelled(
            appointment_id=self._id,
            place_id=self._place_id,
            notes=self.notes_text,
            status=str(self._status),
            cancel_time=self.last_update_time,
            cancelled_by=self.last_update_by,
            occurred_at=self.last_update_time,
            version=self.version,
        )

    def _rescheduled_event(self) -> AppointmentRescheduled:
        return AppointmentRescheduled(
            appointment_id=self._id,
            place_id=self._place_id,
            schedule_time=self._schedule_time,
            notes=self.notes_text,
            status=str(self._status),
            reschedule_time=self.last_update_time,
            rescheduled_by=self.last_update_by,
            occurred_at=self.last_update_time,
            version=self.version,
        )

    def _completed_event(self) -> AppointmentCompleted:
        return AppointmentCompleted(
            appointment_id=self._id,
            place_id=self._place_id,
            status=str(self._status),
            complete_time=self.last_update_time,
            completed_by=self.last_update_by,
            occurred_at=self.last_update_time,
            version=self.version,
        )

    def _deleted_event(self) -> AppointmentDeleted:
        return AppointmentDeleted(
            appointment_id=self._id,
            place_id=self._place_id,
            delete_time=self.last_update_time,
            deleted_by=self.last_update_by,
            occurred_at=self.last_update_time,
            version=self.version,
        )


# ── Organization ─────────────────────────────────


@dataclass(frozen=True)
class OrganizationUpdate:
    name: str | None = None

    def is_empty(self) -> bool:
        return self.name is None


class Organization(AggregateRoot):
    """
    組織集約: 1 つの事業者のリソース(従業員・場所)をまとめる単位。

    名前の一意性は集約自身の不変条件ではない。
    保存前に OrganizationManager がストアに問い合わせて確認する。
    """

    def __init__(self, id: str, name: str, audit: Auditable) -> None:
        super().__init__(audit)
        self._id = id
        self._name = name

    @classmethod
    def new(cls, id: str, name: str, actor: str) -> "Organization":
        org = cls(id=id, name=name, audit=Auditable.new(actor))
        org._events.register(
            OrganizationCreated(
                organization_id=org._id,
                name=org._name,
                create_time=org.create_time,
                create_by=org.create_by,
                occurred_at=org.create_time,
                version=org.version,
            )
        )
        return org

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    def update(self, changes: OrganizationUpdate, actor: str) -> bool:
        """項目が 1 つも指定されていなければ何も変えずに False を返す。"""
        if changes.is_empty():
            return False
        self._audit.record_update(actor)
        self._name = changes.name
        self._events.register(
            OrganizationUpdated(
                organization_id=self._id,
                name=self._name,
                update_time=self.last_update_time,
                update_by=self.last_update_by,
                occurred_at=self.last_update_time,
                version=self.version,
            )
        )
        return True

    def delete(self, actor: str) -> None:
        self._audit.record_delete(actor)
        self._events.register(
            OrganizationDeleted(
                organization_id=self._id,
                delete_time=self.last_update_time,
                deleted_by=self.last_update_by,
                occurred_at=self.last_update_time,
                version=self.version,
            )
        )
