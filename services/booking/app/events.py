"""
Booking Service: イベント定義

ドメインイベントは「既に起きた事実」なので過去形で命名し、
不変(frozen モデル)として扱う。各イベントは操作時点の集約の
スナップショットで、ブローカー向けの topic とルーティングキーを持つ。

Appointment のイベントは place id をキーにする
(同じ場所のイベントが同じパーティション/チャネルに順序どおり届く)。
Organization のイベントは organization id をキーにする。
"""

from datetime import datetime
from typing import ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    topic: ClassVar[str] = ""

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime
    version: int

    @property
    def key(self) -> str:
        raise NotImplementedError

    @property
    def aggregate_id(self) -> str:
        raise NotImplementedError

    def to_message(self) -> dict:
        """ブローカーに発行するメッセージ形式"""
        return {
            "event_id": str(self.event_id),
            "event_type": self.topic,
            "key": self.key,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.model_dump(mode="json", exclude={"event_id", "occurred_at"}),
        }


class EventBuffer:
    """1 つの集約の未発行イベント(登録順)"""

    def __init__(self) -> None:
        self._events: list[DomainEvent] = []

    def register(self, *events: DomainEvent) -> None:
        self._events.extend(events)

    def pull_events(self) -> list[DomainEvent]:
        """未発行イベントをすべて取り出して返す。永続化 1 回につき 1 度だけ呼ぶ。"""
        events = self._events
        self._events = []
        return events

    @property
    def pending(self) -> tuple[DomainEvent, ...]:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)


# ── Appointment ──────────────────────────────────


class _AppointmentEvent(DomainEvent):
    appointment_id: str
    place_id: str

    @property
    def key(self) -> str:
        return self.place_id

    @property
    def aggregate_id(self) -> str:
        return self.appointment_id


class AppointmentScheduled(_AppointmentEvent):
    """予約が作成され、SCHEDULED になった。"""
    topic: ClassVar[str] = "booking.appointment.scheduled"

    title: str
    targeted_to: str | None
    scheduled_by: str
    schedule_time: datetime
    notes: str
    status: str
    create_time: datetime
    create_by: str


class AppointmentUpdated(_AppointmentEvent):
    topic: ClassVar[str] = "booking.appointment.updated"

    title: str
    targeted_to: str | None
    scheduled_by: str
    schedule_time: datetime
    notes: str
    status: str
    create_time: datetime
    create_by: str
    update_time: datetime
    update_by: str


class AppointmentCancelled(_AppointmentEvent):
    topic: ClassVar[str] = "booking.appointment.cancelled"

    notes: str
    status: str
    cancel_time: datetime
    cancelled_by: str


class AppointmentRescheduled(_AppointmentEvent):
    topic: ClassVar[str] = "booking.appointment.rescheduled"

    schedule_time: datetime
    notes: str
    status: str
    reschedule_time: datetime
    rescheduled_by: str


class AppointmentCompleted(_AppointmentEvent):
    topic: ClassVar[str] = "booking.appointment.completed"

    status: str
    complete_time: datetime
    completed_by: str


class AppointmentDeleted(_AppointmentEvent):
    topic: ClassVar[str] = "booking.appointment.deleted"

    delete_time: datetime
    deleted_by: str


# ── Organization ─────────────────────────────────


class _OrganizationEvent(DomainEvent):
    organization_id: str

    @property
    def key(self) -> str:
        return self.organization_id

    @property
    def aggregate_id(self) -> str:
        return self.organization_id


class OrganizationCreated(_OrganizationEvent):
    topic: ClassVar[str] = "booking.organization.created"

    name: str
    create_time: datetime
    create_by: str


class OrganizationUpdated(_OrganizationEvent):
    topic: ClassVar[str] = "booking.organization.updated"

    name: str
    update_time: datetime
    update_by: str


class OrganizationDeleted(_OrganizationEvent):
    topic: ClassVar[str] = "booking.organization.deleted"

    delete_time: datetime
    deleted_by: str
