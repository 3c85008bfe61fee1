"""
Booking Service: コマンドハンドラ (CQRS の Write 側)

すべてのコマンドは同じ流れで処理する:

    1. 書き込み用リポジトリから集約を読み込む
    2. 集約のコマンドを呼ぶ (検証は集約の中で行う)
    3. 条件付き書き込みで保存する (古いコピーなら VersionConflict)
    4. バッファされたイベントを取り出し、コミット + 発行する

何も変えないコマンド (空の更新、同じ時刻への reschedule) は
2 で終わる。保存も発行もしない。
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from .aggregate import Appointment, AppointmentUpdate, NewAppointment, Organization, OrganizationUpdate
from .errors import AppointmentNotFound, OrganizationAlreadyExists, OrganizationNotFound
from .publisher import EventPublisher, Transaction, commit_and_publish
from .repository import AppointmentRepository, OrganizationRepository

logger = logging.getLogger(__name__)


class _UnitOfWork:
    def __init__(self, publisher: EventPublisher, transaction: Transaction):
        self._publisher = publisher
        self._transaction = transaction

    async def _flush(self, aggregate: Appointment | Organization) -> None:
        await commit_and_publish(self._transaction, self._publisher, aggregate.pull_events())


# ── Appointments ─────────────────────────────────


class AppointmentScheduler(_UnitOfWork):
    """予約する利用者が発行するコマンド"""

    def __init__(self, repository: AppointmentRepository, publisher: EventPublisher, transaction: Transaction):
        super().__init__(publisher, transaction)
        self._repository = repository

    async def _load(self, key: str) -> Appointment:
        appointment = await self._repository.find_by_key(key)
        if appointment is None or appointment.is_deleted:
            raise AppointmentNotFound(key)
        return appointment

    async def schedule(self, args: NewAppointment, actor: str) -> Appointment:
        appointment = Appointment.new(args, actor)
        await self._repository.save(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s scheduled at %s by %s", appointment.id, appointment.schedule_time, actor)
        return appointment

    async def cancel(self, key: str, reason: str, actor: str) -> Appointment:
        appointment = await self._load(key)
        appointment.cancel(reason, actor)
        await self._repository.save(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s cancelled by %s", key, actor)
        return appointment

    async def reschedule(self, key: str, reason: str, new_time: datetime, actor: str) -> Appointment:
        appointment = await self._load(key)
        if not appointment.reschedule(reason, new_time, actor):
            return appointment
        await self._repository.save(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s rescheduled to %s by %s", key, appointment.schedule_time, actor)
        return appointment

    async def complete(self, key: str, actor: str) -> Appointment:
        appointment = await self._load(key)
        appointment.mark_as_completed(actor)
        await self._repository.save(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s completed by %s", key, actor)
        return appointment


class AppointmentAdminManager(_UnitOfWork):
    """管理画面からの編集 (任意の項目の一括変更と削除)"""

    def __init__(self, repository: AppointmentRepository, publisher: EventPublisher, transaction: Transaction):
        super().__init__(publisher, transaction)
        self._repository = repository

    async def update_by_key(self, key: str, changes: AppointmentUpdate, actor: str) -> Appointment:
        appointment = await self._repository.find_by_key(key)
        if appointment is None or appointment.is_deleted:
            raise AppointmentNotFound(key)
        if not appointment.update(changes, actor):
            return appointment
        await self._repository.save(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s updated by %s (version %d)", key, actor, appointment.version)
        return appointment

    async def delete_by_key(self, key: str, actor: str) -> None:
        """存在しない・削除済みの予約の削除は何もしない。"""
        appointment = await self._repository.find_by_key(key)
        if appointment is None or appointment.is_deleted:
            return
        appointment.delete(actor)
        await self._repository.delete(appointment)
        await self._flush(appointment)
        logger.info("Appointment %s deleted by %s", key, actor)


# ── Organizations ────────────────────────────────


@dataclass(frozen=True)
class RegisterOrganization:
    id: str
    name: str


class OrganizationManager(_UnitOfWork):
    def __init__(self, repository: OrganizationRepository, publisher: EventPublisher, transaction: Transaction):
        super().__init__(publisher, transaction)
        self._repository = repository

    async def _ensure_name_available(self, name: str) -> None:
        if await self._repository.exists_by_name(name):
            raise OrganizationAlreadyExists(name)

    async def register(self, args: RegisterOrganization, actor: str) -> Organization:
        await self._ensure_name_available(args.name)
        org = Organization.new(args.id, args.name, actor)
        await self._repository.save(org)
        await self._flush(org)
        logger.info("Organization %s registered: %s", org.id, org.name)
        return org

    async def modify_by_id(self, id: str, changes: OrganizationUpdate, actor: str) -> Organization:
        org = await self._repository.find_by_key(id)
        if org is None or org.is_deleted:
            raise OrganizationNotFound(id)
        if changes.name is not None and changes.name != org.name:
            await self._ensure_name_available(changes.name)
        if not org.update(changes, actor):
            return org
        await self._repository.save(org)
        await self._flush(org)
        logger.info("Organization %s modified by %s (version %d)", id, actor, org.version)
        return org

    async def delete_by_id(self, id: str, actor: str) -> None:
        """存在しない・削除済みの組織の削除は何もしない。"""
        org = await self._repository.find_by_key(id)
        if org is None or org.is_deleted:
            return
        org.delete(actor)
        await self._repository.delete(org)
        await self._flush(org)
        logger.info("Organization %s deleted by %s", id, actor)
