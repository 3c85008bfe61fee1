"""
Booking Service: 監査情報 (Auditable)

すべての集約は Auditable をコンポジションで保持する。
作成者・最終更新者、論理削除フラグ、楽観的ロック用の version を記録する。

version は変更のたびに 1 つ進む。リポジトリは最後に読んだ version
(persisted_version) を条件付き書き込みで比較するため、
先に保存した並行ライターがいれば後の保存は上書きせずに競合として失敗する。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Auditable:
    create_time: datetime
    create_by: str
    last_update_time: datetime
    last_update_by: str
    version: int = 0
    is_deleted: bool = False
    # リポジトリが一度も書き込んでいない間は None
    persisted_version: int | None = field(default=None, repr=False)

    @classmethod
    def new(cls, actor: str) -> "Auditable":
        now = utcnow()
        return cls(
            create_time=now,
            create_by=actor,
            last_update_time=now,
            last_update_by=actor,
        )

    @classmethod
    def restore(
        cls,
        create_time: datetime,
        create_by: str,
        last_update_time: datetime,
        last_update_by: str,
        version: int,
        is_deleted: bool,
    ) -> "Auditable":
        """保存済みの行から監査情報を復元する。"""
        return cls(
            create_time=create_time,
            create_by=create_by,
            last_update_time=last_update_time,
            last_update_by=last_update_by,
            version=version,
            is_deleted=is_deleted,
            persisted_version=version,
        )

    @property
    def is_new(self) -> bool:
        return self.persisted_version is None

    def record_update(self, actor: str) -> None:
        now = utcnow()
        # 時計のずれがあっても last_update_time >= create_time を保つ
        self.last_update_time = max(now, self.create_time)
        self.last_update_by = actor
        self.version += 1

    def record_delete(self, actor: str) -> None:
        self.record_update(actor)
        self.is_deleted = True

    def mark_persisted(self) -> None:
        self.persisted_version = self.version
