"""
Booking Service: 参照データ (場所・従業員・利用者)

場所・従業員・プラットフォーム利用者は別の境界づけられたコンテキストが所有する。
このサービスは予約のリードモデルを補完するために読むだけ (レプリカでもよい)。
キー単位でもまとめてでも取得できる。
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import EmployeeNotFound, NotFound, PlaceNotFound, UserNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Place:
    id: str
    name: str


@dataclass(frozen=True)
class Employee:
    id: str
    full_name: str
    hired_at: datetime | None = None


@dataclass(frozen=True)
class User:
    id: str
    full_name: str


# ── Read repositories ────────────────────────────


class DirectoryRepository(Generic[T]):
    """1 つの参照テーブルに対するキー検索"""

    table: str = ""
    id_column: str = ""

    def __init__(self, session: AsyncSession):
        self._session = session

    def to_entity(self, row) -> T:
        raise NotImplementedError

    async def find_by_key(self, key: str) -> T | None:
        result = await self._session.execute(
            text(f"SELECT * FROM {self.table} WHERE {self.id_column} = :key"),
            {"key": key},
        )
        row = result.fetchone()
        if not row:
            return None
        return self.to_entity(row)

    async def find_all_by_keys(self, keys: list[str]) -> list[T]:
        if not keys:
            return []
        result = await self._session.execute(
            text(f"SELECT * FROM {self.table} WHERE {self.id_column} = ANY(:keys)"),
            {"keys": list(keys)},
        )
        return [self.to_entity(row) for row in result.fetchall()]


class PlaceRepository(DirectoryRepository[Place]):
    table = "places"
    id_column = "place_id"

    def to_entity(self, row) -> Place:
        return Place(id=row.place_id, name=row.display_name)


class EmployeeRepository(DirectoryRepository[Employee]):
    table = "employees"
    id_column = "employee_id"

    def to_entity(self, row) -> Employee:
        return Employee(id=row.employee_id, full_name=row.full_name, hired_at=row.hired_at)


class UserRepository(DirectoryRepository[User]):
    table = "platform_users"
    id_column = "user_id"

    def to_entity(self, row) -> User:
        return User(id=row.user_id, full_name=row.full_name)


# ── Fetchers ─────────────────────────────────────


class DirectoryFetcher(Generic[T]):
    def __init__(self, repository: DirectoryRepository[T], not_found: Callable[[str], NotFound]):
        self._repository = repository
        self._not_found = not_found

    async def get_by_key(self, key: str) -> T:
        entity = await self._repository.find_by_key(key)
        if entity is None:
            raise self._not_found(key)
        return entity

    async def list_by_keys(self, keys: list[str]) -> dict[str, T]:
        """id をキーにした一括取得。見つからないキーは結果に含まれない。"""
        unique = list(dict.fromkeys(k for k in keys if k))
        entities = await self._repository.find_all_by_keys(unique)
        found = {entity.id: entity for entity in entities}
        if len(found) < len(unique):
            logger.warning(
                "%s: %d of %d references not found",
                self._repository.table, len(unique) - len(found), len(unique),
            )
        return found


def place_fetcher(session: AsyncSession) -> DirectoryFetcher[Place]:
    return DirectoryFetcher(PlaceRepository(session), PlaceNotFound)


def employee_fetcher(session: AsyncSession) -> DirectoryFetcher[Employee]:
    return DirectoryFetcher(EmployeeRepository(session), EmployeeNotFound)


def user_fetcher(session: AsyncSession) -> DirectoryFetcher[User]:
    return DirectoryFetcher(UserRepository(session), UserNotFound)
