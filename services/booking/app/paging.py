"""
Booking Service: カーソルページネーション

一覧はオフセットや行の識別子を外に出さない。ページには代わりに
不透明な previous/next トークンを付ける。トークンは境界カーソル・走査方向・
フィルタ・ソート・ページサイズをサーバだけが持つ鍵で封印する
(JWE, direct AES-256-GCM)。クライアントは読むことも偽造することもできないので、
発行時のフィルタを広げることはできない。

1 リクエストの流れ:
    1. resolve_query: トークン(あれば)を開封して PageQuery にする
    2. PageSource.fetch: カーソルより先の行を方向に沿って取得
    3. 後ろ向きのページは反転し、宣言したソート順に並べ直す
    4. PageSource.has_neighbours: 先頭より前 / 末尾より後の行があるか
    5. 存在する隣接ページについて previous/next トークンを封印する
"""

import enum
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Protocol, TypeVar

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import MalformedPageToken

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

T = TypeVar("T")
U = TypeVar("U")


class Operator(str, enum.Enum):
    EQUAL = "eq"
    IN = "in"


class Direction(str, enum.Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class Filter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    value: Any
    op: Operator = Operator.EQUAL


class Sort(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    descending: bool = False


class Cursor(BaseModel):
    """境界行の位置: ソートキーの値 + 同値時の決定用の行 id"""
    model_config = ConfigDict(frozen=True)

    value: datetime
    key: str


class PageToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    cursor: Cursor
    direction: Direction
    filters: tuple[Filter, ...]
    sort: Sort
    page_size: int


@dataclass(frozen=True)
class ListRequest:
    filters: tuple[Filter, ...] = ()
    sort: Sort | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    page_token: str | None = None


@dataclass(frozen=True)
class PageQuery:
    """PageSource に渡す解決済みのクエリ"""

    filters: tuple[Filter, ...]
    sort: Sort
    page_size: int
    cursor: Cursor | None = None
    direction: Direction = Direction.FORWARD

    @property
    def fetch_descending(self) -> bool:
        """物理的な取得順。後ろ向きのページは宣言順を逆にたどる。"""
        if self.direction is Direction.FORWARD:
            return self.sort.descending
        return not self.sort.descending


def beyond_operator(sort: Sort, direction: Direction) -> str:
    """指定方向でカーソルより厳密に先の行を選ぶ SQL 比較演算子"""
    ascending_walk = (direction is Direction.FORWARD) != sort.descending
    return ">" if ascending_walk else "<"


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    previous_page_token: str | None = None
    next_page_token: str | None = None

    @property
    def total_items(self) -> int:
        return len(self.items)

    def map(self, f: Callable[[T], U]) -> "Page[U]":
        return Page(
            items=[f(item) for item in self.items],
            previous_page_token=self.previous_page_token,
            next_page_token=self.next_page_token,
        )


class PageTokenCipher:
    """256 ビット鍵でページトークンを封印する (JWE compact serialization)"""

    KEY_SIZE = 32

    def __init__(self, key: bytes):
        if len(key) != self.KEY_SIZE:
            raise ValueError(f"page token key must be {self.KEY_SIZE} bytes")
        self._key = key

    @classmethod
    def from_secret(cls, secret: str) -> "PageTokenCipher":
        return cls(hashlib.sha256(secret.encode("utf-8")).digest())

    def seal(self, token: PageToken) -> str:
        sealed = jwe.encrypt(
            token.model_dump_json(),
            self._key,
            algorithm=ALGORITHMS.DIR,
            encryption=ALGORITHMS.A256GCM,
        )
        return sealed.decode("ascii")

    def unseal(self, raw: str) -> PageToken:
        try:
            plaintext = jwe.decrypt(raw, self._key)
        except (JOSEError, ValueError) as exc:
            logger.warning("Rejected page token: %s", exc)
            raise MalformedPageToken() from exc
        if plaintext is None:
            raise MalformedPageToken()
        try:
            return PageToken.model_validate_json(plaintext)
        except ValidationError as exc:
            raise MalformedPageToken("page token payload is invalid") from exc


class PageSource(Protocol[T]):
    """ページング一覧のストレージ側"""

    async def fetch(self, query: PageQuery) -> list[T]:
        """query.cursor より先の行を最大 query.page_size 件、query.fetch_descending の順で返す。"""
        ...

    async def has_neighbours(self, query: PageQuery, first: Cursor, last: Cursor) -> tuple[bool, bool]:
        """宣言したソート順で (first より前に行があるか, last より後に行があるか)"""
        ...

    def cursor_of(self, item: T, sort: Sort) -> Cursor:
        """指定ソートにおける item の位置"""
        ...


def _fingerprint(filters: tuple[Filter, ...]) -> list[tuple]:
    return sorted((f.field, f.op.value, json.dumps(f.value, sort_keys=True, default=str)) for f in filters)


def clamp_page_size(page_size: int) -> int:
    if page_size <= 0:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


def resolve_query(cipher: PageTokenCipher, request: ListRequest, default_sort: Sort) -> PageQuery:
    if not request.page_token:
        return PageQuery(
            filters=tuple(request.filters),
            sort=request.sort or default_sort,
            page_size=clamp_page_size(request.page_size),
        )

    token = cipher.unseal(request.page_token)
    if _fingerprint(token.filters) != _fingerprint(tuple(request.filters)):
        logger.warning("Page token filters do not match the request")
        raise MalformedPageToken("page token was issued for different filters")
    if request.sort is not None and request.sort != token.sort:
        raise MalformedPageToken("page token was issued for a different sorting")
    return PageQuery(
        filters=token.filters,
        sort=token.sort,
        page_size=clamp_page_size(token.page_size),
        cursor=token.cursor,
        direction=token.direction,
    )


async def paginate(
    source: PageSource[T],
    cipher: PageTokenCipher,
    request: ListRequest,
    default_sort: Sort,
) -> Page[T]:
    """source に対して 1 ページ分のリクエストを実行する。一覧が空なら空のページを返す。"""
    query = resolve_query(cipher, request, default_sort)
    rows = list(await source.fetch(query))
    if query.direction is Direction.BACKWARD:
        rows.reverse()
    if not rows:
        return Page(items=[])

    first, last = source.cursor_of(rows[0], query.sort), source.cursor_of(rows[-1], query.sort)
    has_previous, has_next = await source.has_neighbours(query, first, last)

    def seal(cursor: Cursor, direction: Direction) -> str:
        return cipher.seal(
            PageToken(
                cursor=cursor,
                direction=direction,
                filters=query.filters,
                sort=query.sort,
                page_size=query.page_size,
            )
        )

    return Page(
        items=rows,
        previous_page_token=seal(first, Direction.BACKWARD) if has_previous else None,
        next_page_token=seal(last, Direction.FORWARD) if has_next else None,
    )
