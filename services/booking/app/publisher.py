"""
Booking Service: イベント発行

取り出したドメインイベントをブローカー (Redis Pub/Sub, topic ごとに 1 チャネル)
に届ける方法は 2 つ:

    OutboxEventPublisher  集約と同じトランザクション内で event_outbox に書き込む。
                          発行は後で OutboxRelay が行う。
                          コミットと発行の間でプロセスが落ちても失われない。
    RedisEventPublisher   コミット直後に直接発行する。
                          その間にプロセスが落ちるとイベントは失われる。

commit_and_publish はどちらの場合もコミットと発行の順序を決める。
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Protocol, Sequence

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .events import DomainEvent

logger = logging.getLogger(__name__)

MAX_RETRY = 3


class Transaction(Protocol):
    async def commit(self) -> None: ...


class EventPublisher(ABC):
    # publish() が呼び出し側のトランザクションに書き込む場合は True
    in_transaction: bool = False

    @abstractmethod
    async def publish(self, events: Sequence[DomainEvent]) -> None: ...


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        for event in events:
            await self._redis.publish(event.topic, json.dumps(event.to_message(), default=str))
            logger.info("Published %s (key=%s)", event.topic, event.key)


class OutboxEventPublisher(EventPublisher):
    in_transaction = True

    def __init__(self, session: AsyncSession):
        self._session = session

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        for event in events:
            await self._session.execute(
                text("""
                    INSERT INTO event_outbox
                        (event_id, topic, event_key, aggregate_id, payload, status, created_at)
                    VALUES
                        (:event_id, :topic, :event_key, :aggregate_id, CAST(:payload AS JSONB),
                         'PENDING', :now)
                """),
                {
                    "event_id": str(event.event_id),
                    "topic": event.topic,
                    "event_key": event.key,
                    "aggregate_id": event.aggregate_id,
                    "payload": json.dumps(event.to_message(), default=str),
                    "now": datetime.now(timezone.utc),
                },
            )


async def commit_and_publish(
    transaction: Transaction,
    publisher: EventPublisher,
    events: Sequence[DomainEvent],
) -> None:
    """作業単位をコミットし、そのイベントを publisher に渡す。"""
    if publisher.in_transaction:
        await publisher.publish(events)
        await transaction.commit()
    else:
        await transaction.commit()
        await publisher.publish(events)


class OutboxRelay:
    """PENDING/FAILED の outbox 行を Redis に送る。MAX_RETRY 回失敗した行は DEAD_LETTER にする。"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        poll_interval: float = 5.0,
        batch_size: int = 100,
    ):
        self._session_factory = session_factory
        self._redis = redis
        self._poll = poll_interval
        self._batch = batch_size

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info("Outbox relay started (poll=%.1fs, batch=%d)", self._poll, self._batch)
        while not shutdown_event.is_set():
            try:
                await self.relay_once()
            except Exception:
                logger.exception("Outbox relay iteration failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._poll)
            except asyncio.TimeoutError:
                pass

    async def relay_once(self) -> dict[str, int]:
        published = 0
        failed = 0
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT event_id, topic, payload, retry_count
                    FROM event_outbox
                    WHERE status IN ('PENDING', 'FAILED')
                    ORDER BY created_at ASC
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                """),
                {"limit": self._batch},
            )
            for row in result.fetchall():
                payload = row.payload if isinstance(row.payload, str) else json.dumps(row.payload)
                try:
                    await self._redis.publish(row.topic, payload)
                    await session.execute(
                        text("""
                            UPDATE event_outbox
                            SET status = 'PUBLISHED', published_at = :now
                            WHERE event_id = :event_id
                        """),
                        {"event_id": row.event_id, "now": datetime.now(timezone.utc)},
                    )
                    published += 1
                except Exception as err:
                    retry = (row.retry_count or 0) + 1
                    status = "DEAD_LETTER" if retry >= MAX_RETRY else "FAILED"
                    logger.warning("Outbox event %s failed (%s, attempt %d): %s", row.event_id, status, retry, err)
                    await session.execute(
                        text("""
                            UPDATE event_outbox
                            SET status = :status, retry_count = :retry, last_error = :error
                            WHERE event_id = :event_id
                        """),
                        {"status": status, "retry": retry, "error": str(err)[:500], "event_id": row.event_id},
                    )
                    failed += 1
            await session.commit()

        if published or failed:
            logger.info("Outbox relay: %d published, %d failed", published, failed)
        return {"published": published, "failed": failed}
