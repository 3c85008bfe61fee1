"""
Booking Service: データベーススキーマ

文は 1 つずつ実行する (asyncpg は 1 つの prepared statement に
複数のコマンドを受け付けない)。すべて冪等。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS organizations (
        organization_id   VARCHAR PRIMARY KEY,
        name              VARCHAR NOT NULL,
        create_time       TIMESTAMPTZ NOT NULL,
        create_by         VARCHAR NOT NULL,
        last_update_time  TIMESTAMPTZ NOT NULL,
        last_update_by    VARCHAR NOT NULL,
        row_version       INTEGER NOT NULL DEFAULT 0,
        is_deleted        BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_organizations_active_name
        ON organizations (name) WHERE is_deleted = FALSE
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_organizations_listing
        ON organizations (create_time, organization_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        appointment_id    VARCHAR PRIMARY KEY,
        title             VARCHAR NOT NULL,
        place_id          VARCHAR NOT NULL,
        targeted_to       VARCHAR,
        scheduled_by      VARCHAR NOT NULL,
        schedule_time     TIMESTAMPTZ NOT NULL,
        notes             JSONB NOT NULL DEFAULT '[]'::jsonb,
        status_type       VARCHAR NOT NULL,
        create_time       TIMESTAMPTZ NOT NULL,
        create_by         VARCHAR NOT NULL,
        last_update_time  TIMESTAMPTZ NOT NULL,
        last_update_by    VARCHAR NOT NULL,
        row_version       INTEGER NOT NULL DEFAULT 0,
        is_deleted        BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_appointments_by_user
        ON appointments (scheduled_by, schedule_time DESC, appointment_id DESC)
        WHERE is_deleted = FALSE
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_appointments_by_place
        ON appointments (place_id, schedule_time DESC, appointment_id DESC)
        WHERE is_deleted = FALSE
    """,
    """
    CREATE TABLE IF NOT EXISTS places (
        place_id      VARCHAR PRIMARY KEY,
        display_name  VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employees (
        employee_id  VARCHAR PRIMARY KEY,
        full_name    VARCHAR NOT NULL,
        hired_at     TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS platform_users (
        user_id    VARCHAR PRIMARY KEY,
        full_name  VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_outbox (
        event_id      VARCHAR PRIMARY KEY,
        topic         VARCHAR NOT NULL,
        event_key     VARCHAR NOT NULL,
        aggregate_id  VARCHAR NOT NULL,
        payload       JSONB NOT NULL,
        status        VARCHAR NOT NULL DEFAULT 'PENDING',
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        published_at  TIMESTAMPTZ,
        retry_count   INTEGER NOT NULL DEFAULT 0,
        last_error    TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_event_outbox_pending
        ON event_outbox (created_at) WHERE status IN ('PENDING', 'FAILED')
    """,
]


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
    logger.info("Booking schema ensured (%d statements)", len(STATEMENTS))
