"""
イベントストア — Event Sourcing の追記専用ログ

Inventory Service と Order Service はそれぞれ自分のデータベースに
同じ構造の event_store テーブルを持つ (Database per Service)。
(aggregate_id, version) の UNIQUE 制約による楽観的ロックで、
同じ集約への同時書き込みを検知する。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from .db import to_iso
from .errors import ConcurrentModification

EVENT_STORE_DDL = """
    CREATE TABLE IF NOT EXISTS event_store (
        id             INTEGER PRIMARY KEY AUTOINCREMENT,
        aggregate_id   VARCHAR(64)  NOT NULL,
        aggregate_type VARCHAR(32)  NOT NULL,
        event_type     VARCHAR(64)  NOT NULL,
        event_data     TEXT         NOT NULL,
        version        INTEGER      NOT NULL,
        created_at     TIMESTAMP    NOT NULL,
        UNIQUE (aggregate_id, version)
    )
"""

# PostgreSQL では AUTOINCREMENT の代わりに IDENTITY を使う
EVENT_STORE_DDL_POSTGRES = EVENT_STORE_DDL.replace(
    "INTEGER PRIMARY KEY AUTOINCREMENT", "BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY"
)


async def create_table(conn: AsyncConnection) -> None:
    ddl = EVENT_STORE_DDL_POSTGRES if conn.dialect.name == "postgresql" else EVENT_STORE_DDL
    await conn.execute(text(ddl))


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントを追記し、新しいバージョンを返す。

    expected_version + 1 が既に存在すれば別のトランザクションが
    先に書き込んでいる → ConcurrentModification。
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO event_store
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
            """),
            {
                "agg_id": str(aggregate_id),
                "agg_type": aggregate_type,
                "evt_type": event_type,
                "evt_data": json.dumps(event_data, default=str),
                "version": new_version,
                "now": datetime.now(timezone.utc),
            },
        )
    except IntegrityError as e:
        raise ConcurrentModification(
            f"{aggregate_type} {aggregate_id} was modified concurrently "
            f"(expected version {expected_version})",
            aggregate_id=str(aggregate_id),
            expected_version=expected_version,
        ) from e
    return new_version


def _row_to_event(row) -> dict:
    return {
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "version": row.version,
        "created_at": to_iso(row.created_at),
    }


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """集約のイベントをバージョン順に返す (リプレイ用)。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": str(aggregate_id)},
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
            FROM event_store
            ORDER BY created_at ASC, version ASC
        """),
    )
    return [
        {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            **_row_to_event(row),
        }
        for row in result.fetchall()
    ]
