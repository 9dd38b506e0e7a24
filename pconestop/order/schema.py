"""
Order Service — テーブル定義

orders_read_model.items は注文明細 (product_id, quantity, reservation_id)
の JSON。version はイベントストアの最新バージョンと一致させ、
ステータス更新時の楽観的ロックに使う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..common import event_store

ORDERS_READ_MODEL_DDL = """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id              VARCHAR(36)    PRIMARY KEY,
        idempotency_key VARCHAR(128)   NOT NULL UNIQUE,
        user_id         BIGINT         NOT NULL,
        seller_id       BIGINT         NOT NULL,
        items           TEXT           NOT NULL,
        total_amount    NUMERIC(12, 2) NOT NULL,
        status          VARCHAR(16)    NOT NULL,
        version         INTEGER        NOT NULL,
        created_at      TIMESTAMP      NOT NULL,
        updated_at      TIMESTAMP      NOT NULL
    )
"""


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(ORDERS_READ_MODEL_DDL))
        await event_store.create_table(conn)
