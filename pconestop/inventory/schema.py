"""
Inventory Service — テーブル定義

inventory_read_model : 商品ごとの在庫数 (リードモデル)
stock_reservations   : 在庫引き当ての記録。reservation_id 単位で
                       引き当て・解放を 1 回だけにする
event_store          : 在庫台帳のイベント
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..common import event_store

INVENTORY_READ_MODEL_DDL = """
    CREATE TABLE IF NOT EXISTS inventory_read_model (
        id           VARCHAR(64)    PRIMARY KEY,
        product_name VARCHAR(200)   NOT NULL,
        price        NUMERIC(12, 2) NOT NULL DEFAULT 0,
        stock        INTEGER        NOT NULL CHECK (stock >= 0),
        version      INTEGER        NOT NULL DEFAULT 0,
        updated_at   TIMESTAMP      NOT NULL
    )
"""

STOCK_RESERVATIONS_DDL = """
    CREATE TABLE IF NOT EXISTS stock_reservations (
        reservation_id VARCHAR(128) PRIMARY KEY,
        product_id     VARCHAR(64)  NOT NULL,
        order_id       VARCHAR(64),
        quantity       INTEGER      NOT NULL,
        status         VARCHAR(16)  NOT NULL,
        created_at     TIMESTAMP    NOT NULL,
        updated_at     TIMESTAMP    NOT NULL
    )
"""


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(INVENTORY_READ_MODEL_DDL))
        await conn.execute(text(STOCK_RESERVATIONS_DDL))
        await event_store.create_table(conn)
