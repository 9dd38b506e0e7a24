"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.db import to_iso
from .aggregate import InventoryAggregate


def _product(row) -> dict:
    return {
        "id": row.id,
        "product_name": row.product_name,
        "price": float(row.price),
        "stock": row.stock,
        "version": row.version,
        "updated_at": to_iso(row.updated_at),
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM inventory_read_model WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    return _product(row) if row else None


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM inventory_read_model ORDER BY product_name"),
    )
    return [_product(row) for row in result.fetchall()]


def _reservation(row) -> dict:
    return {
        "reservation_id": row.reservation_id,
        "product_id": row.product_id,
        "order_id": row.order_id,
        "quantity": row.quantity,
        "status": row.status,
        "created_at": to_iso(row.created_at),
        "updated_at": to_iso(row.updated_at),
    }


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM stock_reservations WHERE reservation_id = :rid"),
        {"rid": reservation_id},
    )
    row = result.fetchone()
    return _reservation(row) if row else None


async def list_reservations(session: AsyncSession, product_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM stock_reservations
            WHERE product_id = :pid
            ORDER BY created_at ASC
        """),
        {"pid": product_id},
    )
    return [_reservation(row) for row in result.fetchall()]


async def audit_ledger(session: AsyncSession, product_id: str) -> dict | None:
    """
    台帳監査: イベントをリプレイした在庫数とリードモデルの在庫数を比較する。

    両者は同じトランザクションで更新されるので、ずれていれば
    台帳の外から stock が書き換えられたことを意味する。
    """
    product = await get_product(session, product_id)
    if product is None:
        return None
    agg = InventoryAggregate.from_events(await event_store.load_events(session, product_id))
    return {
        "product_id": product_id,
        "recorded_stock": product["stock"],
        "replayed_stock": agg.stock,
        "recorded_version": product["version"],
        "replayed_version": agg.version,
        "reserved_total": agg.reserved_total,
        "released_total": agg.released_total,
        "consistent": product["stock"] == agg.stock and product["version"] == agg.version,
    }
