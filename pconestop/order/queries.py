"""
Order Service — クエリハンドラ (CQRS の Read 側)

リードモデルから注文を取得する。product_ids は明細から導出した
商品 ID の一覧 (明細 1 行につき 1 件)。
"""

import json
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.db import to_iso
from .aggregate import OrderAggregate


def _order(row) -> dict:
    items = json.loads(row.items) if isinstance(row.items, str) else row.items
    return {
        "id": str(row.id),
        "idempotency_key": row.idempotency_key,
        "user_id": row.user_id,
        "seller_id": row.seller_id,
        "items": items,
        "product_ids": [item["product_id"] for item in items],
        "total_amount": float(row.total_amount),
        "status": row.status,
        "version": row.version,
        "created_at": to_iso(row.created_at),
        "updated_at": to_iso(row.updated_at),
    }


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    return _order(row) if row else None


async def get_order_by_key(session: AsyncSession, idempotency_key: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE idempotency_key = :key"),
        {"key": idempotency_key},
    )
    row = result.fetchone()
    return _order(row) if row else None


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM orders_read_model ORDER BY created_at DESC"),
    )
    return [_order(row) for row in result.fetchall()]


async def list_orders_by_user(session: AsyncSession, user_id: int) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM orders_read_model
            WHERE user_id = :uid
            ORDER BY created_at DESC
        """),
        {"uid": user_id},
    )
    return [_order(row) for row in result.fetchall()]


async def list_orders_by_seller(session: AsyncSession, seller_id: int) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM orders_read_model
            WHERE seller_id = :sid
            ORDER BY created_at DESC
        """),
        {"sid": seller_id},
    )
    return [_order(row) for row in result.fetchall()]


async def is_deleted(session: AsyncSession, order_id: UUID) -> bool:
    """リードモデルから消えた注文が、削除済みとしてイベントに残っているか。"""
    events = await event_store.load_events(session, order_id)
    return OrderAggregate.from_events(events).deleted
