"""
Order Service — コマンドハンドラ (CQRS の Write 側)

コマンドは状態を変更する操作で、イベントをストアに追記し、
同じトランザクションでリードモデルも更新する。

注文単位の直列化:
  ステータス遷移はイベントから再構築した version を期待値として
  追記する。同じ注文への同時遷移は (aggregate_id, version) の
  UNIQUE 制約またはリードモデルの version 条件で片方が失敗する。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.errors import (
    ConcurrentModification,
    InvalidInput,
    OrderAlreadyDeleted,
    OrderNotFound,
    PreconditionFailed,
)
from ..common.pubsub import publish_event
from . import queries
from .aggregate import OrderAggregate
from .events import OrderCreated, OrderDeleted, OrderLine, OrderStatusChanged
from .status import OrderStatus, ensure_transition, parse_status

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


def _validate_new_order(items: list[OrderLine], total_amount: float) -> None:
    if total_amount is None or total_amount <= 0:
        raise InvalidInput(
            "Total amount must be greater than zero", total_amount=total_amount
        )
    if not items:
        raise InvalidInput("An order needs at least one item")
    for item in items:
        if item.quantity <= 0:
            raise InvalidInput(
                f"Quantity for product {item.product_id} must be greater than zero",
                product_id=item.product_id,
                quantity=item.quantity,
            )


async def _load(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    agg = OrderAggregate.from_events(await event_store.load_events(session, order_id))
    if not agg.exists:
        raise OrderNotFound(f"Order not found with ID: {order_id}", order_id=str(order_id))
    return agg


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    idempotency_key: str,
    user_id: int,
    seller_id: int,
    items: list[OrderLine],
    total_amount: float,
) -> tuple[dict, bool]:
    """
    注文作成コマンド

    ステータスは呼び出し側の指定にかかわらず常に PENDING。
    同じ注文 ID / 冪等キーでの再送は既存の注文を返す (created=False)。
    """
    _validate_new_order(items, total_amount)

    existing = await queries.get_order_by_key(session, idempotency_key)
    if existing is not None:
        return existing, False
    if await queries.is_deleted(session, order_id):
        raise OrderAlreadyDeleted(
            f"Order {order_id} was completed and deleted; "
            f"idempotency key {idempotency_key} cannot place it again",
            order_id=str(order_id),
            idempotency_key=idempotency_key,
        )

    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=order_id,
        idempotency_key=idempotency_key,
        user_id=user_id,
        seller_id=seller_id,
        items=items,
        total_amount=total_amount,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")

    try:
        await session.execute(
            text("""
                INSERT INTO orders_read_model
                    (id, idempotency_key, user_id, seller_id, items, total_amount,
                     status, version, created_at, updated_at)
                VALUES
                    (:id, :key, :user_id, :seller_id, :items, :total_amount,
                     :status, 1, :now, :now)
            """),
            {
                "id": str(order_id),
                "key": idempotency_key,
                "user_id": user_id,
                "seller_id": seller_id,
                "items": json.dumps(event_data["items"]),
                "total_amount": total_amount,
                "status": OrderStatus.PENDING.value,
                "now": now,
            },
        )
    except IntegrityError:
        # 同じキーの同時作成に負けた
        await session.rollback()
        existing = await queries.get_order_by_key(session, idempotency_key)
        if existing is None:
            existing = await queries.get_order(session, order_id)
        if existing is None:
            raise
        return existing, False

    await event_store.append_event(session, order_id, "Order", "OrderCreated", event_data, 0)
    await session.commit()

    await publish_event(redis, CHANNEL, "OrderCreated", event_data)
    logger.info(
        "order created: %s key=%s user=%s lines=%d", order_id, idempotency_key, user_id, len(items)
    )
    return await queries.get_order(session, order_id), True


async def transition_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    new_status: str,
    expected_version: int | None = None,
) -> dict:
    """
    ステータス遷移コマンド (UpdateStatus)

    1. イベントから集約を再構築
    2. 遷移表で妥当性を検証 (不正なら IllegalTransition)
    3. OrderStatusChanged を追記し、リードモデルを version 条件付きで更新
    """
    target = parse_status(new_status)
    agg = await _load(session, order_id)

    if expected_version is not None and expected_version != agg.version:
        raise ConcurrentModification(
            f"Order {order_id} is at version {agg.version}, expected {expected_version}",
            order_id=str(order_id),
            version=agg.version,
        )
    ensure_transition(agg.status, target, order_id)

    now = datetime.now(timezone.utc)
    event = OrderStatusChanged(
        order_id=order_id, from_status=agg.status, to_status=target, timestamp=now
    )
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, order_id, "Order", "OrderStatusChanged", event_data, agg.version
    )

    result = await session.execute(
        text("""
            UPDATE orders_read_model
            SET status = :status, version = :version, updated_at = :now
            WHERE id = :id AND version = :expected
        """),
        {
            "status": target.value,
            "version": version,
            "now": now,
            "id": str(order_id),
            "expected": agg.version,
        },
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrentModification(
            f"Order {order_id} was modified concurrently", order_id=str(order_id)
        )
    await session.commit()

    await publish_event(redis, CHANNEL, "OrderStatusChanged", event_data)
    logger.info("order %s: %s -> %s", order_id, agg.status.value, target.value)
    return await queries.get_order(session, order_id)


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
) -> None:
    """注文削除コマンド。COMPLETED の注文だけ削除できる。"""
    agg = await _load(session, order_id)
    if agg.status != OrderStatus.COMPLETED:
        raise PreconditionFailed(
            "Only orders in COMPLETED status can be deleted",
            order_id=str(order_id),
            status=agg.status.value,
        )

    now = datetime.now(timezone.utc)
    event_data = OrderDeleted(order_id=order_id, timestamp=now).model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "OrderDeleted", event_data, agg.version)
    result = await session.execute(
        text("DELETE FROM orders_read_model WHERE id = :id AND version = :expected"),
        {"id": str(order_id), "expected": agg.version},
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrentModification(
            f"Order {order_id} was modified concurrently", order_id=str(order_id)
        )
    await session.commit()

    await publish_event(redis, CHANNEL, "OrderDeleted", event_data)
    logger.info("order deleted: %s", order_id)
