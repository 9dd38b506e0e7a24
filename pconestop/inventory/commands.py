"""
Inventory Service — コマンドハンドラ (在庫台帳の Write 側)

在庫数を変更するのは reserve_stock / release_stock (と商品登録) だけ。

同時実行制御:
  「在庫を読む → 足りるか判定 → 書き戻す」を別々の SQL に分けると
  同時リクエストで在庫がマイナスになる (lost update)。
  ここでは判定と減算を 1 つの条件付き UPDATE で行う:

      UPDATE ... SET stock = stock - :qty WHERE id = :id AND stock >= :qty

  PostgreSQL では行ロック、SQLite ではデータベースの書き込みロックにより
  同じ商品への引き当ては直列化される。

reservation_id を指定した引き当ては stock_reservations に記録され、
同じ reservation_id の再送は二重に減算しない。解放も 1 回だけ。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.errors import (
    InsufficientStock,
    InvalidInput,
    ProductNotFound,
    ReservationConflict,
    ReservationReleased,
)
from ..common.pubsub import publish_event
from . import queries
from .events import ProductRegistered, StockReleased, StockReservationFailed, StockReserved

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"

RESERVED = "RESERVED"
RELEASED = "RELEASED"


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise InvalidInput(
            f"Quantity must be greater than zero, got {quantity}", quantity=quantity
        )


async def register_product(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    product_name: str,
    price: float,
    stock: int,
) -> dict:
    """
    商品登録コマンド (カタログ管理側から呼ばれる)

    在庫台帳の起点となる ProductRegistered イベントを記録する。
    """
    if stock < 0:
        raise InvalidInput(f"Stock cannot be negative, got {stock}", stock=stock)

    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            text("""
                INSERT INTO inventory_read_model
                    (id, product_name, price, stock, version, updated_at)
                VALUES
                    (:id, :name, :price, :stock, 1, :now)
            """),
            {"id": product_id, "name": product_name, "price": price, "stock": stock, "now": now},
        )
    except IntegrityError as e:
        await session.rollback()
        raise InvalidInput(
            f"Product {product_id} is already registered", product_id=product_id
        ) from e

    event = ProductRegistered(
        product_id=product_id,
        product_name=product_name,
        price=price,
        stock=stock,
        timestamp=now,
    )
    await event_store.append_event(
        session, product_id, "Inventory", "ProductRegistered", event.model_dump(mode="json"), 0
    )
    await session.commit()

    await publish_event(redis, CHANNEL, "ProductRegistered", event.model_dump(mode="json"))
    logger.info("product registered: %s (%s) stock=%d", product_id, product_name, stock)
    return await queries.get_product(session, product_id)


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    reservation_id: str | None = None,
    order_id: str | None = None,
) -> dict:
    """
    在庫引き当てコマンド (ReserveStock)

    1. reservation_id があれば stock_reservations に先に INSERT する
       (主キー重複 = 同じ引き当ての再送)
    2. 条件付き UPDATE で在庫を減算する
    3. 減算できなければロールバックして InsufficientStock
    4. StockReserved イベントを記録してコミット
    """
    _require_positive(quantity)
    now = datetime.now(timezone.utc)

    if reservation_id is not None:
        try:
            await session.execute(
                text("""
                    INSERT INTO stock_reservations
                        (reservation_id, product_id, order_id, quantity, status, created_at, updated_at)
                    VALUES
                        (:rid, :pid, :oid, :qty, :status, :now, :now)
                """),
                {
                    "rid": reservation_id,
                    "pid": product_id,
                    "oid": order_id,
                    "qty": quantity,
                    "status": RESERVED,
                    "now": now,
                },
            )
        except IntegrityError:
            await session.rollback()
            return await _replay_reservation(session, product_id, quantity, reservation_id)

    result = await session.execute(
        text("""
            UPDATE inventory_read_model
            SET stock = stock - :qty, version = version + 1, updated_at = :now
            WHERE id = :id AND stock >= :qty
            RETURNING product_name, stock, version
        """),
        {"qty": quantity, "now": now, "id": product_id},
    )
    row = result.fetchone()

    if row is None:
        current = (
            await session.execute(
                text("SELECT product_name, stock FROM inventory_read_model WHERE id = :id"),
                {"id": product_id},
            )
        ).fetchone()
        await session.rollback()
        if current is None:
            raise ProductNotFound(
                f"Product not found with ID: {product_id}", product_id=product_id
            )

        failed = StockReservationFailed(
            product_id=product_id,
            quantity_requested=quantity,
            quantity_available=current.stock,
            reservation_id=reservation_id,
            order_id=order_id,
            timestamp=now,
        )
        await publish_event(redis, CHANNEL, "StockReservationFailed", failed.model_dump(mode="json"))
        logger.info(
            "stock reservation rejected: product=%s requested=%d available=%d",
            product_id, quantity, current.stock,
        )
        raise InsufficientStock.for_product(
            product_id, current.product_name, current.stock, quantity
        )

    event = StockReserved(
        product_id=product_id,
        quantity=quantity,
        stock_after=row.stock,
        reservation_id=reservation_id,
        order_id=order_id,
        timestamp=now,
    )
    await event_store.append_event(
        session,
        product_id,
        "Inventory",
        "StockReserved",
        event.model_dump(mode="json"),
        row.version - 1,
    )
    await session.commit()

    await publish_event(redis, CHANNEL, "StockReserved", event.model_dump(mode="json"))
    logger.info(
        "stock reserved: product=%s quantity=%d reservation=%s stock: %d -> %d",
        product_id, quantity, reservation_id, row.stock + quantity, row.stock,
    )
    return {
        "product_id": product_id,
        "product_name": row.product_name,
        "reservation_id": reservation_id,
        "quantity": quantity,
        "stock": row.stock,
        "replayed": False,
    }


async def _replay_reservation(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    reservation_id: str,
) -> dict:
    """既に記録済みの reservation_id への再送を処理する。在庫は変更しない。"""
    existing = await queries.get_reservation(session, reservation_id)
    if existing["product_id"] != product_id or existing["quantity"] != quantity:
        raise ReservationConflict(
            f"Reservation {reservation_id} is already recorded for "
            f"product {existing['product_id']} x{existing['quantity']}",
            reservation_id=reservation_id,
        )
    if existing["status"] == RELEASED:
        raise ReservationReleased(
            f"Reservation {reservation_id} has already been released",
            reservation_id=reservation_id,
        )

    product = await queries.get_product(session, product_id)
    logger.info("stock reservation replayed: reservation=%s", reservation_id)
    return {
        "product_id": product_id,
        "product_name": product["product_name"] if product else None,
        "reservation_id": reservation_id,
        "quantity": quantity,
        "stock": product["stock"] if product else None,
        "replayed": True,
    }


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    reservation_id: str | None = None,
    reason: str = "order_cancelled",
) -> dict:
    """
    在庫解放コマンド (ReleaseStock)

    在庫を無条件に加算する (上限なし)。
    reservation_id を指定した場合は RESERVED → RELEASED の遷移に
    成功したときだけ加算するので、同じ引き当ては 1 回しか戻らない。
    未知の reservation_id は RELEASED の墓標 (tombstone) として記録し、
    遅れて届いた同じ引き当てが適用されないようにする。
    """
    _require_positive(quantity)
    now = datetime.now(timezone.utc)

    if reservation_id is not None:
        released = await _mark_reservation_released(
            session, product_id, quantity, reservation_id, now
        )
        if not released:
            product = await queries.get_product(session, product_id)
            return {
                "product_id": product_id,
                "reservation_id": reservation_id,
                "quantity": quantity,
                "stock": product["stock"] if product else None,
                "released": False,
            }

    result = await session.execute(
        text("""
            UPDATE inventory_read_model
            SET stock = stock + :qty, version = version + 1, updated_at = :now
            WHERE id = :id
            RETURNING product_name, stock, version
        """),
        {"qty": quantity, "now": now, "id": product_id},
    )
    row = result.fetchone()
    if row is None:
        await session.rollback()
        raise ProductNotFound(f"Product not found with ID: {product_id}", product_id=product_id)

    event = StockReleased(
        product_id=product_id,
        quantity=quantity,
        stock_after=row.stock,
        reason=reason,
        reservation_id=reservation_id,
        timestamp=now,
    )
    await event_store.append_event(
        session,
        product_id,
        "Inventory",
        "StockReleased",
        event.model_dump(mode="json"),
        row.version - 1,
    )
    await session.commit()

    await publish_event(redis, CHANNEL, "StockReleased", event.model_dump(mode="json"))
    logger.info(
        "stock released: product=%s quantity=%d reason=%s reservation=%s stock: %d -> %d",
        product_id, quantity, reason, reservation_id, row.stock - quantity, row.stock,
    )
    return {
        "product_id": product_id,
        "product_name": row.product_name,
        "reservation_id": reservation_id,
        "quantity": quantity,
        "stock": row.stock,
        "released": True,
    }


async def _mark_reservation_released(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    reservation_id: str,
    now: datetime,
) -> bool:
    """
    引き当てを RELEASED にする。在庫を戻すべきなら True。

    False の場合はトランザクションをコミット (墓標) または
    ロールバック済みで返す。
    """
    # 墓標の INSERT と同時の引き当てが主キーで衝突したら 1 回だけやり直す
    for _ in range(2):
        result = await session.execute(
            text("""
                UPDATE stock_reservations
                SET status = :released, updated_at = :now
                WHERE reservation_id = :rid AND status = :reserved
                RETURNING product_id, quantity
            """),
            {"released": RELEASED, "reserved": RESERVED, "now": now, "rid": reservation_id},
        )
        row = result.fetchone()
        if row is not None:
            if row.product_id != product_id or row.quantity != quantity:
                await session.rollback()
                raise ReservationConflict(
                    f"Reservation {reservation_id} belongs to "
                    f"product {row.product_id} x{row.quantity}",
                    reservation_id=reservation_id,
                )
            return True

        existing = await queries.get_reservation(session, reservation_id)
        if existing is not None:
            # 解放済み
            await session.rollback()
            logger.info("stock release replayed: reservation=%s", reservation_id)
            return False

        try:
            await session.execute(
                text("""
                    INSERT INTO stock_reservations
                        (reservation_id, product_id, order_id, quantity, status, created_at, updated_at)
                    VALUES
                        (:rid, :pid, NULL, :qty, :status, :now, :now)
                """),
                {
                    "rid": reservation_id,
                    "pid": product_id,
                    "qty": quantity,
                    "status": RELEASED,
                    "now": now,
                },
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            continue
        logger.info("release of unknown reservation %s recorded as tombstone", reservation_id)
        return False
    return False
