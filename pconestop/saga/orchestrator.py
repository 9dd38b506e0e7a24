"""
Saga Orchestrator — 注文ライフサイクル Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  失敗時は補償トランザクション(Compensating Transaction)を実行して
  整合性を保つ。

  注文作成フロー (冪等キーのロックを保持したまま実行):
  ┌──────────────────────────────────────────────────────────────┐
  │  0. 冪等キーで既存の注文を探す → あればそれを返す            │
  │     中断された試行が作成直前まで進んでいれば、それを引き継ぐ │
  │  1. 明細ごとに Inventory Service へ在庫引き当てを依頼        │
  │     └─ 失敗 → それまでの引き当てを解放 (補償)               │
  │  2. ロックを保持していることを確認して注文作成 (PENDING)     │
  │     ├─ 拒否       → すべての引き当てを解放 (補償)            │
  │     └─ 応答なし   → 注文の有無を確認してから判断             │
  └──────────────────────────────────────────────────────────────┘

  ロックを失った試行は注文を作成せず、ログを次の試行に任せる。
  注文が参照している reservation_id は解放しない。

  キャンセル: ステータスを CANCELLED に遷移してから、明細の
  reservation_id ごとに在庫を解放する。解放は reservation_id 単位で
  1 回しか効かないので、reconcile で何度でもやり直せる。
"""

import logging
import uuid
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel

from ..common.errors import InvalidInput, ServiceError, UpstreamUnavailable
from ..common.pubsub import publish_event
from ..order.status import OrderStatus, ensure_transition, parse_status
from .clients import InventoryClient, OrderClient
from .idempotency import IdempotencyStore, Lease

logger = logging.getLogger(__name__)

CHANNEL = "saga_events"

# 冪等キーから注文 ID を決める名前空間。変更すると既存キーの再送が別注文になる
ORDER_ID_NAMESPACE = UUID("6f0f7f5e-3c1b-4f7a-9a7e-2d1c5b8e4a10")


def order_id_for(idempotency_key: str) -> UUID:
    return uuid.uuid5(ORDER_ID_NAMESPACE, idempotency_key)


def reservation_ids(order: dict | None) -> frozenset[str]:
    if order is None:
        return frozenset()
    return frozenset(line.get("reservation_id") for line in order["items"])


class OrderItem(BaseModel):
    product_id: str
    quantity: int


class OrderLifecycleOrchestrator:
    """注文ライフサイクルのオーケストレーター"""

    def __init__(
        self,
        orders: OrderClient,
        inventory: InventoryClient,
        idempotency: IdempotencyStore,
        redis: aioredis.Redis,
    ):
        self.orders = orders
        self.inventory = inventory
        self.idempotency = idempotency
        self.redis = redis

    # ── PlaceOrder ─────────────────────────────

    async def place_order(
        self,
        *,
        idempotency_key: str,
        user_id: int,
        seller_id: int,
        items: list[OrderItem],
        total_amount: float,
    ) -> tuple[dict, bool]:
        """
        注文を作成する。戻り値は (注文, 新規作成なら True)。

        同じ冪等キーでの再送は在庫に触れず既存の注文を返す。
        在庫の引き当てがすべて成功し、注文が作成されたときだけ
        在庫が減った状態で終わる。
        """
        self._validate(items, total_amount)
        order_id = order_id_for(idempotency_key)
        saga_log: list[dict] = []

        async with self.idempotency.lock(idempotency_key) as lease:
            existing = await self.orders.find(order_id)
            if existing is not None:
                await self._settle_earlier_attempts(idempotency_key, order_id, saga_log, existing)
                logger.info("order %s replayed for key %s", order_id, idempotency_key)
                return existing, False

            resumed = await self._resume_interrupted_attempt(idempotency_key, order_id, saga_log)
            if resumed is not None:
                await self._publish_saga_event("SagaCompleted", order_id, saga_log)
                return resumed

            attempt = await self.idempotency.next_attempt(idempotency_key)
            lines = await self._reserve_all(lease, attempt, order_id, items, saga_log)
            payload = {
                "order_id": str(order_id),
                "idempotency_key": idempotency_key,
                "user_id": user_id,
                "seller_id": seller_id,
                "items": lines,
                "total_amount": total_amount,
            }
            order, created = await self._create_order(lease, attempt, payload, saga_log)
            await self.idempotency.forget(idempotency_key, attempt)

        await self._publish_saga_event("SagaCompleted", order_id, saga_log)
        logger.info(
            "order %s placed: user=%s lines=%d attempt=%d", order_id, user_id, len(lines), attempt
        )
        return order, created

    def _validate(self, items: list[OrderItem], total_amount: float) -> None:
        # 在庫に触れる前に弾く
        if not items:
            raise InvalidInput("An order needs at least one item")
        for item in items:
            if item.quantity <= 0:
                raise InvalidInput(
                    f"Quantity for product {item.product_id} must be greater than zero",
                    product_id=item.product_id,
                    quantity=item.quantity,
                )
        if total_amount is None or total_amount <= 0:
            raise InvalidInput(
                "Total amount must be greater than zero", total_amount=total_amount
            )

    async def _resume_interrupted_attempt(
        self, idempotency_key: str, order_id: UUID, saga_log: list[dict]
    ) -> tuple[dict, bool] | None:
        """
        注文がまだない状態で、前の試行が残したログを片付ける。

        作成リクエストまで進んでいた試行があれば、その作成が遅れて
        届く可能性がある。引き当てを解放せず、同じリクエストを送って
        注文を確定させる (注文作成は冪等)。
        """
        last = await self.idempotency.last_attempt(idempotency_key)
        for attempt in range(last, 0, -1):
            payload = await self.idempotency.ready(idempotency_key, attempt)
            if payload is None:
                continue
            step = self._step(saga_log, "CreateOrder (RESUMED)", attempt=attempt)
            try:
                order, created = await self.orders.create(payload)
            except UpstreamUnavailable as e:
                self._fail(step, e)
                raise
            except ServiceError as e:
                # 作成できない注文。引き当てはすべて解放してよい
                self._fail(step, e)
                await self._settle_earlier_attempts(idempotency_key, order_id, saga_log)
                raise
            step["status"] = "COMPLETED"
            logger.warning("order %s: resumed interrupted attempt %d", order_id, attempt)
            await self._settle_earlier_attempts(idempotency_key, order_id, saga_log, order)
            return order, created

        await self._settle_earlier_attempts(idempotency_key, order_id, saga_log)
        return None

    async def _settle_earlier_attempts(
        self,
        idempotency_key: str,
        order_id: UUID,
        saga_log: list[dict],
        order: dict | None = None,
    ) -> None:
        """
        残っている補償ログの引き当てを解放する。order が参照している分は残す。

        注文がない状態で解放しきれなければ、新しい試行は始めない。
        """
        keep = reservation_ids(order)
        complete = True
        last = await self.idempotency.last_attempt(idempotency_key)
        for attempt in range(1, last + 1):
            leftovers = [
                line
                for line in await self.idempotency.pending(idempotency_key, attempt)
                if line["reservation_id"] not in keep
            ]
            if leftovers:
                logger.warning(
                    "order %s: releasing %d reservation(s) left by attempt %d",
                    order_id, len(leftovers), attempt,
                )
            if await self._release_lines(
                leftovers, order_id, saga_log, reason="order_placement_retried"
            ):
                await self.idempotency.forget(idempotency_key, attempt)
            else:
                complete = False

        if not complete and order is None:
            raise UpstreamUnavailable(
                f"Stock held by an earlier attempt for order {order_id} "
                "could not be released yet; retry later",
                order_id=str(order_id),
            )

    async def _reserve_all(
        self,
        lease: Lease,
        attempt: int,
        order_id: UUID,
        items: list[OrderItem],
        saga_log: list[dict],
    ) -> list[dict]:
        lines = []
        for line_no, item in enumerate(items):
            line = {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "reservation_id": f"{order_id}:{attempt}:{line_no}",
            }
            # 送信前に記録する。応答がなくても後で解放できる
            await self.idempotency.remember(lease.key, attempt, line)
            lines.append(line)

            step = self._step(saga_log, "ReserveStock", product_id=item.product_id)
            try:
                await lease.ensure_held()
                await self.inventory.reserve(
                    item.product_id, item.quantity, line["reservation_id"], order_id
                )
            except ServiceError as e:
                self._fail(step, e)
                # この試行の分だけ解放する。ほかの試行のログには触れない
                await self._abandon_attempt(lease, attempt, order_id, lines, saga_log)
                if not await lease.held():
                    raise lease.superseded() from e
                raise
            step["status"] = "COMPLETED"
        return lines

    async def _create_order(
        self, lease: Lease, attempt: int, payload: dict, saga_log: list[dict]
    ) -> tuple[dict, bool]:
        order_id = UUID(payload["order_id"])
        lines = payload["items"]
        # ここから先の作成リクエストは遅れて届く可能性がある
        await self.idempotency.mark_ready(lease.key, attempt, payload)

        step = self._step(saga_log, "CreateOrder")
        # ロックを失っていれば、ログと作成リクエストは引き継いだ試行に任せる
        await lease.ensure_held()
        try:
            order, created = await self.orders.create(payload)
        except UpstreamUnavailable as e:
            # 注文が作られたかどうか分からない
            step["status"] = "UNKNOWN"
            step["error"] = e.message
            try:
                order = await self.orders.find(order_id)
            except UpstreamUnavailable:
                logger.error(
                    "order %s: outcome unknown, stock reservations kept for the next attempt",
                    order_id,
                )
                raise e
            if order is None:
                if await lease.held():
                    await self._abandon_attempt(lease, attempt, order_id, lines, saga_log)
                raise e
            step["status"] = "COMPLETED"
            await self._abandon_attempt(lease, attempt, order_id, lines, saga_log, order)
            return order, True
        except ServiceError as e:
            self._fail(step, e)
            await self._abandon_attempt(lease, attempt, order_id, lines, saga_log)
            raise

        if not created:
            # 同じキーの注文が先に作られていた。注文が参照していない引き当ては不要
            step["status"] = "SKIPPED"
            await self._abandon_attempt(lease, attempt, order_id, lines, saga_log, order)
            return order, False

        step["status"] = "COMPLETED"
        return order, True

    async def _abandon_attempt(
        self,
        lease: Lease,
        attempt: int,
        order_id: UUID,
        lines: list[dict],
        saga_log: list[dict],
        order: dict | None = None,
    ) -> None:
        """この試行の引き当てを解放する (補償トランザクション)。order が参照している分は残す。"""
        keep = reservation_ids(order)
        released = await self._release_lines(
            [line for line in lines if line["reservation_id"] not in keep],
            order_id,
            saga_log,
            reason="order_placement_failed",
        )
        if released:
            await self.idempotency.forget(lease.key, attempt)
        else:
            logger.error("order %s: compensation incomplete, will retry on next attempt", order_id)

    async def _release_lines(
        self, lines: list[dict], order_id: UUID, saga_log: list[dict], reason: str
    ) -> bool:
        """
        引き当てを逆順に解放する。すべて処理できたら True。

        実際に適用されなかった引き当ての解放は墓標として記録されるだけで、
        在庫は変わらない。
        """
        if not lines:
            return True
        complete = True
        for line in reversed(lines):
            step = self._step(
                saga_log, "ReleaseStock (COMPENSATING)", product_id=line["product_id"]
            )
            try:
                await self.inventory.release(
                    line["product_id"], line["quantity"], line["reservation_id"], reason
                )
            except UpstreamUnavailable as e:
                self._fail(step, e)
                complete = False
                continue
            except ServiceError as e:
                # 商品が消えた等。解放するものがない
                self._fail(step, e)
                logger.warning(
                    "order %s: release of %s skipped: %s", order_id, line["reservation_id"], e
                )
                continue
            step["status"] = "COMPLETED"

        await self._publish_saga_event("SagaCompensated", order_id, saga_log)
        return complete

    # ── UpdateStatus / CancelOrder ──────────────

    async def update_status(self, order_id: UUID, new_status: str) -> dict:
        """
        ステータスを遷移させる。CANCELLED への遷移では在庫も戻す。

        在庫の解放に失敗しても注文は CANCELLED のまま。呼び出し元には
        エラーを返し、reconcile_order で解放をやり直せるようにする。
        """
        target = parse_status(new_status)
        order = await self.orders.get(order_id)
        ensure_transition(OrderStatus(order["status"]), target, order_id)

        updated = await self.orders.transition(order_id, target.value, order["version"])
        if target is OrderStatus.CANCELLED:
            await self._release_order_stock(updated, reason="order_cancelled")
        return updated

    async def cancel_order(self, order_id: UUID) -> dict:
        return await self.update_status(order_id, OrderStatus.CANCELLED.value)

    async def reconcile_order(self, order_id: UUID) -> dict:
        """CANCELLED の注文について、まだ戻っていない在庫を解放する。"""
        order = await self.orders.get(order_id)
        releases: list[dict] = []
        if order["status"] == OrderStatus.CANCELLED.value:
            releases = await self._release_order_stock(order, reason="reconciliation")
        return {"order": order, "releases": releases}

    async def delete_order(self, order_id: UUID) -> None:
        await self.orders.delete(order_id)

    async def _release_order_stock(self, order: dict, reason: str) -> list[dict]:
        saga_log: list[dict] = []
        releases = []
        failure: UpstreamUnavailable | None = None

        for line in order["items"]:
            if not line.get("reservation_id"):
                continue
            step = self._step(saga_log, "ReleaseStock", product_id=line["product_id"])
            try:
                releases.append(
                    await self.inventory.release(
                        line["product_id"], line["quantity"], line["reservation_id"], reason
                    )
                )
            except UpstreamUnavailable as e:
                self._fail(step, e)
                failure = failure or e
                continue
            step["status"] = "COMPLETED"

        order_id = order["id"]
        if failure is not None:
            await self._publish_saga_event("SagaStockReleasePending", order_id, saga_log)
            logger.error("order %s cancelled but stock release is pending", order_id)
            raise type(failure)(
                f"Order {order_id} cancelled; stock release pending reconciliation",
                order_id=order_id,
            )
        await self._publish_saga_event("SagaStockReleased", order_id, saga_log)
        return releases

    # ── saga log ───────────────────────────────

    @staticmethod
    def _step(saga_log: list[dict], action: str, **detail) -> dict:
        step = {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **detail,
        }
        saga_log.append(step)
        return step

    @staticmethod
    def _fail(step: dict, error: ServiceError) -> None:
        step["status"] = "FAILED"
        step["error"] = error.message

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: UUID,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        await publish_event(
            self.redis,
            CHANNEL,
            event_type,
            {"order_id": str(order_id), "saga_log": saga_log},
        )
