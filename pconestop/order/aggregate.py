"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元し、
ステータス遷移の判定はこの復元結果に対して行う。
"""

from uuid import UUID

from .status import OrderStatus


class OrderAggregate:
    def __init__(self) -> None:
        self.id: UUID | None = None
        self.idempotency_key: str = ""
        self.user_id: int | None = None
        self.seller_id: int | None = None
        self.items: list[dict] = []
        self.total_amount: float = 0
        self.status: OrderStatus | None = None
        self.deleted: bool = False
        self.version: int = 0

    @property
    def exists(self) -> bool:
        return self.id is not None and not self.deleted

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = UUID(data["order_id"])
        self.idempotency_key = data["idempotency_key"]
        self.user_id = data["user_id"]
        self.seller_id = data["seller_id"]
        self.items = data["items"]
        self.total_amount = data["total_amount"]
        self.status = OrderStatus.PENDING

    def apply_order_status_changed(self, data: dict) -> None:
        self.status = OrderStatus(data["to_status"])

    def apply_order_deleted(self, _data: dict) -> None:
        self.deleted = True

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderStatusChanged": self.apply_order_status_changed,
            "OrderDeleted": self.apply_order_deleted,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
