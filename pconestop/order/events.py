"""
Order Service — イベント定義

注文ドメインで発生した事実。過去形で命名し、不変として扱う。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from .status import OrderStatus


class OrderLine(BaseModel):
    """注文明細。reservation_id は在庫台帳側の引き当てを指す。"""
    product_id: str = Field(alias="productId")
    quantity: int
    reservation_id: str | None = Field(default=None, alias="reservationId")

    model_config = {"populate_by_name": True}


class OrderCreated(BaseModel):
    """注文が作成された (常に PENDING)"""
    order_id: UUID
    idempotency_key: str
    user_id: int
    seller_id: int
    items: list[OrderLine]
    total_amount: float
    status: OrderStatus = OrderStatus.PENDING
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: UUID
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp: datetime


class OrderDeleted(BaseModel):
    """完了済みの注文が削除された"""
    order_id: UUID
    timestamp: datetime
