"""
Inventory Service — イベント定義

在庫台帳で発生するイベント。過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class ProductRegistered(BaseModel):
    """商品が在庫台帳に登録された (初期在庫)"""
    product_id: str
    product_name: str
    price: float
    stock: int
    timestamp: datetime


class StockReserved(BaseModel):
    """在庫が引き当てられた (在庫数を減算)"""
    product_id: str
    quantity: int
    stock_after: int
    reservation_id: str | None = None
    order_id: str | None = None
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した (在庫不足)。ストアには残さず通知のみ。"""
    product_id: str
    quantity_requested: int
    quantity_available: int
    reservation_id: str | None = None
    order_id: str | None = None
    timestamp: datetime


class StockReleased(BaseModel):
    """在庫が戻された (キャンセルの補償・管理者による追加)"""
    product_id: str
    quantity: int
    stock_after: int
    reason: str
    reservation_id: str | None = None
    timestamp: datetime
