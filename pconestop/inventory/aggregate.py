"""
Inventory Service — 在庫集約 (Inventory Aggregate)

在庫数をイベントから再構築する。リードモデルの stock と
リプレイ結果を突き合わせて台帳のずれを検出するのに使う。
"""


class InventoryAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.product_name: str = ""
        self.stock: int = 0
        self.reserved_total: int = 0
        self.released_total: int = 0
        self.version: int = 0

    def apply_product_registered(self, data: dict) -> None:
        self.id = data["product_id"]
        self.product_name = data["product_name"]
        self.stock = data["stock"]

    def apply_stock_reserved(self, data: dict) -> None:
        self.stock -= data["quantity"]
        self.reserved_total += data["quantity"]

    def apply_stock_released(self, data: dict) -> None:
        self.stock += data["quantity"]
        self.released_total += data["quantity"]

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "ProductRegistered": self.apply_product_registered,
            "StockReserved": self.apply_stock_reserved,
            "StockReleased": self.apply_stock_released,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "InventoryAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
