"""
Saga Service — 下流サービスの HTTP クライアント

httpx の例外とエラーレスポンスを共通の例外に変換する:
  タイムアウト          → UpstreamTimeout (504)
  接続失敗など          → UpstreamUnavailable (502)
  エラーエンベロープ    → code に対応する例外 (InsufficientStock など)
"""

import logging
from uuid import UUID

import httpx

from ..common.errors import (
    OrderNotFound,
    UpstreamTimeout,
    UpstreamUnavailable,
    error_from_payload,
)
from ..common.logging import outbound_headers

logger = logging.getLogger(__name__)


class ServiceClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str, name: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.name = name

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**outbound_headers(), **kwargs.pop("headers", {})}
        url = f"{self.base_url}{path}"
        try:
            resp = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("%s %s %s timed out", self.name, method, path)
            raise UpstreamTimeout(
                f"{self.name} did not respond in time ({method} {path})", service=self.name
            ) from e
        except httpx.TransportError as e:
            logger.warning("%s %s %s failed: %s", self.name, method, path, e)
            raise UpstreamUnavailable(
                f"{self.name} is unavailable ({method} {path})", service=self.name
            ) from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            raise error_from_payload(resp.status_code, payload)
        return resp


class InventoryClient(ServiceClient):
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        super().__init__(client, base_url, "inventory-service")

    async def reserve(
        self, product_id: str, quantity: int, reservation_id: str, order_id: UUID
    ) -> dict:
        resp = await self.request(
            "POST",
            f"/commands/products/{product_id}/reserve",
            json={
                "quantity": quantity,
                "reservation_id": reservation_id,
                "order_id": str(order_id),
            },
        )
        return resp.json()

    async def release(
        self, product_id: str, quantity: int, reservation_id: str, reason: str
    ) -> dict:
        resp = await self.request(
            "POST",
            f"/commands/products/{product_id}/release",
            json={"quantity": quantity, "reservation_id": reservation_id, "reason": reason},
        )
        return resp.json()


class OrderClient(ServiceClient):
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        super().__init__(client, base_url, "order-service")

    async def create(self, payload: dict) -> tuple[dict, bool]:
        resp = await self.request("POST", "/commands/orders", json=payload)
        body = resp.json()
        return body["order"], body["created"]

    async def get(self, order_id: UUID) -> dict:
        resp = await self.request("GET", f"/queries/orders/{order_id}")
        return resp.json()

    async def find(self, order_id: UUID) -> dict | None:
        try:
            return await self.get(order_id)
        except OrderNotFound:
            return None

    async def list_orders(self, path: str = "/queries/orders") -> list[dict]:
        resp = await self.request("GET", path)
        return resp.json()

    async def transition(
        self, order_id: UUID, status: str, expected_version: int | None = None
    ) -> dict:
        resp = await self.request(
            "POST",
            f"/commands/orders/{order_id}/status",
            json={"status": status, "expected_version": expected_version},
        )
        return resp.json()

    async def delete(self, order_id: UUID) -> None:
        await self.request("DELETE", f"/commands/orders/{order_id}")


def open_http_client(app) -> httpx.AsyncClient:
    """リクエスト単位の HTTP クライアント。テストでは app.state.http_transport を差し込む。"""
    settings = app.state.settings
    return httpx.AsyncClient(
        timeout=settings.upstream_timeout,
        transport=app.state.http_transport,
    )
