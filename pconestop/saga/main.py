"""
Saga Service — FastAPI エントリーポイント

注文の公開 API。Saga オーケストレーターを HTTP API として公開し、
Order Service と Inventory Service をオーケストレーションする。
レスポンスはすべて {ok, statusCode, message, data, count} のエンベロープ。
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from ..common.config import SagaSettings, get_saga_settings
from ..common.errors import InvalidInput, OrderNotFound, envelope, install_error_handlers
from ..common.logging import configure_logging, install_correlation_middleware
from .auth import Identity, resolve_identity
from .clients import InventoryClient, OrderClient, open_http_client
from .idempotency import IdempotencyStore
from .orchestrator import OrderItem, OrderLifecycleOrchestrator

router = APIRouter(prefix="/orders", dependencies=[Depends(resolve_identity)])


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id"))
    quantity: int


class PlaceOrderRequest(BaseModel):
    user_id: int | None = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    seller_id: int = Field(validation_alias=AliasChoices("sellerId", "seller_id"))
    items: list[OrderItemRequest]
    total_amount: float = Field(
        validation_alias=AliasChoices("totalAmount", "total", "total_amount")
    )
    # 受け取っても無視する (常に PENDING で作成)
    status: str | None = None


# ── Dependencies ─────────────────────────────────


async def get_orchestrator(request: Request) -> AsyncIterator[OrderLifecycleOrchestrator]:
    app = request.app
    settings: SagaSettings = app.state.settings
    async with open_http_client(app) as client:
        yield OrderLifecycleOrchestrator(
            OrderClient(client, settings.order_service_url),
            InventoryClient(client, settings.inventory_service_url),
            IdempotencyStore(
                app.state.redis, settings.idempotency_ttl_seconds, settings.lock_ttl_ms
            ),
            app.state.redis,
        )


# ── Commands ─────────────────────────────────────


@router.post("")
async def place_order(
    req: PlaceOrderRequest,
    identity: Identity = Depends(resolve_identity),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    """
    注文作成 Saga を実行する。

    Idempotency-Key ヘッダが同じリクエストは 1 つの注文にまとまる。
    新規作成なら 201、再送なら既存の注文を 200 で返す。
    """
    user_id = req.user_id if req.user_id is not None else identity.user_id
    if user_id is None:
        raise InvalidInput("userId is required")

    order, created = await orchestrator.place_order(
        idempotency_key=idempotency_key or uuid.uuid4().hex,
        user_id=user_id,
        seller_id=req.seller_id,
        items=[OrderItem(product_id=i.product_id, quantity=i.quantity) for i in req.items],
        total_amount=req.total_amount,
    )
    if created:
        code, message = status.HTTP_201_CREATED, "Order created successfully"
    else:
        code, message = status.HTTP_200_OK, "Order already placed"
    return JSONResponse(status_code=code, content=envelope(message, order, code))


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: UUID,
    new_status: str = Query(alias="status"),
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.update_status(order_id, new_status)
    return envelope(f"Status updated to: {order['status']}", order)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: UUID,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.cancel_order(order_id)
    return envelope("Order cancelled", order)


@router.post("/{order_id}/reconcile")
async def reconcile_order(
    order_id: UUID,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    """キャンセル済み注文の在庫解放をやり直す。何度呼んでも在庫は 1 回しか戻らない。"""
    result = await orchestrator.reconcile_order(order_id)
    return envelope("Order reconciled", result)


@router.delete("/{order_id}")
async def delete_order(
    order_id: UUID,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.delete_order(order_id)
    return envelope("Order deleted successfully", None)


# ── Queries ──────────────────────────────────────


@router.get("")
async def list_orders(orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator)):
    orders = await orchestrator.orders.list_orders()
    return envelope("Orders retrieved successfully", orders)


@router.get("/user/{user_id}")
async def list_orders_by_user(
    user_id: int,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    orders = await orchestrator.orders.list_orders(f"/queries/orders/user/{user_id}")
    if not orders:
        raise OrderNotFound("No orders found for this user", user_id=user_id)
    return envelope("Orders retrieved successfully", orders)


@router.get("/seller/{seller_id}")
async def list_orders_by_seller(
    seller_id: int,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    orders = await orchestrator.orders.list_orders(f"/queries/orders/seller/{seller_id}")
    return envelope("Orders retrieved successfully", orders)


@router.get("/{order_id}")
async def get_order(
    order_id: UUID,
    orchestrator: OrderLifecycleOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.orders.get(order_id)
    return envelope("Order retrieved successfully", order)


def create_app(
    settings: SagaSettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or get_saga_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        owns_redis = app.state.redis is None
        if owns_redis:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        if owns_redis:
            await app.state.redis.aclose()

    app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.redis = redis
    app.state.http_transport = transport

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_correlation_middleware(app)
    install_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "saga-service"}

    return app


app = create_app()
