"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command と Query のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。
公開 API ではなく、Saga (注文ライフサイクル) サービスから呼ばれる。
"""

from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.config import OrderSettings, get_order_settings
from ..common.db import create_engine, create_session_factory, get_redis, get_session
from ..common.errors import OrderAlreadyDeleted, OrderNotFound, install_error_handlers
from ..common.logging import configure_logging, install_correlation_middleware
from . import commands, queries, schema
from .events import OrderLine

router = APIRouter()


# ── Request Models ────────────────────


class CreateOrderCommand(BaseModel):
    order_id: UUID
    idempotency_key: str
    user_id: int
    seller_id: int
    items: list[OrderLine]
    total_amount: float
    # 受け取っても無視する (常に PENDING で作成)
    status: str | None = None


class TransitionCommand(BaseModel):
    status: str
    expected_version: int | None = None


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/commands/orders")
async def cmd_create_order(
    req: CreateOrderCommand,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """注文作成コマンド。新規なら 201、同じキーの再送なら 200。"""
    order, created = await commands.create_order(
        session, redis,
        req.order_id, req.idempotency_key,
        req.user_id, req.seller_id,
        req.items, req.total_amount,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content={"order": order, "created": created},
    )


@router.post("/commands/orders/{order_id}/status")
async def cmd_transition_order(
    order_id: UUID,
    req: TransitionCommand,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """ステータス遷移コマンド"""
    return await commands.transition_order(
        session, redis, order_id, req.status, req.expected_version
    )


@router.delete("/commands/orders/{order_id}")
async def cmd_delete_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    await commands.delete_order(session, redis, order_id)
    return {"order_id": str(order_id), "deleted": True}


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/queries/orders")
async def query_list_orders(session: AsyncSession = Depends(get_session)):
    return await queries.list_orders(session)


@router.get("/queries/orders/by-key/{idempotency_key}")
async def query_order_by_key(idempotency_key: str, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order_by_key(session, idempotency_key)
    if not order:
        raise OrderNotFound(
            f"No order for idempotency key {idempotency_key}", idempotency_key=idempotency_key
        )
    return order


@router.get("/queries/orders/user/{user_id}")
async def query_orders_by_user(user_id: int, session: AsyncSession = Depends(get_session)):
    return await queries.list_orders_by_user(session, user_id)


@router.get("/queries/orders/seller/{seller_id}")
async def query_orders_by_seller(seller_id: int, session: AsyncSession = Depends(get_session)):
    return await queries.list_orders_by_seller(session, seller_id)


@router.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order(session, order_id)
    if not order:
        if await queries.is_deleted(session, order_id):
            raise OrderAlreadyDeleted(
                f"Order {order_id} has been deleted", order_id=str(order_id)
            )
        raise OrderNotFound(f"Order not found with ID: {order_id}", order_id=str(order_id))
    return order


# ── Event Store ───────────────


@router.get("/events")
async def get_all_events(session: AsyncSession = Depends(get_session)):
    return await event_store.load_all_events(session)


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID, session: AsyncSession = Depends(get_session)):
    return await event_store.load_events(session, aggregate_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


def create_app(
    settings: OrderSettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or get_order_settings()
    engine = create_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        await schema.create_all(engine)
        owns_redis = app.state.redis is None
        if owns_redis:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        if owns_redis:
            await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.redis = redis

    install_correlation_middleware(app)
    install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
