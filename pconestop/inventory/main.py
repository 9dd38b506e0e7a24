"""
Inventory Service — FastAPI エントリーポイント

在庫台帳サービス。Event Sourcing + リードモデル。

  /commands/...          Saga から呼ばれる内部コマンド (引き当て・解放)
  /products/{id}/stock   管理者による在庫の直接補正 (注文とは紐付かない)
  /queries/...           リードモデルの参照
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..common import event_store
from ..common.config import InventorySettings, get_inventory_settings
from ..common.db import create_engine, create_session_factory, get_redis, get_session
from ..common.errors import ProductNotFound, envelope, install_error_handlers
from ..common.logging import configure_logging, install_correlation_middleware
from . import commands, queries, schema

router = APIRouter()


# ── Request Models ───────────────────────────────


class RegisterProductRequest(BaseModel):
    id: str
    product_name: str = Field(alias="name")
    price: float = 0
    stock: int

    model_config = {"populate_by_name": True}


class ReserveRequest(BaseModel):
    quantity: int
    reservation_id: str | None = None
    order_id: str | None = None


class ReleaseRequest(BaseModel):
    quantity: int
    reservation_id: str | None = None
    reason: str = "order_cancelled"


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/commands/products", status_code=status.HTTP_201_CREATED)
async def cmd_register_product(
    req: RegisterProductRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """商品登録 (カタログ管理から在庫台帳への登録)"""
    return await commands.register_product(
        session, redis, req.id, req.product_name, req.price, req.stock
    )


@router.post("/commands/products/{product_id}/reserve")
async def cmd_reserve(
    product_id: str,
    req: ReserveRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫引き当てコマンド"""
    return await commands.reserve_stock(
        session, redis, product_id, req.quantity, req.reservation_id, req.order_id
    )


@router.post("/commands/products/{product_id}/release")
async def cmd_release(
    product_id: str,
    req: ReleaseRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫解放コマンド (補償トランザクション)"""
    return await commands.release_stock(
        session, redis, product_id, req.quantity, req.reservation_id, req.reason
    )


# ── 管理者用の在庫補正 ───────────────────────────


@router.put("/products/{product_id}/stock")
async def reduce_stock(
    product_id: str,
    quantity: int,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫を quantity だけ減らす。在庫不足なら 400。"""
    await commands.reserve_stock(session, redis, product_id, quantity)
    product = await queries.get_product(session, product_id)
    return envelope("Stock updated", product)


@router.put("/products/{product_id}/stock/add")
async def add_stock(
    product_id: str,
    quantity: int,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫を quantity だけ増やす。"""
    await commands.release_stock(
        session, redis, product_id, quantity, reason="manual_adjustment"
    )
    product = await queries.get_product(session, product_id)
    return envelope("Stock increased", product)


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/queries/products")
async def query_list_products(session: AsyncSession = Depends(get_session)):
    return await queries.list_products(session)


@router.get("/queries/products/{product_id}")
async def query_get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    product = await queries.get_product(session, product_id)
    if not product:
        raise ProductNotFound(f"Product not found with ID: {product_id}", product_id=product_id)
    return product


@router.get("/queries/products/{product_id}/reservations")
async def query_reservations(product_id: str, session: AsyncSession = Depends(get_session)):
    return await queries.list_reservations(session, product_id)


@router.get("/queries/products/{product_id}/ledger")
async def query_ledger_audit(product_id: str, session: AsyncSession = Depends(get_session)):
    """イベントのリプレイ結果とリードモデルを突き合わせる。"""
    audit = await queries.audit_ledger(session, product_id)
    if audit is None:
        raise ProductNotFound(f"Product not found with ID: {product_id}", product_id=product_id)
    return audit


# ── Event Store ──────────────────────────────────


@router.get("/events")
async def get_all_events(session: AsyncSession = Depends(get_session)):
    return await event_store.load_all_events(session)


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str, session: AsyncSession = Depends(get_session)):
    return await event_store.load_events(session, aggregate_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}


def create_app(
    settings: InventorySettings | None = None,
    *,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or get_inventory_settings()
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

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.redis = redis

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_correlation_middleware(app)
    install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
