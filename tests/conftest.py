"""
Shared fixtures for the order / inventory / saga test suite.

Each service runs in-process on its own SQLite file. The saga service
reaches the others through RoutingTransport, which dispatches by host to
ASGI transports, can inject timeouts and connection failures, and can
park a request so a test can interleave two saga runs.
"""

import asyncio
import json
import uuid

import httpx
import pytest
from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse
from redis.exceptions import LockNotOwnedError

from pconestop.common.config import InventorySettings, OrderSettings, SagaSettings
from pconestop.inventory import schema as inventory_schema
from pconestop.inventory.main import create_app as create_inventory_app
from pconestop.order import schema as order_schema
from pconestop.order.main import create_app as create_order_app
from pconestop.saga.main import create_app as create_saga_app

GOOD_TOKEN = "Bearer good-token"
# 認証サービスが数値でない ID を返すトークン
ODD_ID_TOKEN = "Bearer odd-id-token"
CALLER_ID = 7


# ============================================================================
# Redis test double
# ============================================================================


class RecordingRedis:
    """In-memory stand-in for the redis.asyncio commands the services use."""

    def __init__(self):
        self.values: dict[str, object] = {}
        self.lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 0

    async def set(self, name, value, nx=False, px=None, ex=None):
        if nx and name in self.values:
            return None
        self.values[name] = value
        return True

    async def get(self, name):
        return self.values.get(name)

    async def delete(self, *names):
        removed = 0
        for name in names:
            removed += self.values.pop(name, None) is not None
            removed += self.lists.pop(name, None) is not None
        return removed

    async def incr(self, name):
        self.values[name] = int(self.values.get(name, 0)) + 1
        return self.values[name]

    async def expire(self, name, seconds):
        return True

    async def rpush(self, name, *values):
        self.lists.setdefault(name, []).extend(values)
        return len(self.lists[name])

    async def lrange(self, name, start, end):
        items = self.lists.get(name, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def aclose(self):
        pass

    def lock(self, name, timeout=None, blocking=True, thread_local=True):
        return RecordingLock(self, name)

    def expire_lock(self, key: str) -> None:
        """Let the lock for an idempotency key run out, as if its holder had stalled."""
        self.values.pop(f"saga:lock:{key}", None)

    def events(self, channel: str) -> list[dict]:
        return [message for c, message in self.published if c == channel]


class RecordingLock:
    """Token-owned lock with the redis.asyncio.lock.Lock methods the saga calls."""

    def __init__(self, redis: RecordingRedis, name: str):
        self.redis = redis
        self.name = name
        self.token = uuid.uuid4().hex

    async def acquire(self):
        return await self.redis.set(self.name, self.token, nx=True) is not None

    async def owned(self):
        return self.redis.values.get(self.name) == self.token

    async def reacquire(self):
        if not await self.owned():
            raise LockNotOwnedError("Cannot reacquire a lock that's no longer owned")
        return True

    async def release(self):
        if not await self.owned():
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.redis.values[self.name]


# ============================================================================
# Transport with fault injection
# ============================================================================


class RoutingTransport(httpx.AsyncBaseTransport):
    """Dispatch requests to in-process apps by host name."""

    def __init__(self, apps: dict[str, FastAPI]):
        self.routes = {host: httpx.ASGITransport(app=app) for host, app in apps.items()}
        self.faults: list[dict] = []
        self.gates: list[dict] = []
        self.requests: list[tuple[str, str]] = []

    def fail(
        self,
        host: str,
        method: str,
        path_prefix: str,
        *,
        exc: type[Exception] = httpx.ReadTimeout,
        after: bool = False,
        skip: int = 0,
        times: int = 1,
    ) -> None:
        """
        Make matching requests fail with ``exc``.

        ``after=True`` delivers the request first and loses the response,
        so the downstream change is applied but the caller never hears back.
        """
        self.faults.append(
            {
                "host": host,
                "method": method,
                "path_prefix": path_prefix,
                "exc": exc,
                "after": after,
                "skip": skip,
                "times": times,
            }
        )

    def hold(self, host: str, method: str, path_prefix: str) -> "Gate":
        """Park the next matching request until the returned gate is opened."""
        gate = Gate()
        self.gates.append(
            {"host": host, "method": method, "path_prefix": path_prefix, "gate": gate}
        )
        return gate

    def _take_gate(self, request: httpx.Request) -> "Gate | None":
        for entry in self.gates:
            if (
                request.url.host == entry["host"]
                and request.method == entry["method"]
                and request.url.path.startswith(entry["path_prefix"])
            ):
                self.gates.remove(entry)
                return entry["gate"]
        return None

    def _take_fault(self, request: httpx.Request) -> dict | None:
        for fault in self.faults:
            if (
                fault["times"] > 0
                and request.url.host == fault["host"]
                and request.method == fault["method"]
                and request.url.path.startswith(fault["path_prefix"])
            ):
                if fault["skip"] > 0:
                    fault["skip"] -= 1
                    return None
                fault["times"] -= 1
                return fault
        return None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, f"{request.url.host}{request.url.path}"))
        gate = self._take_gate(request)
        if gate is not None:
            gate.arrived.set()
            await gate.opened.wait()
        fault = self._take_fault(request)
        if fault is not None and not fault["after"]:
            raise fault["exc"]("injected fault", request=request)
        response = await self.routes[request.url.host].handle_async_request(request)
        if fault is not None:
            await response.aread()
            raise fault["exc"]("injected fault", request=request)
        return response


class Gate:
    def __init__(self):
        self.arrived = asyncio.Event()
        self.opened = asyncio.Event()

    def open(self) -> None:
        self.opened.set()


def build_auth_app() -> FastAPI:
    auth_app = FastAPI()

    @auth_app.get("/api/v1/users/me")
    async def me(authorization: str | None = Header(default=None)):
        if authorization == ODD_ID_TOKEN:
            return {"ok": True, "data": {"id": "user-7", "role": "USER"}}
        if authorization != GOOD_TOKEN:
            return JSONResponse(status_code=401, content={"ok": False, "message": "Invalid token"})
        return {"ok": True, "data": {"id": CALLER_ID, "role": "USER"}}

    return auth_app


# ============================================================================
# Service fixtures
# ============================================================================


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
async def inventory_app(tmp_path, redis):
    settings = InventorySettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}",
        structured_logging=False,
    )
    app = create_inventory_app(settings, redis=redis)
    await inventory_schema.create_all(app.state.engine)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
async def order_app(tmp_path, redis):
    settings = OrderSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        structured_logging=False,
    )
    app = create_order_app(settings, redis=redis)
    await order_schema.create_all(app.state.engine)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
async def inventory_session(inventory_app):
    async with inventory_app.state.session_factory() as session:
        yield session


@pytest.fixture
async def order_session(order_app):
    async with order_app.state.session_factory() as session:
        yield session


@pytest.fixture
async def inventory_client(inventory_app):
    transport = httpx.ASGITransport(app=inventory_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://inventory.test") as client:
        yield client


@pytest.fixture
def transport(inventory_app, order_app):
    return RoutingTransport(
        {
            "inventory.test": inventory_app,
            "orders.test": order_app,
            "auth.test": build_auth_app(),
        }
    )


@pytest.fixture
async def saga_client(transport, redis):
    settings = SagaSettings(
        order_service_url="http://orders.test",
        inventory_service_url="http://inventory.test",
        auth_service_url="http://auth.test",
        structured_logging=False,
    )
    app = create_saga_app(settings, redis=redis, transport=transport)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://saga.test",
        headers={"Authorization": GOOD_TOKEN},
    ) as client:
        yield client


@pytest.fixture
def seed_product(inventory_client):
    async def seed(product_id: str, name: str, stock: int, price: float = 100.0) -> dict:
        resp = await inventory_client.post(
            "/commands/products",
            json={"id": product_id, "name": name, "price": price, "stock": stock},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return seed


@pytest.fixture
def stock_of(inventory_client):
    async def stock(product_id: str) -> int:
        resp = await inventory_client.get(f"/queries/products/{product_id}")
        return resp.json()["stock"]

    return stock
