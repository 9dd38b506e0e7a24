"""HTTP tests for the inventory service."""

import pytest


@pytest.fixture
async def gpu(seed_product):
    return await seed_product("gpu-1", "RTX 4090", 3)


class TestInventoryCommands:
    async def test_register_and_query(self, inventory_client, gpu):
        assert gpu["stock"] == 3
        resp = await inventory_client.get("/queries/products")
        assert [p["id"] for p in resp.json()] == ["gpu-1"]

    async def test_duplicate_registration(self, inventory_client, gpu):
        resp = await inventory_client.post(
            "/commands/products", json={"id": "gpu-1", "name": "RTX 4090", "stock": 1}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_INPUT"

    async def test_insufficient_stock_envelope(self, inventory_client, gpu):
        resp = await inventory_client.post(
            "/commands/products/gpu-1/reserve", json={"quantity": 5, "reservation_id": "r-1"}
        )

        body = resp.json()
        assert resp.status_code == 400
        assert body["ok"] is False
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["message"] == (
            "Insufficient stock for product: RTX 4090. Available: 3, Requested: 5"
        )
        assert body["data"]["available"] == 3

    async def test_reserve_and_release_by_reservation(self, inventory_client, stock_of, gpu):
        await inventory_client.post(
            "/commands/products/gpu-1/reserve", json={"quantity": 2, "reservation_id": "r-1"}
        )
        assert await stock_of("gpu-1") == 1

        for _ in range(2):
            await inventory_client.post(
                "/commands/products/gpu-1/release", json={"quantity": 2, "reservation_id": "r-1"}
            )
        assert await stock_of("gpu-1") == 3

        resp = await inventory_client.get("/queries/products/gpu-1/reservations")
        assert resp.json()[0]["status"] == "RELEASED"

    async def test_validation_error_is_bad_request(self, inventory_client, gpu):
        resp = await inventory_client.post("/commands/products/gpu-1/reserve", json={})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_INPUT"


class TestStockAdjustment:
    async def test_reduce_and_add(self, inventory_client, gpu):
        resp = await inventory_client.put("/products/gpu-1/stock", params={"quantity": 2})
        assert resp.json()["message"] == "Stock updated"
        assert resp.json()["data"]["stock"] == 1

        resp = await inventory_client.put("/products/gpu-1/stock/add", params={"quantity": 10})
        assert resp.json()["message"] == "Stock increased"
        assert resp.json()["data"]["stock"] == 11

    async def test_reduce_below_zero(self, inventory_client, stock_of, gpu):
        resp = await inventory_client.put("/products/gpu-1/stock", params={"quantity": 4})
        assert resp.status_code == 400
        assert await stock_of("gpu-1") == 3

    async def test_unknown_product(self, inventory_client):
        resp = await inventory_client.put("/products/ghost/stock/add", params={"quantity": 1})
        assert resp.status_code == 404
        assert resp.json()["code"] == "PRODUCT_NOT_FOUND"


class TestQueries:
    async def test_ledger_audit(self, inventory_client, gpu):
        await inventory_client.put("/products/gpu-1/stock", params={"quantity": 1})
        resp = await inventory_client.get("/queries/products/gpu-1/ledger")
        assert resp.json()["consistent"] is True
        assert resp.json()["replayed_stock"] == 2

    async def test_event_history(self, inventory_client, gpu):
        await inventory_client.put("/products/gpu-1/stock", params={"quantity": 1})
        resp = await inventory_client.get("/events/gpu-1")
        assert [e["event_type"] for e in resp.json()] == ["ProductRegistered", "StockReserved"]

    async def test_correlation_id_is_echoed(self, inventory_client):
        resp = await inventory_client.get("/health", headers={"X-Correlation-ID": "abc"})
        assert resp.headers["X-Correlation-ID"] == "abc"
