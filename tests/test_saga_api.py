"""End-to-end tests for the public order API (saga service)."""

import asyncio

import httpx
import pytest

from .conftest import CALLER_ID, ODD_ID_TOKEN


@pytest.fixture
async def products(seed_product):
    await seed_product("gpu-1", "RTX 4090", 3, 1999.0)
    await seed_product("cpu-1", "Ryzen 9", 2, 599.0)


def order_body(*lines, total=1999.0, **extra):
    return {
        "sellerId": 2,
        "items": [{"productId": pid, "quantity": qty} for pid, qty in lines],
        "totalAmount": total,
        **extra,
    }


@pytest.fixture
def place(saga_client):
    async def _place(key, *lines, total=1999.0, **extra):
        headers = {"Idempotency-Key": key} if key else {}
        return await saga_client.post(
            "/orders", json=order_body(*lines, total=total, **extra), headers=headers
        )

    return _place


async def order_count(saga_client) -> int:
    return (await saga_client.get("/orders")).json()["count"]


class TestPlaceOrder:
    async def test_places_order_and_reserves_stock(self, place, stock_of, redis, products):
        resp = await place("k-1", ("gpu-1", 1))

        assert resp.status_code == 201
        body = resp.json()
        assert body["ok"] is True
        order = body["data"]
        assert order["status"] == "PENDING"
        assert order["user_id"] == CALLER_ID
        assert order["product_ids"] == ["gpu-1"]
        assert order["items"][0]["reservation_id"] == f"{order['id']}:1:0"
        assert await stock_of("gpu-1") == 2
        assert redis.events("saga_events")[-1]["event_type"] == "SagaCompleted"

    async def test_status_in_request_is_ignored(self, place, products):
        resp = await place("k-1", ("gpu-1", 1), status="COMPLETED", total=10)
        assert resp.json()["data"]["status"] == "PENDING"

    async def test_explicit_user_id_and_total_alias(self, saga_client, products):
        resp = await saga_client.post(
            "/orders",
            json={"userId": 42, "sellerId": 2, "items": [{"productId": "gpu-1", "quantity": 1}],
                  "total": 50},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["user_id"] == 42
        assert resp.json()["data"]["total_amount"] == 50

    async def test_same_key_places_one_order(self, place, saga_client, stock_of, products):
        first = await place("k-1", ("gpu-1", 1))
        second = await place("k-1", ("gpu-1", 1))

        assert second.status_code == 200
        assert second.json()["message"] == "Order already placed"
        assert second.json()["data"]["id"] == first.json()["data"]["id"]
        assert await stock_of("gpu-1") == 2
        assert await order_count(saga_client) == 1

    async def test_without_key_every_request_is_new(self, place, saga_client, stock_of, products):
        await place(None, ("gpu-1", 1))
        await place(None, ("gpu-1", 1))
        assert await stock_of("gpu-1") == 1
        assert await order_count(saga_client) == 2

    async def test_insufficient_stock_compensates_earlier_lines(
        self, place, saga_client, stock_of, redis, products
    ):
        resp = await place("k-1", ("gpu-1", 1), ("cpu-1", 5))

        assert resp.status_code == 400
        assert resp.json()["code"] == "INSUFFICIENT_STOCK"
        assert resp.json()["message"] == (
            "Insufficient stock for product: Ryzen 9. Available: 2, Requested: 5"
        )
        assert await stock_of("gpu-1") == 3
        assert await stock_of("cpu-1") == 2
        assert await order_count(saga_client) == 0
        assert "saga:pending:k-1:1" not in redis.lists
        assert "SagaCompensated" in [e["event_type"] for e in redis.events("saga_events")]

    async def test_retry_after_rejection_succeeds(
        self, place, inventory_client, stock_of, products
    ):
        assert (await place("k-1", ("cpu-1", 3))).status_code == 400
        await inventory_client.put("/products/cpu-1/stock/add", params={"quantity": 1})

        resp = await place("k-1", ("cpu-1", 3))
        assert resp.status_code == 201
        assert await stock_of("cpu-1") == 0

    async def test_unknown_product(self, place, stock_of, products):
        resp = await place("k-1", ("gpu-1", 1), ("ghost", 1))
        assert resp.status_code == 404
        assert resp.json()["code"] == "PRODUCT_NOT_FOUND"
        assert await stock_of("gpu-1") == 3

    @pytest.mark.parametrize(
        "lines, total",
        [((("gpu-1", 0),), 10), ((("gpu-1", 1),), 0), ((), 10)],
    )
    async def test_invalid_orders_touch_nothing(self, place, stock_of, products, lines, total):
        resp = await place("k-1", *lines, total=total)
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_INPUT"
        assert await stock_of("gpu-1") == 3

    async def test_missing_seller_is_rejected(self, saga_client, products):
        resp = await saga_client.post(
            "/orders", json={"items": [{"productId": "gpu-1", "quantity": 1}], "totalAmount": 1}
        )
        assert resp.status_code == 400

    async def test_key_in_progress(self, place, redis, stock_of, products):
        redis.values["saga:lock:busy"] = "another-request"

        resp = await place("busy", ("gpu-1", 1))

        assert resp.status_code == 409
        assert resp.json()["code"] == "REQUEST_IN_PROGRESS"
        assert await stock_of("gpu-1") == 3


class TestPlaceOrderFailures:
    async def test_lost_create_response_is_recovered(
        self, place, transport, saga_client, stock_of, products
    ):
        transport.fail("orders.test", "POST", "/commands/orders", after=True)

        resp = await place("k-1", ("gpu-1", 1))

        assert resp.status_code == 201
        assert await stock_of("gpu-1") == 2
        assert await order_count(saga_client) == 1

    async def test_create_timeout_releases_stock(
        self, place, transport, saga_client, stock_of, redis, products
    ):
        transport.fail("orders.test", "POST", "/commands/orders")

        resp = await place("k-1", ("gpu-1", 1))

        assert resp.status_code == 504
        assert resp.json()["code"] == "UPSTREAM_TIMEOUT"
        assert await stock_of("gpu-1") == 3
        assert await order_count(saga_client) == 0
        assert "saga:pending:k-1:1" not in redis.lists

    async def test_unknown_outcome_is_resumed_by_retry(
        self, place, transport, saga_client, stock_of, redis, products
    ):
        transport.fail("orders.test", "POST", "/commands/orders")
        # 最初の GET は既存注文の確認。2 回目 (結果確認) を落とす
        transport.fail("orders.test", "GET", "/queries/orders/", skip=1)

        resp = await place("k-1", ("gpu-1", 1))
        assert resp.status_code == 504
        assert await stock_of("gpu-1") == 2
        assert redis.lists["saga:pending:k-1:1"]
        assert "saga:ready:k-1:1" in redis.values

        # 作成リクエストが遅れて届くかもしれないので、引き当てを使って作成し直す
        retry = await place("k-1", ("gpu-1", 1))
        assert retry.status_code == 201
        assert retry.json()["data"]["items"][0]["reservation_id"].endswith(":1:0")
        assert await stock_of("gpu-1") == 2
        assert await order_count(saga_client) == 1
        assert "saga:pending:k-1:1" not in redis.lists
        assert "saga:ready:k-1:1" not in redis.values

    async def test_order_created_before_outage_is_returned_on_retry(
        self, place, transport, saga_client, stock_of, products
    ):
        transport.fail("orders.test", "POST", "/commands/orders", after=True)
        transport.fail("orders.test", "GET", "/queries/orders/", skip=1)

        assert (await place("k-1", ("gpu-1", 1))).status_code == 504

        retry = await place("k-1", ("gpu-1", 1))
        assert retry.status_code == 200
        assert await stock_of("gpu-1") == 2
        assert await order_count(saga_client) == 1

    @pytest.mark.parametrize("after", [False, True])
    async def test_reserve_timeout_is_compensated(
        self, place, transport, stock_of, products, after
    ):
        transport.fail("inventory.test", "POST", "/commands/products/gpu-1/reserve", after=after)

        resp = await place("k-1", ("gpu-1", 1))

        assert resp.status_code == 504
        assert await stock_of("gpu-1") == 3

    async def test_inventory_unreachable(self, place, transport, stock_of, products):
        transport.fail(
            "inventory.test", "POST", "/commands/products/cpu-1/reserve", exc=httpx.ConnectError
        )

        resp = await place("k-1", ("gpu-1", 1), ("cpu-1", 1))

        assert resp.status_code == 502
        assert resp.json()["code"] == "UPSTREAM_UNAVAILABLE"
        assert await stock_of("gpu-1") == 3
        assert await stock_of("cpu-1") == 2


class TestInterleavedAttempts:
    """Two requests with one key, where the first stalls until its lock expires."""

    async def test_retry_adopts_create_of_stalled_attempt(
        self, place, transport, saga_client, stock_of, redis, products
    ):
        gate = transport.hold("orders.test", "POST", "/commands/orders")
        first = asyncio.create_task(place("k-1", ("gpu-1", 1)))
        await gate.arrived.wait()
        redis.expire_lock("k-1")

        retry = await place("k-1", ("gpu-1", 1))
        assert retry.status_code == 201
        order = retry.json()["data"]
        assert order["items"][0]["reservation_id"] == f"{order['id']}:1:0"
        assert await stock_of("gpu-1") == 2

        # 止まっていた作成リクエストが届いても、注文も在庫も増えない
        gate.open()
        late = await first
        assert late.status_code == 200
        assert late.json()["data"]["id"] == order["id"]
        assert await stock_of("gpu-1") == 2
        assert await order_count(saga_client) == 1
        assert not [name for name in redis.lists if name.startswith("saga:pending:")]
        assert not [name for name in redis.values if name.startswith("saga:ready:")]

    async def test_stalled_reservation_does_not_outlive_compensation(
        self, place, transport, saga_client, stock_of, redis, products
    ):
        gate = transport.hold("inventory.test", "POST", "/commands/products/cpu-1/reserve")
        first = asyncio.create_task(place("k-1", ("gpu-1", 1), ("cpu-1", 1)))
        await gate.arrived.wait()
        assert await stock_of("gpu-1") == 2
        redis.expire_lock("k-1")

        retry = await place("k-1", ("gpu-1", 1), ("cpu-1", 1))
        assert retry.status_code == 201
        order = retry.json()["data"]
        assert [line["reservation_id"] for line in order["items"]] == [
            f"{order['id']}:2:0",
            f"{order['id']}:2:1",
        ]

        gate.open()
        late = await first
        assert late.status_code == 409
        assert late.json()["code"] == "REQUEST_IN_PROGRESS"
        assert await stock_of("gpu-1") == 2
        assert await stock_of("cpu-1") == 1
        assert await order_count(saga_client) == 1
        assert not [name for name in redis.lists if name.startswith("saga:pending:")]

    async def test_stalled_attempt_cannot_create_after_losing_lock(
        self, place, transport, saga_client, stock_of, redis, products
    ):
        gate = transport.hold("inventory.test", "POST", "/commands/products/gpu-1/reserve")
        first = asyncio.create_task(place("k-1", ("gpu-1", 1)))
        await gate.arrived.wait()
        redis.expire_lock("k-1")
        # 別のリクエストがロックを取った状態
        redis.values["saga:lock:k-1"] = "newer-request"

        gate.open()
        late = await first

        assert late.status_code == 409
        assert late.json()["code"] == "REQUEST_IN_PROGRESS"
        assert await order_count(saga_client) == 0
        # 作成に進む直前で止まったので、作成リクエストは次の試行に引き継がれる
        assert "saga:ready:k-1:1" in redis.values
        assert await stock_of("gpu-1") == 2

        del redis.values["saga:lock:k-1"]
        retry = await place("k-1", ("gpu-1", 1))
        assert retry.status_code == 201
        assert retry.json()["data"]["items"][0]["reservation_id"].endswith(":1:0")
        assert await stock_of("gpu-1") == 2


class TestOrderLifecycle:
    @pytest.fixture
    async def order_id(self, place, products):
        resp = await place("k-1", ("gpu-1", 2))
        return resp.json()["data"]["id"]

    async def test_cancel_restores_stock_once(self, saga_client, stock_of, order_id):
        assert await stock_of("gpu-1") == 1

        resp = await saga_client.post(f"/orders/{order_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "CANCELLED"
        assert await stock_of("gpu-1") == 3

        again = await saga_client.post(f"/orders/{order_id}/cancel")
        assert again.status_code == 409
        assert again.json()["code"] == "ILLEGAL_TRANSITION"
        assert await stock_of("gpu-1") == 3

    async def test_status_updates_to_completion_and_delete(self, saga_client, stock_of, order_id):
        for status in ("CONFIRMED", "IN_TRANSIT", "COMPLETED"):
            resp = await saga_client.put(f"/orders/{order_id}/status", params={"status": status})
            assert resp.status_code == 200
            assert resp.json()["message"] == f"Status updated to: {status}"

        resp = await saga_client.delete(f"/orders/{order_id}")
        assert resp.status_code == 200
        gone = await saga_client.get(f"/orders/{order_id}")
        assert gone.status_code == 410
        assert gone.json()["code"] == "ORDER_DELETED"
        assert await stock_of("gpu-1") == 1

    async def test_replaying_key_of_deleted_order_is_rejected(
        self, place, saga_client, stock_of, redis, order_id
    ):
        for status in ("CONFIRMED", "IN_TRANSIT", "COMPLETED"):
            await saga_client.put(f"/orders/{order_id}/status", params={"status": status})
        assert (await saga_client.delete(f"/orders/{order_id}")).status_code == 200

        resp = await place("k-1", ("gpu-1", 2))

        assert resp.status_code == 410
        assert resp.json()["code"] == "ORDER_DELETED"
        assert await stock_of("gpu-1") == 1
        # 引き当ての試行は始まっていない
        assert redis.values["saga:attempt:k-1"] == 1

    async def test_in_transit_cannot_be_cancelled(self, saga_client, stock_of, order_id):
        for status in ("CONFIRMED", "IN_TRANSIT"):
            await saga_client.put(f"/orders/{order_id}/status", params={"status": status})

        resp = await saga_client.put(f"/orders/{order_id}/status", params={"status": "CANCELLED"})

        assert resp.status_code == 409
        assert (await saga_client.get(f"/orders/{order_id}")).json()["data"]["status"] == "IN_TRANSIT"
        assert await stock_of("gpu-1") == 1

    async def test_illegal_jump(self, saga_client, order_id):
        resp = await saga_client.put(f"/orders/{order_id}/status", params={"status": "COMPLETED"})
        assert resp.status_code == 409

    async def test_unknown_status(self, saga_client, order_id):
        resp = await saga_client.put(f"/orders/{order_id}/status", params={"status": "LOST"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_INPUT"

    async def test_only_completed_orders_can_be_deleted(self, saga_client, order_id):
        resp = await saga_client.delete(f"/orders/{order_id}")
        assert resp.status_code == 400
        assert resp.json()["code"] == "PRECONDITION_FAILED"
        assert (await saga_client.get(f"/orders/{order_id}")).status_code == 200

    async def test_failed_release_is_reconciled(
        self, saga_client, transport, stock_of, order_id
    ):
        transport.fail(
            "inventory.test", "POST", "/commands/products/gpu-1/release", exc=httpx.ConnectError
        )

        resp = await saga_client.post(f"/orders/{order_id}/cancel")
        assert resp.status_code == 502
        assert resp.json()["message"] == (
            f"Order {order_id} cancelled; stock release pending reconciliation"
        )
        assert (await saga_client.get(f"/orders/{order_id}")).json()["data"]["status"] == "CANCELLED"
        assert await stock_of("gpu-1") == 1

        for _ in range(2):
            resp = await saga_client.post(f"/orders/{order_id}/reconcile")
            assert resp.status_code == 200
        assert await stock_of("gpu-1") == 3

    async def test_reconcile_leaves_active_orders_alone(self, saga_client, stock_of, order_id):
        resp = await saga_client.post(f"/orders/{order_id}/reconcile")
        assert resp.json()["data"]["releases"] == []
        assert await stock_of("gpu-1") == 1


class TestOrderQueries:
    async def test_lookups(self, place, saga_client, products):
        await place("k-1", ("gpu-1", 1))

        assert (await saga_client.get(f"/orders/user/{CALLER_ID}")).json()["count"] == 1
        assert (await saga_client.get("/orders/seller/2")).json()["count"] == 1
        assert (await saga_client.get("/orders/seller/3")).json()["count"] == 0

    async def test_user_without_orders_is_not_found(self, saga_client):
        resp = await saga_client.get("/orders/user/999")
        assert resp.status_code == 404
        assert resp.json()["message"] == "No orders found for this user"

    async def test_unknown_order(self, saga_client):
        resp = await saga_client.get("/orders/00000000-0000-0000-0000-000000000000")
        assert resp.status_code == 404
        assert resp.json()["code"] == "ORDER_NOT_FOUND"


class TestAuthentication:
    async def test_missing_token(self, saga_client, stock_of, products):
        resp = await saga_client.post(
            "/orders", json=order_body(("gpu-1", 1)), headers={"Authorization": ""}
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"
        assert await stock_of("gpu-1") == 3

    async def test_rejected_token(self, saga_client):
        resp = await saga_client.get("/orders", headers={"Authorization": "Bearer expired"})
        assert resp.status_code == 401

    async def test_health_is_public(self, saga_client):
        resp = await saga_client.get("/health", headers={"Authorization": ""})
        assert resp.status_code == 200

    async def test_non_numeric_user_id_is_unauthorized(self, saga_client, stock_of, products):
        resp = await saga_client.post(
            "/orders", json=order_body(("gpu-1", 1)), headers={"Authorization": ODD_ID_TOKEN}
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"
        assert await stock_of("gpu-1") == 3


class TestOrderScenarios:
    async def test_place_cancel_then_confirm(self, place, saga_client, seed_product, stock_of):
        await seed_product("gpu-1", "RTX 4090", 5, 1999.0)

        placed = await place("k-1", ("gpu-1", 3), total=5997.0)
        assert placed.status_code == 201
        order = placed.json()["data"]
        assert order["status"] == "PENDING"
        assert await stock_of("gpu-1") == 2

        cancelled = await saga_client.post(f"/orders/{order['id']}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "CANCELLED"
        assert await stock_of("gpu-1") == 5

        resp = await saga_client.put(
            f"/orders/{order['id']}/status", params={"status": "CONFIRMED"}
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "ILLEGAL_TRANSITION"
        assert await stock_of("gpu-1") == 5

    async def test_failing_second_line_stops_before_the_third(
        self, place, saga_client, seed_product, stock_of, transport
    ):
        await seed_product("gpu-1", "RTX 4090", 5, 1999.0)
        await seed_product("cpu-1", "Ryzen 9", 1, 599.0)
        await seed_product("ram-1", "DDR5 32GB", 5, 129.0)

        resp = await place("k-1", ("gpu-1", 1), ("cpu-1", 2), ("ram-1", 1), total=3326.0)

        assert resp.status_code == 400
        assert resp.json()["code"] == "INSUFFICIENT_STOCK"
        assert await stock_of("gpu-1") == 5
        assert await stock_of("cpu-1") == 1
        assert await stock_of("ram-1") == 5
        reserves = [path for _, path in transport.requests if path.endswith("/reserve")]
        assert reserves == [
            "inventory.test/commands/products/gpu-1/reserve",
            "inventory.test/commands/products/cpu-1/reserve",
        ]
        assert await order_count(saga_client) == 0
