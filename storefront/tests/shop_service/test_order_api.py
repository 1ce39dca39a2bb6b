from httpx import ASGITransport, AsyncClient

from storefront.common import dispose_engines
from storefront.tests.shop_service.shop_harness import (
    MUG_ID,
    MetricTracker,
    ProcessorStub,
    admin_headers,
    checkout,
    create_address,
    fill_cart,
    lifespan,
    prepare_app,
    run,
    user_headers,
)


def test_checkout_creates_priced_order_and_session(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-1")
                await fill_cart(client, "o-1")
                created_tracker = MetricTracker("storefront_orders_created_total")

                response = await checkout(client, "o-1", address_id)
                assert response.status_code == 201, response.text
                payload = response.json()
                assert payload["success"] is True
                order = payload["data"]["order"]
                assert order["orderNumber"].startswith("ORD-")
                assert len(order["orderNumber"]) == len("ORD-20260101-ABC123")
                assert order["status"] == "pending"
                assert order["paymentStatus"] == "pending"
                assert order["subtotal"] == "20.00"
                assert order["tax"] == "2.00"
                assert order["shipping"] == "10.00"
                assert order["discount"] == "0.00"
                assert order["total"] == "32.00"
                assert [(item["productName"], item["quantity"], item["price"]) for item in order["items"]] == [
                    ("Coffee Mug", 2, "5.00"),
                    ("Poster", 1, "10.00"),
                ]
                assert payload["data"]["checkoutUrl"] == "https://checkout.test/pay/cs_test_1"
                assert created_tracker.delta() == 1

                assert processor.idempotency_keys == [f"order-{order['id']}-session-1"]
                form = processor.requests[0].content.decode()
                assert "line_items%5B0%5D%5Bprice_data%5D%5Bunit_amount%5D=3200" in form

                # The cart survives checkout until payment is confirmed.
                cart = (await client.get("/cart", headers=user_headers("o-1"))).json()["data"]
                assert cart["totalItems"] == 3

                events = await client.get(f"/orders/{order['id']}/events", headers=user_headers("o-1"))
                assert [event["type"] for event in events.json()["data"]] == [
                    "created",
                    "checkout_session_created",
                ]

    run(body())
    run(dispose_engines())


def test_empty_cart_creates_no_order(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-2")
                response = await checkout(client, "o-2", address_id)
                assert response.status_code == 400
                assert response.json()["code"] == "empty_cart"

                listed = await client.get("/orders", headers=user_headers("o-2"))
                assert listed.json()["data"]["total"] == 0
                assert processor.requests == []

    run(body())
    run(dispose_engines())


def test_addresses_must_belong_to_the_buyer(tmp_path) -> None:
    app = run(prepare_app(tmp_path, ProcessorStub()))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                foreign_address = await create_address(client, "someone-else")
                await fill_cart(client, "o-3")

                forbidden = await checkout(client, "o-3", foreign_address)
                assert forbidden.status_code == 403
                assert forbidden.json()["code"] == "forbidden"

                missing = await checkout(client, "o-3", 9999)
                assert missing.status_code == 404

                listed = await client.get("/orders", headers=user_headers("o-3"))
                assert listed.json()["data"]["total"] == 0

    run(body())
    run(dispose_engines())


def test_repeated_checkout_reuses_open_order(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-4")
                await fill_cart(client, "o-4")

                first = await checkout(client, "o-4", address_id)
                second = await checkout(client, "o-4", address_id)
                assert first.status_code == 201
                assert second.status_code == 200
                assert second.json()["data"]["order"]["id"] == first.json()["data"]["order"]["id"]
                assert second.json()["data"]["checkoutUrl"] == first.json()["data"]["checkoutUrl"]
                assert len(processor.requests) == 1

                listed = await client.get("/orders", headers=user_headers("o-4"))
                assert listed.json()["data"]["total"] == 1

    run(body())
    run(dispose_engines())


def test_edited_cart_supersedes_open_order(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-5")
                await fill_cart(client, "o-5")
                stale = (await checkout(client, "o-5", address_id)).json()["data"]["order"]

                await client.post("/cart/items", json={"productId": MUG_ID}, headers=user_headers("o-5"))
                fresh_response = await checkout(client, "o-5", address_id)
                assert fresh_response.status_code == 201
                fresh = fresh_response.json()["data"]["order"]
                assert fresh["id"] != stale["id"]
                assert fresh["subtotal"] == "25.00"
                assert processor.expired == {"cs_test_1"}

                stale_now = await client.get(f"/orders/{stale['id']}", headers=user_headers("o-5"))
                assert stale_now.json()["data"]["order"]["status"] == "cancelled"
                assert stale_now.json()["data"]["order"]["cancelledAt"] is not None

                pending = await client.get("/orders", params={"status": "pending"}, headers=user_headers("o-5"))
                assert [entry["id"] for entry in pending.json()["data"]["items"]] == [fresh["id"]]

    run(body())
    run(dispose_engines())


def test_outage_while_superseding_keeps_old_order_open(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-11")
                await fill_cart(client, "o-11")
                stale = (await checkout(client, "o-11", address_id)).json()["data"]["order"]
                await client.post("/cart/items", json={"productId": MUG_ID}, headers=user_headers("o-11"))
                processor.fail_next(503)

                failed = await checkout(client, "o-11", address_id)
                assert failed.status_code == 503
                assert failed.json()["code"] == "gateway_unavailable"
                listed = (await client.get("/orders", headers=user_headers("o-11"))).json()["data"]
                assert [(entry["id"], entry["status"]) for entry in listed["items"]] == [(stale["id"], "pending")]
                assert processor.expired == set()

                retried = await checkout(client, "o-11", address_id)
                assert retried.status_code == 201
                assert processor.expired == {"cs_test_1"}
                stale_now = await client.get(f"/orders/{stale['id']}", headers=user_headers("o-11"))
                assert stale_now.json()["data"]["order"]["status"] == "cancelled"

    run(body())
    run(dispose_engines())


def test_idempotency_key_replays_the_same_order(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-6")
                await fill_cart(client, "o-6")

                first = await checkout(client, "o-6", address_id, **{"Idempotency-Key": "checkout-abc"})
                # The key wins even after the cart changed.
                await client.post("/cart/items", json={"productId": MUG_ID}, headers=user_headers("o-6"))
                replay = await checkout(client, "o-6", address_id, **{"Idempotency-Key": "checkout-abc"})

                assert first.status_code == 201
                assert replay.status_code == 200
                assert replay.json()["data"]["order"]["id"] == first.json()["data"]["order"]["id"]
                assert replay.json()["data"]["order"]["subtotal"] == "20.00"
                assert len(processor.requests) == 1

    run(body())
    run(dispose_engines())


def test_gateway_outage_leaves_retryable_order(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-7")
                await fill_cart(client, "o-7")
                processor.fail_next(503)

                failed = await checkout(client, "o-7", address_id)
                assert failed.status_code == 503
                assert failed.json()["code"] == "gateway_unavailable"

                listed = (await client.get("/orders", headers=user_headers("o-7"))).json()["data"]
                assert listed["total"] == 1
                order = listed["items"][0]
                assert (order["status"], order["paymentStatus"]) == ("pending", "pending")

                retried = await client.post(
                    f"/orders/{order['id']}/checkout-session", headers=user_headers("o-7")
                )
                assert retried.status_code == 200
                assert retried.json()["data"]["checkoutUrl"].startswith("https://checkout.test/pay/")

                # Both attempts carried the same key, so the processor sees one logical session.
                assert processor.idempotency_keys == [f"order-{order['id']}-session-1"] * 2

                again = await checkout(client, "o-7", address_id)
                assert again.json()["data"]["order"]["id"] == order["id"]
                assert len(processor.requests) == 2

    run(body())
    run(dispose_engines())


def test_gateway_rejection_maps_to_bad_gateway(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-8")
                await fill_cart(client, "o-8")
                processor.fail_next(400)

                response = await checkout(client, "o-8", address_id)
                assert response.status_code == 502
                assert response.json()["code"] == "gateway_rejected"

    run(body())
    run(dispose_engines())


def test_orders_are_private_to_their_owner(tmp_path) -> None:
    app = run(prepare_app(tmp_path, ProcessorStub()))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-9")
                await fill_cart(client, "o-9")
                order_id = (await checkout(client, "o-9", address_id)).json()["data"]["order"]["id"]

                for path in (f"/orders/{order_id}", f"/orders/{order_id}/events"):
                    response = await client.get(path, headers=user_headers("snoop"))
                    assert response.status_code == 404

                session = await client.post(f"/orders/{order_id}/checkout-session", headers=user_headers("snoop"))
                assert session.status_code == 404

                listed = await client.get("/orders", headers=user_headers("snoop"))
                assert listed.json()["data"]["items"] == []

    run(body())
    run(dispose_engines())


def test_status_changes_require_admin_and_payment(tmp_path) -> None:
    processor = ProcessorStub()
    app = run(prepare_app(tmp_path, processor))

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                address_id = await create_address(client, "o-10")
                await fill_cart(client, "o-10")
                order_id = (await checkout(client, "o-10", address_id)).json()["data"]["order"]["id"]

                as_customer = await client.patch(
                    f"/orders/{order_id}/status", json={"status": "processing"}, headers=user_headers("o-10")
                )
                assert as_customer.status_code == 403

                for target in ("processing", "shipped", "delivered", "pending"):
                    rejected = await client.patch(
                        f"/orders/{order_id}/status", json={"status": target}, headers=admin_headers()
                    )
                    assert rejected.status_code == 400, target
                    assert rejected.json()["code"] == "invalid_transition"

                unknown = await client.patch(
                    f"/orders/{order_id}/status", json={"status": "teleported"}, headers=admin_headers()
                )
                assert unknown.status_code == 422

                cancelled = await client.patch(
                    f"/orders/{order_id}/status", json={"status": "cancelled"}, headers=admin_headers()
                )
                assert cancelled.status_code == 200
                assert cancelled.json()["data"]["order"]["status"] == "cancelled"
                assert processor.expired == {"cs_test_1"}

                revived = await client.patch(
                    f"/orders/{order_id}/status", json={"status": "processing"}, headers=admin_headers()
                )
                assert revived.status_code == 400

                session = await client.post(f"/orders/{order_id}/checkout-session", headers=user_headers("o-10"))
                assert session.status_code == 400

                missing = await client.patch("/orders/9999/status", json={"status": "shipped"}, headers=admin_headers())
                assert missing.status_code == 404

    run(body())
    run(dispose_engines())
