import json
import time
from urllib.parse import parse_qs

import httpx
import pytest

from storefront.shop_service.app.errors import GatewayRejected, GatewayUnavailable
from storefront.shop_service.app.gateway import StripeCheckoutGateway, parse_webhook_event
from storefront.tests.shop_service.shop_harness import compute_signature, sign_webhook_payload, stripe_gateway

SECRET = "whsec_unit"


def _gateway(handler, *, max_retries: int = 2, webhook_secret: str | None = SECRET) -> StripeCheckoutGateway:
    return stripe_gateway(handler, webhook_secret=webhook_secret, max_retries=max_retries)


def _session(session_id: str, status: str = "open", **extra: object) -> httpx.Response:
    body = {"id": session_id, "object": "checkout.session", "status": status, **extra}
    return httpx.Response(200, json=body)


async def _create(gateway: StripeCheckoutGateway):
    return await gateway.create_checkout_session(
        order_id=7,
        order_number="ORD-20260101-XYZ123",
        amount_cents=3200,
        currency="USD",
        idempotency_key="order-7-session-1",
    )


@pytest.mark.asyncio
async def test_session_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _session("cs_1", url="https://checkout.test/cs_1")

    gateway = _gateway(handler)
    session = await _create(gateway)
    await gateway.close()

    assert (session.session_id, session.url) == ("cs_1", "https://checkout.test/cs_1")
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/checkout/sessions"
    assert request.headers["Idempotency-Key"] == "order-7-session-1"
    assert request.headers["Authorization"] == "Bearer sk_test"
    form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
    assert form["client_reference_id"] == "7"
    assert form["metadata[orderId]"] == "7"
    assert form["line_items[0][price_data][unit_amount]"] == "3200"
    assert form["line_items[0][price_data][currency]"] == "usd"
    assert form["success_url"] == "https://shop.test/orders?success=true"


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_same_key() -> None:
    responses = iter(
        [
            httpx.Response(503, json={"error": {"type": "api_error", "message": "down"}}),
            httpx.Response(429, json={"error": {"type": "invalid_request_error", "message": "slow down"}}),
            httpx.Response(500, json={"error": {"type": "api_error", "message": "boom"}}),
        ]
    )
    keys: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers["Idempotency-Key"])
        return next(responses, _session("cs_2", url="https://checkout.test/cs_2"))

    session = await _create(_gateway(handler, max_retries=3))

    assert session.session_id == "cs_2"
    assert keys == ["order-7-session-1"] * 4


@pytest.mark.asyncio
async def test_retries_are_bounded() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayUnavailable, match="unreachable"):
        await _create(_gateway(handler, max_retries=1))
    assert len(attempts) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad amount"}}),
        httpx.Response(200, json={"id": "cs_3", "object": "checkout.session"}),
        httpx.Response(200, text="<html>oops</html>"),
    ],
)
async def test_rejections_are_not_retried(response: httpx.Response) -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return response

    with pytest.raises(GatewayRejected):
        await _create(_gateway(handler))
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalid_request_keeps_processor_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": {"type": "invalid_request_error", "message": "Amount too small", "code": "amount_too_small"}},
        )

    with pytest.raises(GatewayRejected, match="Amount too small") as excinfo:
        await _create(_gateway(handler))
    assert excinfo.value.context == {"http_status": 400, "stripe_code": "amount_too_small"}


@pytest.mark.asyncio
async def test_expire_open_session() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _session("cs_4", status="expired")

    assert await _gateway(handler).expire_checkout_session("cs_4", order_id=7)
    assert [(request.method, request.url.path) for request in seen] == [
        ("POST", "/v1/checkout/sessions/cs_4/expire")
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "expected"), [("expired", True), ("complete", False)])
async def test_expire_settled_session(status: str, expected: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/expire"):
            return httpx.Response(
                400,
                json={"error": {"type": "invalid_request_error", "message": "Session is not open"}},
            )
        return _session("cs_5", status=status)

    assert await _gateway(handler).expire_checkout_session("cs_5", order_id=7) is expected


@pytest.mark.asyncio
async def test_expire_when_processor_is_down() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"error": {"type": "api_error", "message": "bad gateway"}})

    with pytest.raises(GatewayUnavailable, match="502"):
        await _gateway(handler, max_retries=0).expire_checkout_session("cs_6", order_id=7)


def test_signature_verification() -> None:
    gateway = _gateway(lambda request: httpx.Response(500))
    payload = b'{"id":"evt_1","type":"checkout.session.completed"}'
    now = int(time.time())

    valid = sign_webhook_payload(payload, SECRET, timestamp=now)
    assert gateway.verify_webhook_signature(payload, valid)
    assert gateway.verify_webhook_signature(payload, f"t={now},v1=deadbeef,v1={compute_signature(payload, SECRET, now)}")

    assert not gateway.verify_webhook_signature(payload + b" ", valid)
    assert not gateway.verify_webhook_signature(payload, sign_webhook_payload(payload, "other", timestamp=now))
    assert not gateway.verify_webhook_signature(payload, sign_webhook_payload(payload, SECRET, timestamp=now - 301))
    assert not gateway.verify_webhook_signature(payload, None)
    assert not gateway.verify_webhook_signature(payload, "")
    assert not gateway.verify_webhook_signature(payload, f"v1={compute_signature(payload, SECRET, now)}")


def test_missing_webhook_secret_fails_closed() -> None:
    gateway = _gateway(lambda request: httpx.Response(500), webhook_secret=None)
    payload = b"{}"
    assert not gateway.verify_webhook_signature(payload, sign_webhook_payload(payload, ""))


def test_parse_webhook_event() -> None:
    body = json.dumps(
        {
            "id": "evt_9",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_9",
                    "client_reference_id": "41",
                    "payment_status": "paid",
                    "metadata": {"orderId": "42"},
                }
            },
        }
    ).encode()
    event = parse_webhook_event(body)
    assert (event.event_id, event.session_id, event.order_reference, event.payment_status) == (
        "evt_9",
        "cs_9",
        "42",
        "paid",
    )

    fallback = parse_webhook_event(
        json.dumps({"id": "evt_10", "type": "x", "data": {"object": {"client_reference_id": "41"}}}).encode()
    )
    assert fallback.order_reference == "41"
    assert fallback.session_id is None

    for broken in (b"not json", b"[]", b'{"type": "checkout.session.completed"}'):
        with pytest.raises(ValueError):
            parse_webhook_event(broken)
