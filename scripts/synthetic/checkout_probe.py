#!/usr/bin/env python3
"""Synthetic probe for the shop service checkout path.

Walks one order through address creation, cart fill, checkout and a signed
``checkout.session.completed`` webhook, then checks that the order ended up
paid and that the webhook counters moved. Meant for staging environments whose
webhook secret is known to the caller; it never talks to the real processor.
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import hmac
import json
import os
import re
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from storefront.shop_service.app.gateway import SIGNATURE_HEADER

WEBHOOK_METRIC = "storefront_payment_webhooks_total"

_METRIC_LINE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)$"
)
_LABEL = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>(?:[^"\\]|\\.)*)"')


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    """Build a processor-style signature header (``t=<unix>,v1=<hmac-sha256>``) for ``payload``."""

    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class ProbeError(RuntimeError):
    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = dict(context or {})


@dataclass(slots=True)
class ProbeSettings:
    webhook_secret: str
    product_id: int
    user_id: str
    skip_metrics: bool = False
    metrics_path: str = "/metrics"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthetic checkout probe for the shop service")
    parser.add_argument(
        "--base-url",
        default=os.getenv("SHOP_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the shop service (default: %(default)s or SHOP_BASE_URL)",
    )
    parser.add_argument(
        "--webhook-secret",
        default=os.getenv("SERVICE_PAYMENT_WEBHOOK_SECRET"),
        help="Secret used to sign the synthetic webhook (default: SERVICE_PAYMENT_WEBHOOK_SECRET)",
    )
    parser.add_argument("--product-id", type=int, default=int(os.getenv("SHOP_PROBE_PRODUCT_ID", "1")))
    parser.add_argument("--metrics-path", default="/metrics")
    parser.add_argument("--skip-metrics", action="store_true", help="Skip the Prometheus counter check")
    parser.add_argument("--request-timeout", type=float, default=10.0)
    return parser.parse_args()


def metric_value(text: str, name: str, labels: Mapping[str, str]) -> float:
    total = 0.0
    for line in text.splitlines():
        match = _METRIC_LINE.match(line.strip())
        if not match or match.group("name") != name:
            continue
        found = {m.group("key"): m.group("value") for m in _LABEL.finditer(match.group("labels") or "")}
        if all(found.get(key) == value for key, value in labels.items()):
            total += float(match.group("value"))
    return total


async def _expect(response: httpx.Response, status_code: int, step: str) -> dict[str, Any]:
    if response.status_code != status_code:
        raise ProbeError(
            f"{step} failed",
            context={"status_code": response.status_code, "body": response.text[:500]},
        )
    return response.json()


async def _paid_webhooks(client: httpx.AsyncClient, settings: ProbeSettings) -> float:
    response = await client.get(settings.metrics_path)
    response.raise_for_status()
    return metric_value(
        response.text,
        WEBHOOK_METRIC,
        {"event_type": "checkout.session.completed", "outcome": "paid"},
    )


async def run_probe(client: httpx.AsyncClient, settings: ProbeSettings) -> dict[str, Any]:
    headers = {"X-User-Id": settings.user_id}
    started = time.monotonic()
    before = 0.0 if settings.skip_metrics else await _paid_webhooks(client, settings)

    address = await _expect(
        await client.post(
            "/addresses",
            json={
                "firstName": "Synthetic",
                "lastName": "Probe",
                "addressLine1": "1 Probe Way",
                "city": "Testville",
                "state": "TS",
                "postalCode": "00000",
                "country": "US",
            },
            headers=headers,
        ),
        201,
        "Address creation",
    )
    await _expect(
        await client.post("/cart/items", json={"productId": settings.product_id, "quantity": 1}, headers=headers),
        201,
        "Add to cart",
    )
    address_id = address["data"]["id"]
    checkout = await _expect(
        await client.post(
            "/orders",
            json={"billingAddressId": address_id, "shippingAddressId": address_id},
            headers=headers,
        ),
        201,
        "Checkout",
    )
    order = checkout["data"]["order"]
    checkout_ms = (time.monotonic() - started) * 1000.0

    body = json.dumps(
        {
            "id": f"evt_probe_{uuid.uuid4().hex[:12]}",
            "type": "checkout.session.completed",
            "data": {"object": {"payment_status": "paid", "metadata": {"orderId": str(order["id"])}}},
        }
    ).encode()
    await _expect(
        await client.post(
            "/webhooks/payment",
            content=body,
            headers={SIGNATURE_HEADER: sign_webhook_payload(body, settings.webhook_secret)},
        ),
        200,
        "Webhook delivery",
    )

    final = (await _expect(await client.get(f"/orders/{order['id']}", headers=headers), 200, "Order lookup"))["data"][
        "order"
    ]
    if (final["status"], final["paymentStatus"]) != ("processing", "paid"):
        raise ProbeError(
            "Order was not confirmed by the webhook",
            context={"orderId": order["id"], "status": final["status"], "paymentStatus": final["paymentStatus"]},
        )

    result: dict[str, Any] = {
        "status": "ok",
        "orderId": order["id"],
        "orderNumber": order["orderNumber"],
        "checkoutMs": round(checkout_ms, 2),
        "totalMs": round((time.monotonic() - started) * 1000.0, 2),
    }
    if not settings.skip_metrics:
        delta = await _paid_webhooks(client, settings) - before
        if delta < 1:
            raise ProbeError(f"{WEBHOOK_METRIC} did not increment", context={"delta": delta})
        result["paidWebhookDelta"] = delta
    return result


async def main_async() -> int:
    args = parse_args()
    if not args.webhook_secret:
        print(json.dumps({"status": "error", "message": "webhook secret is required"}))
        return 2
    settings = ProbeSettings(
        webhook_secret=args.webhook_secret,
        product_id=args.product_id,
        user_id=f"synthetic-{uuid.uuid4().hex[:8]}",
        skip_metrics=args.skip_metrics,
        metrics_path=args.metrics_path,
    )
    async with httpx.AsyncClient(base_url=args.base_url, timeout=httpx.Timeout(args.request_timeout)) as client:
        try:
            result = await run_probe(client, settings)
        except (ProbeError, httpx.HTTPError) as exc:
            context = exc.context if isinstance(exc, ProbeError) else {"exc_type": exc.__class__.__name__}
            print(json.dumps({"status": "error", "message": str(exc), "context": context}, indent=2, sort_keys=True))
            return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
