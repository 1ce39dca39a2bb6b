import importlib.util
import sys
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from storefront.tests.shop_service.shop_harness import (
    MUG_ID,
    RETIRED_ID,
    WEBHOOK_SECRET,
    ProcessorStub,
    lifespan,
    prepare_app,
    run,
)

PROBE_PATH = Path(__file__).resolve().parents[2] / "scripts" / "synthetic" / "checkout_probe.py"


def _load_probe():
    module_spec = importlib.util.spec_from_file_location("checkout_probe", PROBE_PATH)
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_spec.name] = module
    module_spec.loader.exec_module(module)
    return module


probe = _load_probe()


def test_probe_walks_an_order_to_paid(tmp_path) -> None:
    app = run(prepare_app(tmp_path, ProcessorStub()))
    settings = probe.ProbeSettings(webhook_secret=WEBHOOK_SECRET, product_id=MUG_ID, user_id="synthetic-1", skip_metrics=True)

    async def body() -> dict:
        async with lifespan(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                return await probe.run_probe(client, settings)

    result = run(body())
    assert result["status"] == "ok"
    assert result["orderNumber"].startswith("ORD-")
    assert "paidWebhookDelta" not in result


def test_probe_reports_failed_step(tmp_path) -> None:
    app = run(prepare_app(tmp_path, ProcessorStub()))
    settings = probe.ProbeSettings(
        webhook_secret=WEBHOOK_SECRET, product_id=RETIRED_ID, user_id="synthetic-2", skip_metrics=True
    )

    async def body() -> None:
        async with lifespan(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                await probe.run_probe(client, settings)

    with pytest.raises(probe.ProbeError, match="Add to cart failed") as excinfo:
        run(body())
    assert excinfo.value.context["status_code"] == 404


def test_probe_detects_wrong_secret(tmp_path) -> None:
    app = run(prepare_app(tmp_path, ProcessorStub()))
    settings = probe.ProbeSettings(webhook_secret="whsec_wrong", product_id=MUG_ID, user_id="synthetic-3", skip_metrics=True)

    async def body() -> None:
        async with lifespan(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                await probe.run_probe(client, settings)

    with pytest.raises(probe.ProbeError, match="Webhook delivery failed") as excinfo:
        run(body())
    assert excinfo.value.context["status_code"] == 400


def test_metric_value_sums_matching_series() -> None:
    text = "\n".join(
        [
            "# HELP storefront_payment_webhooks_total Payment webhooks",
            'storefront_payment_webhooks_total{event_type="checkout.session.completed",outcome="paid"} 3.0',
            'storefront_payment_webhooks_total{event_type="checkout.session.completed",outcome="duplicate"} 1.0',
            'storefront_payment_webhooks_total{event_type="checkout.session.expired",outcome="payment_failed"} 2.0',
        ]
    )
    assert probe.metric_value(text, probe.WEBHOOK_METRIC, {"outcome": "paid"}) == 3.0
    assert probe.metric_value(text, probe.WEBHOOK_METRIC, {"event_type": "checkout.session.completed"}) == 4.0
    assert probe.metric_value(text, "missing_total", {}) == 0.0
