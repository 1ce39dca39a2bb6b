"""Inbound payment processor webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request

from ..dependencies import get_order_workflow
from ..gateway import SIGNATURE_HEADER
from ..schemas import WebhookAck
from ..services import OrderWorkflow

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger(__name__)


@router.post("/payment", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> WebhookAck:
    """Acknowledge every verified delivery; only a bad signature is refused."""

    # The signature covers the exact bytes sent, so the body is never re-serialised.
    payload = await request.body()
    outcome = await workflow.handle_payment_webhook(payload, signature)
    logger.info(
        "Payment webhook %s (%s) handled: %s",
        outcome.event_id,
        outcome.event_type,
        outcome.outcome,
    )
    return WebhookAck()
