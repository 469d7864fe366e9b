"""
Payment provider webhooks.

WHAT: Receives MercadoPago notifications (preapproval and payment events).

WHY: Always acknowledged with 200. The provider redelivers on non-2xx, and a
redelivery cannot fix a processing error on our side; the reconciliation
job is the retry path. Unknown event types are acknowledged and ignored.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from billing_sync.core.deps import get_subscription_sync_service
from billing_sync.middleware.request_context import get_request_context
from billing_sync.schemas.webhook import WebhookResponse
from billing_sync.services.subscription_sync_service import SubscriptionSyncService

logger = logging.getLogger(__name__)

# Separate router for webhooks (no caller identity)
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post(
    "/mercadopago",
    response_model=WebhookResponse,
    summary="MercadoPago webhook",
)
async def mercadopago_webhook(
    request: Request,
    topic: Optional[str] = Query(default=None),
    resource_id: Optional[str] = Query(default=None, alias="id"),
    data_id: Optional[str] = Query(default=None, alias="data.id"),
    service: SubscriptionSyncService = Depends(get_subscription_sync_service),
) -> WebhookResponse:
    """
    Handle a provider notification.

    Accepts both the JSON body form ({type, action, data: {id}}) and the
    legacy query form (?topic=...&id=...).
    """
    try:
        payload: Dict[str, Any] = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    payload.setdefault("type", payload.get("topic") or topic)
    if not payload.get("data") and (data_id or resource_id):
        payload["data"] = {"id": data_id or resource_id}

    event_type = payload.get("type")
    context = get_request_context()
    logger.info(
        f"Processing provider webhook: {event_type}",
        extra={
            "event_type": event_type,
            "action": payload.get("action"),
            "request_id": context.request_id if context else None,
        },
    )

    try:
        outcome = await service.handle_webhook(payload)
    except Exception:
        logger.exception(f"Error processing webhook {event_type}")
        await service.session.rollback()
        # Still 200: reconciliation picks up what was missed
        return WebhookResponse(received=True, outcome="error")

    return WebhookResponse(
        received=True,
        outcome=outcome.outcome,
        message=f"Webhook {event_type} processed",
    )
