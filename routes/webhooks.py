# routes/webhooks.py
import hmac
import hashlib
import base64
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Header
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

import schemas
from crud import webhooks as crud_webhooks
from database import get_db

logger = logging.getLogger("fulfiller.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

# topic -> (payload model, reconciler method)
TOPIC_HANDLERS = {
    "orders/create": (schemas.OrderSnapshot, "on_order_created"),
    "orders/updated": (schemas.OrderSnapshot, "on_order_updated"),
    "orders/edited": (schemas.OrderEditRef, "on_order_edit_committed"),
    "refunds/create": (schemas.RefundNotification, "on_refund_created"),
    "orders/cancelled": (schemas.OrderSnapshot, "on_order_cancelled"),
    "orders/fulfilled": (schemas.OrderSnapshot, "on_order_fulfilled"),
}


def verify_webhook(data: bytes, hmac_header: str, secret: str) -> bool:
    """Verify the HMAC signature of the webhook request."""
    if not secret or not hmac_header:
        return False
    digest = hmac.new(secret.encode('utf-8'), data, digestmod=hashlib.sha256).digest()
    computed_hmac = base64.b64encode(digest)
    return hmac.compare_digest(computed_hmac, hmac_header.encode('utf-8'))


@router.post("/{resource}/{event}")
async def receive_webhook(
    resource: str,
    event: str,
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    x_shopify_webhook_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """
    Receives an order webhook, verifies it and runs the matching
    reconciliation synchronously so a failure is answered with an error
    status and Shopify redelivers.
    """
    topic = f"{resource}/{event}"
    if topic not in TOPIC_HANDLERS:
        raise HTTPException(status_code=404, detail=f"Unhandled webhook topic: {topic}")

    settings = request.app.state.settings
    raw_body = await request.body()
    if settings.shopify_webhook_secret:
        if not verify_webhook(raw_body, x_shopify_hmac_sha256, settings.shopify_webhook_secret):
            raise HTTPException(status_code=401, detail="Invalid HMAC signature")

    if x_shopify_webhook_id and crud_webhooks.is_processed(db, x_shopify_webhook_id):
        logger.info("Duplicate delivery %s for %s ignored", x_shopify_webhook_id, topic)
        return {"status": "duplicate"}

    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    model, method = TOPIC_HANDLERS[topic]
    notification = schemas.parse_notification(model, payload)
    logger.info("Webhook received: %s (order %s)", topic,
                getattr(notification, "order_id", None) or getattr(notification, "id", None))

    reconciler = request.app.state.reconciler
    result = await run_in_threadpool(getattr(reconciler, method), notification)

    if x_shopify_webhook_id:
        crud_webhooks.mark_processed(db, x_shopify_webhook_id, topic, settings.webhook_dedupe_ttl_seconds)
    return {"status": "ok", "result": result.to_dict()}
