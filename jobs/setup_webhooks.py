# jobs/setup_webhooks.py

import logging
from typing import Dict, List

from shopify_service import ShopifyService

logger = logging.getLogger("fulfiller.jobs.setup_webhooks")

WEBHOOK_TOPICS = [
    "orders/create",
    "orders/updated",
    "orders/edited",
    "refunds/create",
    "orders/cancelled",
    "orders/fulfilled",
]


def setup_webhooks(shopify: ShopifyService, app_url: str) -> List[Dict]:
    """
    Points every order topic at this app. Existing registrations for those
    topics are deleted first so a changed APP_URL never leaves stale ones.
    """
    if not app_url:
        raise ValueError("APP_URL is not set")
    base = app_url.rstrip("/")

    existing = shopify.list_webhooks()
    logger.info("Found %d existing webhooks", len(existing))
    for webhook in existing:
        if webhook.get("topic") in WEBHOOK_TOPICS:
            logger.info("Deleting old webhook: %s -> %s", webhook.get("topic"), webhook.get("address"))
            shopify.delete_webhook(webhook["id"])

    created = []
    for topic in WEBHOOK_TOPICS:
        address = f"{base}/api/webhooks/{topic}"
        created.append(shopify.create_webhook(topic, address))
        logger.info("Created webhook: %s -> %s", topic, address)
    return created


if __name__ == "__main__":
    from config import get_settings
    from main import build_shopify_client, configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)
    client = build_shopify_client(settings)
    if client is None:
        raise SystemExit("SHOP_URL and SHOP_TOKEN are required")
    setup_webhooks(client, settings.app_url)
