"""Payload builders shaped like Shopify REST webhook bodies."""
from datetime import datetime, timedelta, timezone


def make_line_item(item_id, quantity, sku=None, variant_id=None, product_id=None, **extra):
    data = {
        "id": item_id,
        "quantity": quantity,
        "sku": sku or f"SKU-{item_id}",
        "title": f"Item {item_id}",
        "name": f"Item {item_id} - Default",
        "vendor": "Hera",
        "variant_id": variant_id,
        "product_id": product_id,
        "variant_title": "Default",
        "properties": [],
    }
    data.update(extra)
    return data


def make_order(order_id=5001, line_items=(), refunds=(), **extra):
    data = {
        "id": order_id,
        "order_number": 1001,
        "name": "#1001",
        "fulfillment_status": None,
        "cancelled_at": None,
        "subtotal_price": "99.00",
        "created_at": datetime.now(timezone.utc).isoformat(),
        "shipping_lines": [{"code": "STD", "title": "Standard"}],
        "shipping_address": {"name": "Ada Lovelace", "city": "London", "country": "UK"},
        "line_items": list(line_items),
        "refunds": list(refunds),
    }
    data.update(extra)
    return data


def make_refund(refund_id, *pairs, order_id=5001):
    return {
        "id": refund_id,
        "order_id": order_id,
        "refund_line_items": [{"line_item_id": lid, "quantity": qty} for lid, qty in pairs],
    }


def days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
