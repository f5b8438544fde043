# crud/packer.py

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

import models
import schemas
from crud import order as crud_order
from crud import transfer as crud_transfer
from crud.picker import locked_line_item
from exceptions import InvalidTransition, NotFound
from shopify_service import ShopifyService, ShopifyAPIError

logger = logging.getLogger("fulfiller.crud.packer")

PACKER_STATUSES = {models.PACKING, models.READY}
ORDER_STATUSES = {models.ORDER_PACKING, models.ORDER_WAITING, models.ORDER_HOLDING, models.ORDER_READY}


def calculate_order_status(order: models.Order, line_items: List[models.LineItem],
                           transfers: List[models.TransferItem]) -> str:
    if order.status == models.ORDER_HOLDING:
        return models.ORDER_HOLDING
    if any(t.status in (models.TRANSFERRING, models.WAITING) for t in transfers):
        return models.ORDER_WAITING
    if line_items and all(li.packer_status == models.READY for li in line_items):
        return models.ORDER_READY
    return models.ORDER_PACKING


def _transfer_info(transfers: List[models.TransferItem]) -> Optional[schemas.TransferInfo]:
    waiting = [t for t in transfers if t.status == models.WAITING]
    if not waiting:
        return None
    froms: List[str] = []
    for t in waiting:
        if t.transfer_from and t.transfer_from not in froms:
            froms.append(t.transfer_from)
    # Latest estimated arrival across the waiting records.
    dated = [(t.estimate_month, t.estimate_day) for t in waiting if t.estimate_month and t.estimate_day]
    month, day = max(dated) if dated else (None, None)
    return schemas.TransferInfo(
        quantity=sum(t.quantity for t in waiting),
        transfer_froms=froms,
        estimate_month=month,
        estimate_day=day,
    )


def build_packer_order(db: Session, order: models.Order) -> Dict:
    line_items = crud_order.get_line_items(db, order.id)
    transfers = crud_transfer.get_transfers_for_order(db, order.id)
    data = schemas.PackerOrder.model_validate(order).model_dump(exclude={"line_items"})
    data.update(
        line_items=[schemas.LineItem.model_validate(li) for li in line_items],
        order_status=calculate_order_status(order, line_items, transfers),
        has_weight_warning=any(li.has_weight_warning for li in line_items),
        has_transferring=any(t.status == models.TRANSFERRING for t in transfers),
        has_waiting=any(t.status == models.WAITING for t in transfers),
        transfer_info=_transfer_info(transfers),
    )
    return data


def get_packer_orders(db: Session) -> List[Dict]:
    orders = (
        db.query(models.Order)
        .filter(models.Order.fulfillment_status != "fulfilled")
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .all()
    )
    return [build_packer_order(db, o) for o in orders]


def get_packer_order(db: Session, order_id: int) -> Dict:
    order = crud_order.get_order(db, order_id)
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return build_packer_order(db, order)


def _require_order(db: Session, order_id: int) -> models.Order:
    order = crud_order.get_order(db, order_id)
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return order


def update_order_status(db: Session, order_id: int, status: str) -> models.Order:
    if status not in ORDER_STATUSES:
        raise InvalidTransition(f"Unknown order status '{status}'")
    order = _require_order(db, order_id)
    logger.info("Order %s status %s -> %s", order.name, order.status, status)
    order.status = status
    db.commit()
    db.refresh(order)
    return order


def update_order_note(db: Session, order_id: int, note: str) -> models.Order:
    if len(note) > 50:
        raise InvalidTransition("Note must be 50 characters or less")
    order = _require_order(db, order_id)
    order.note = note
    db.commit()
    db.refresh(order)
    return order


def complete_order(db: Session, order_id: int, data: schemas.OrderComplete) -> models.Order:
    if not data.box_type:
        raise InvalidTransition("Box type is required")
    order = _require_order(db, order_id)
    order.box_type = data.box_type
    order.weight = Decimal(str(data.weight)) if data.weight else None
    order.status = models.ORDER_READY
    db.commit()
    db.refresh(order)
    logger.info("Order %s completed (box %s, weight %s)", order.name, order.box_type, order.weight)
    return order


def update_packer_status(db: Session, line_item_id: int, status: str) -> models.LineItem:
    if status not in PACKER_STATUSES:
        raise InvalidTransition(f"Unknown packer status '{status}'")
    with locked_line_item(db, line_item_id) as row:
        row.packer_status = status
        row.updated_at = models.utcnow()
        db.commit()
    db.refresh(row)
    return row


def update_line_item_weight(db: Session, line_item_id: int, grams: float,
                            shopify: Optional[ShopifyService]) -> Dict:
    """
    Corrects a row's weight locally (canonical unit, warning flag left as
    is) and pushes it to the Shopify variant. A Shopify failure is
    reported in the result, the local update stands.
    """
    if grams is None or grams <= 0:
        raise InvalidTransition("Valid weight is required")
    with locked_line_item(db, line_item_id) as row:
        logger.info("Weight update for line item %s (sku %s): %s%s -> %sg",
                    row.id, row.sku, row.weight, row.weight_unit, grams)
        row.weight = Decimal(str(grams))
        row.weight_unit = models.CANONICAL_WEIGHT_UNIT
        row.updated_at = models.utcnow()
        db.commit()
    db.refresh(row)

    result = {"success": True, "shopify_updated": False, "shopify_error": None}
    if shopify is None:
        result["shopify_error"] = "Shopify client not configured"
        return result
    try:
        if row.variant_id:
            shopify.update_variant_weight(row.variant_id, grams)
        elif row.sku:
            shopify.update_variant_weight_by_sku(row.sku, grams)
        else:
            logger.warning("Line item %s has neither variant id nor SKU, skipping Shopify update", row.id)
            result["shopify_error"] = "No variant id or SKU"
            return result
        result["shopify_updated"] = True
    except ShopifyAPIError as e:
        logger.error("Shopify weight update failed for line item %s: %s", row.id, e)
        result["shopify_error"] = str(e)
    return result
