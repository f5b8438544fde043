# crud/picker.py

import logging
from contextlib import contextmanager
from typing import Iterator, List

from sqlalchemy.orm import Session

import models
from crud import transfer as crud_transfer
from exceptions import InvalidTransition, NotFound
from locks import get_order_lock

logger = logging.getLogger("fulfiller.crud.picker")

ALLOWED_TRANSITIONS = {
    models.PICKING: {models.PICKED, models.MISSING},
    models.MISSING: {models.PICKING, models.PICKED},
    models.PICKED: set(),
}


def get_line_item(db: Session, line_item_id: int) -> models.LineItem:
    row = db.query(models.LineItem).filter(models.LineItem.id == line_item_id).first()
    if not row:
        raise NotFound(f"Line item {line_item_id} not found")
    return row


@contextmanager
def locked_line_item(db: Session, line_item_id: int) -> Iterator[models.LineItem]:
    """
    Yields the row with its order's lock held, reloaded after the lock is
    taken so a reconciliation pass that finished meanwhile is seen. A row
    the pass deleted raises NotFound.
    """
    order_id = get_line_item(db, line_item_id).order_id
    with get_order_lock(order_id):
        row = (
            db.query(models.LineItem)
            .filter(models.LineItem.id == line_item_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not row:
            raise NotFound(f"Line item {line_item_id} not found")
        yield row


def get_picker_items(db: Session) -> List[dict]:
    """Line items of every order not yet fulfilled, newest first, with the order's name and shipping code."""
    rows = (
        db.query(models.LineItem, models.Order.name, models.Order.shipping_code)
        .join(models.Order, models.LineItem.order_id == models.Order.id)
        .filter(models.Order.fulfillment_status != "fulfilled")
        .order_by(models.LineItem.created_at.desc(), models.LineItem.id.desc())
        .all()
    )
    items = []
    for row, order_name, shipping_code in rows:
        data = {c.name: getattr(row, c.name) for c in models.LineItem.__table__.columns}
        data.update(order_name=order_name, shipping_code=shipping_code)
        items.append(data)
    return items


def update_picker_status(db: Session, line_item_id: int, status: str) -> models.LineItem:
    if status not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(f"Unknown picker status '{status}'")
    with locked_line_item(db, line_item_id) as row:
        if status == row.picker_status:
            return row
        if status not in ALLOWED_TRANSITIONS[row.picker_status]:
            raise InvalidTransition(f"Line item {row.id} cannot go from {row.picker_status} to {status}")

        previous = row.picker_status
        row.picker_status = status
        row.updated_at = models.utcnow()

        if status == models.MISSING:
            crud_transfer.create_from_line_item(db, row)
        elif previous == models.MISSING:
            dropped = crud_transfer.delete_transferring_for_line_item(db, row.id)
            logger.info("Line item %s left missing, dropped %d transferring records", row.id, dropped)

        db.commit()
    db.refresh(row)
    logger.info("Line item %s: %s -> %s", row.id, previous, status)
    return row


def split_line_item(db: Session, line_item_id: int, picked_quantity: int) -> models.LineItem:
    """
    Partial pick: the original row keeps `picked_quantity` and becomes
    picked; a new row with the same base remote id carries the remainder
    as missing, with a transferring record opened for it. Returns the new row.
    """
    with locked_line_item(db, line_item_id) as row:
        if row.picker_status != models.PICKING:
            raise InvalidTransition(
                f"Only rows still being picked can be split (line item {row.id} is {row.picker_status})"
            )
        if picked_quantity < 1 or picked_quantity >= row.quantity:
            raise InvalidTransition(
                f"Picked quantity {picked_quantity} must be between 1 and {row.quantity - 1} for line item {row.id}"
            )

        remainder = models.LineItem(
            order_id=row.order_id,
            shopify_line_item_id=row.shopify_line_item_id,
            quantity=row.quantity - picked_quantity,
            remote_quantity=row.remote_quantity,
            title=row.title,
            name=row.name,
            brand=row.brand,
            size=row.size,
            image_url=row.image_url,
            sku=row.sku,
            variant_title=row.variant_title,
            custom_name=row.custom_name,
            url_handle=row.url_handle,
            product_type=row.product_type,
            variant_id=row.variant_id,
            product_id=row.product_id,
            weight=row.weight,
            weight_unit=row.weight_unit,
            has_weight_warning=row.has_weight_warning,
            picker_status=models.MISSING,
            packer_status=models.PACKING,
            created_at=models.utcnow(),
        )
        row.quantity = picked_quantity
        row.picker_status = models.PICKED
        row.updated_at = models.utcnow()
        db.add(remainder)
        db.flush()
        crud_transfer.create_from_line_item(db, remainder)

        db.commit()
    db.refresh(remainder)
    logger.info("Line item %s split: %s picked, %s missing as line item %s",
                row.id, picked_quantity, remainder.quantity, remainder.id)
    return remainder
