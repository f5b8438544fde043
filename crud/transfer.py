# crud/transfer.py

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

import models
import schemas
from exceptions import InvalidTransition, NotFound
from locks import order_locks

logger = logging.getLogger("fulfiller.crud.transfer")

# Source location code -> marker used in the copy text for waiting transfers.
SOURCE_MARKERS = {
    "01": "🟫", "02": "🟧", "03": "🟨", "04": "🟩", "05": "⬛",
    "06": "🟪", "07": "🟥", "08": "⬜", "09": "🟦", "11": "🔳",
}
DEFAULT_SOURCE_MARKER = "⬜"

ALLOWED_TRANSITIONS = {
    models.TRANSFERRING: {models.WAITING, models.FOUND},
    models.WAITING: {models.RECEIVED, models.FOUND},
    models.RECEIVED: set(),
    models.FOUND: set(),
}

_DISPLAY_FIELDS = (
    "title", "name", "brand", "size", "image_url", "sku", "variant_title",
    "custom_name", "url_handle", "product_type", "weight", "weight_unit",
)


def get_transfer(db: Session, transfer_id: int) -> models.TransferItem:
    item = db.query(models.TransferItem).filter(models.TransferItem.id == transfer_id).first()
    if not item:
        raise NotFound(f"Transfer item {transfer_id} not found")
    return item


@contextmanager
def locked_transfer(db: Session, transfer_id: int) -> Iterator[models.TransferItem]:
    """Yields the record reloaded under its order's lock."""
    order_id = get_transfer(db, transfer_id).order_id
    with order_locks([order_id] if order_id is not None else []):
        item = (
            db.query(models.TransferItem)
            .filter(models.TransferItem.id == transfer_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not item:
            raise NotFound(f"Transfer item {transfer_id} not found")
        yield item


def get_transfers(db: Session, status: Optional[str] = None) -> List[models.TransferItem]:
    q = db.query(models.TransferItem)
    if status:
        q = q.filter(models.TransferItem.status == status)
    return q.order_by(models.TransferItem.created_at.desc(), models.TransferItem.id.desc()).all()


def get_transfers_for_order(db: Session, order_id: int) -> List[models.TransferItem]:
    return (
        db.query(models.TransferItem)
        .filter(models.TransferItem.order_id == order_id)
        .order_by(models.TransferItem.id.asc())
        .all()
    )


def create_from_line_item(db: Session, row: models.LineItem, quantity: Optional[int] = None) -> models.TransferItem:
    """Opens a transferring record for `row`, copying its display fields. Does not commit."""
    qty = row.quantity if quantity is None else int(quantity)
    if qty < 1 or qty > row.quantity:
        raise InvalidTransition(f"Transfer quantity {qty} is out of range for line item {row.id} (qty {row.quantity})")

    order_number = row.order.order_number if row.order is not None else str(row.order_id)
    transfer = models.TransferItem(
        line_item_id=row.id,
        order_id=row.order_id,
        order_number=order_number,
        quantity=qty,
        status=models.TRANSFERRING,
        created_at=models.utcnow(),
        **{f: getattr(row, f) for f in _DISPLAY_FIELDS},
    )
    db.add(transfer)
    db.flush()
    logger.info("Transfer %s opened for line item %s (qty %s)", transfer.id, row.id, qty)
    return transfer


def delete_transferring_for_line_item(db: Session, line_item_id: int) -> int:
    """Only the transferring stage is dropped; later stages are warehouse commitments."""
    return (
        db.query(models.TransferItem)
        .filter(
            models.TransferItem.line_item_id == line_item_id,
            models.TransferItem.status == models.TRANSFERRING,
        )
        .delete(synchronize_session=False)
    )


def update_transfer(db: Session, transfer_id: int, data: schemas.TransferUpdate) -> models.TransferItem:
    fields = data.model_dump(exclude_unset=True)
    status = fields.pop("status", None)

    with locked_transfer(db, transfer_id) as item:
        if status and status != item.status:
            if status not in ALLOWED_TRANSITIONS:
                raise InvalidTransition(f"Unknown transfer status '{status}'")
            if status not in ALLOWED_TRANSITIONS[item.status]:
                raise InvalidTransition(f"Transfer {item.id} cannot go from {item.status} to {status}")
            logger.info("Transfer %s: %s -> %s", item.id, item.status, status)
            item.status = status

        for key, value in fields.items():
            setattr(item, key, value)
        item.updated_at = models.utcnow()
        db.commit()
    db.refresh(item)
    return item


def split_transfer(db: Session, transfer_id: int, data: schemas.TransferSplit) -> models.TransferItem:
    """
    Moves `transfer_quantity` units to waiting with the given source/ETA and
    leaves the rest as a new transferring record for the same line item.
    Returns the new remainder record.
    """
    with locked_transfer(db, transfer_id) as item:
        if item.status != models.TRANSFERRING:
            raise InvalidTransition(f"Only transferring records can be split (transfer {item.id} is {item.status})")
        qty = data.transfer_quantity
        if qty < 1 or qty >= item.quantity:
            raise InvalidTransition(f"Invalid transfer quantity {qty} for transfer {item.id} (qty {item.quantity})")

        remainder = models.TransferItem(
            line_item_id=item.line_item_id,
            order_id=item.order_id,
            order_number=item.order_number,
            quantity=item.quantity - qty,
            status=models.TRANSFERRING,
            created_at=models.utcnow(),
            **{f: getattr(item, f) for f in _DISPLAY_FIELDS},
        )
        item.quantity = qty
        item.status = models.WAITING
        item.transfer_from = data.transfer_from
        item.estimate_month = data.estimate_month
        item.estimate_day = data.estimate_day
        item.updated_at = models.utcnow()
        db.add(remainder)
        db.commit()
    db.refresh(remainder)
    logger.info("Transfer %s split: %s waiting, %s left transferring as %s",
                item.id, qty, remainder.quantity, remainder.id)
    return remainder


def bulk_delete(db: Session, ids: List[int]) -> int:
    order_ids = [
        order_id for (order_id,) in
        db.query(models.TransferItem.order_id)
        .filter(models.TransferItem.id.in_(ids), models.TransferItem.order_id.isnot(None))
        .distinct()
    ]
    with order_locks(order_ids):
        deleted = (
            db.query(models.TransferItem)
            .filter(models.TransferItem.id.in_(ids))
            .delete(synchronize_session=False)
        )
        db.commit()
    logger.info("Bulk deleted %d transfer items", deleted)
    return deleted


def copy_text(item: models.TransferItem) -> str:
    """Text staff paste into the transfer sheet: `qty-sku` or `{from}-qty-sku-order`."""
    sku = item.sku or ""
    if item.status == models.TRANSFERRING:
        return f"{item.quantity}-{sku}"
    if item.status == models.WAITING:
        source = item.transfer_from or ""
        marker = SOURCE_MARKERS.get(source, DEFAULT_SOURCE_MARKER)
        return f"{marker}{source}{marker}-{item.quantity}-{sku}-{item.order_number}"
    return ""
