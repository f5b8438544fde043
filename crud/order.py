# crud/order.py

import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
import schemas
from crud import transfer as crud_transfer
from services.enrichment import LineItemDetail

logger = logging.getLogger("fulfiller.crud.order")


@dataclass
class RemovalStats:
    removed: int = 0
    deleted_rows: int = 0
    shrunk_rows: int = 0
    transfers_deleted: int = 0

    def __iadd__(self, other: "RemovalStats") -> "RemovalStats":
        self.removed += other.removed
        self.deleted_rows += other.deleted_rows
        self.shrunk_rows += other.shrunk_rows
        self.transfers_deleted += other.transfers_deleted
        return self


@dataclass
class PurgeStats:
    orders: int = 0
    line_items: int = 0
    transfers: int = 0
    refund_lines: int = 0


# ---------------- orders ----------------

def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def apply_snapshot_fields(order: models.Order, snapshot: schemas.OrderSnapshot) -> None:
    """
    Copies the Shopify-mirrored columns onto the order. Warehouse-only
    columns (status, box_type, weight, note, is_edited) are left alone.
    """
    shipping_line = snapshot.shipping_lines[0] if snapshot.shipping_lines else None
    address = snapshot.shipping_address or schemas.ShippingAddress()

    order.order_number = snapshot.order_number or str(snapshot.id)
    order.name = snapshot.display_name
    order.fulfillment_status = snapshot.normalized_fulfillment_status
    order.cancelled_at = snapshot.cancelled_at
    if snapshot.subtotal_price is not None:
        order.subtotal_price = snapshot.subtotal_price
    if snapshot.created_at is not None:
        order.created_at = snapshot.created_at
    order.shipping_code = (shipping_line.code if shipping_line else None) or ""
    order.shipping_title = (shipping_line.title if shipping_line else None) or ""
    order.shipping_name = address.name or ""
    order.shipping_address1 = address.address1 or ""
    order.shipping_address2 = address.address2 or ""
    order.shipping_city = address.city or ""
    order.shipping_province = address.province or ""
    order.shipping_zip = address.zip or ""
    order.shipping_country = address.country or ""


def create_order(db: Session, snapshot: schemas.OrderSnapshot) -> models.Order:
    order = models.Order(id=snapshot.id, total_quantity=0, status=models.ORDER_PACKING, is_edited=False)
    apply_snapshot_fields(order, snapshot)
    db.add(order)
    db.flush()
    return order


def recompute_total_quantity(db: Session, order: models.Order) -> int:
    db.flush()
    total = (
        db.query(func.coalesce(func.sum(models.LineItem.quantity), 0))
        .filter(models.LineItem.order_id == order.id)
        .scalar()
    )
    order.total_quantity = int(total or 0)
    return order.total_quantity


def get_orders_created_before(db: Session, cutoff: datetime) -> List[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.created_at.isnot(None), models.Order.created_at < cutoff)
        .order_by(models.Order.created_at.asc())
        .all()
    )


def purge_order(db: Session, order_id: int) -> PurgeStats:
    """
    Hard delete in dependency order: transfer records (every stage),
    refund ledger, line items, then the order row.
    """
    stats = PurgeStats()
    stats.transfers = (
        db.query(models.TransferItem)
        .filter(models.TransferItem.order_id == order_id)
        .delete(synchronize_session=False)
    )
    stats.refund_lines = (
        db.query(models.RefundLedger)
        .filter(models.RefundLedger.order_id == order_id)
        .delete(synchronize_session=False)
    )
    stats.line_items = (
        db.query(models.LineItem)
        .filter(models.LineItem.order_id == order_id)
        .delete(synchronize_session=False)
    )
    stats.orders = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .delete(synchronize_session=False)
    )
    db.expire_all()
    return stats


# ---------------- line items ----------------

def get_line_items(db: Session, order_id: int, base_id: Optional[int] = None,
                   newest_first: bool = False, for_update: bool = False) -> List[models.LineItem]:
    """`for_update` row-locks the result on server databases; reconciliation passes read with it."""
    q = db.query(models.LineItem).filter(models.LineItem.order_id == order_id)
    if for_update:
        q = q.populate_existing().with_for_update()
    if base_id is not None:
        q = q.filter(models.LineItem.shopify_line_item_id == base_id)
    if newest_first:
        q = q.order_by(models.LineItem.created_at.desc(), models.LineItem.id.desc())
    else:
        q = q.order_by(models.LineItem.created_at.asc(), models.LineItem.id.asc())
    return q.all()


def group_by_base(rows: List[models.LineItem]) -> "OrderedDict[int, List[models.LineItem]]":
    """Groups rows by base remote id, keeping the incoming row order inside each group."""
    groups: "OrderedDict[int, List[models.LineItem]]" = OrderedDict()
    for row in rows:
        groups.setdefault(row.shopify_line_item_id, []).append(row)
    return groups


def insert_line_item(db: Session, order: models.Order, item: schemas.RemoteLineItem,
                     quantity: int, detail: LineItemDetail) -> models.LineItem:
    """New rows always start at picking/packing, split fragments included."""
    row = models.LineItem(
        order_id=order.id,
        shopify_line_item_id=item.id,
        quantity=int(quantity),
        remote_quantity=int(item.quantity or 0),
        title=item.title,
        name=item.name,
        brand=item.vendor,
        size=item.property_value("Size"),
        image_url=detail.image_url,
        sku=item.sku,
        variant_title=item.variant_title or "",
        custom_name=detail.custom_name,
        url_handle=detail.url_handle,
        product_type=detail.product_type,
        variant_id=item.variant_id,
        product_id=item.product_id,
        weight=detail.weight,
        weight_unit=detail.weight_unit,
        has_weight_warning=detail.has_weight_warning,
        picker_status=models.PICKING,
        packer_status=models.PACKING,
        created_at=models.utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def delete_line_item(db: Session, row: models.LineItem) -> int:
    """
    Deletes one row. Only transfer records still in the transferring stage
    go with it; waiting/found/received records are warehouse commitments
    and stay. Returns the number of transfer records deleted.
    """
    transfers = crud_transfer.delete_transferring_for_line_item(db, row.id)
    db.delete(row)
    return transfers


def remove_quantity(db: Session, rows_newest_first: List[models.LineItem], amount: int) -> RemovalStats:
    """
    Takes `amount` units out of a group, newest row first: a row that fits
    entirely in what is left to remove is deleted, otherwise it is shrunk
    and the walk stops.
    """
    stats = RemovalStats()
    remaining = int(amount)
    for row in rows_newest_first:
        if remaining <= 0:
            break
        if row.quantity <= remaining:
            logger.debug("Deleting line_item %s (qty: %s)", row.id, row.quantity)
            remaining -= row.quantity
            stats.removed += row.quantity
            stats.transfers_deleted += delete_line_item(db, row)
            stats.deleted_rows += 1
        else:
            logger.debug("Updating line_item %s: %s -> %s", row.id, row.quantity, row.quantity - remaining)
            row.quantity -= remaining
            row.updated_at = models.utcnow()
            stats.removed += remaining
            stats.shrunk_rows += 1
            remaining = 0
    db.flush()
    return stats


# ---------------- refund ledger ----------------

def refund_key(order_id: int, refund) -> str:
    """
    Shopify refund id when present, otherwise a digest of the refunded
    (line item, quantity) pairs so an identical redelivery maps to the same key.
    """
    if getattr(refund, "id", None):
        return str(refund.id)
    pairs = sorted((int(r.line_item_id), int(r.quantity or 0)) for r in refund.refund_line_items)
    raw = f"{order_id}:" + ",".join(f"{lid}x{qty}" for lid, qty in pairs)
    return "sha256:" + hashlib.sha256(raw.encode()).hexdigest()


def refund_quantities(refund) -> Dict[int, int]:
    totals: Dict[int, int] = {}
    for rli in refund.refund_line_items:
        totals[rli.line_item_id] = totals.get(rli.line_item_id, 0) + int(rli.quantity or 0)
    return totals


def refund_already_applied(db: Session, key: str) -> bool:
    return db.query(models.RefundLedger.id).filter(models.RefundLedger.refund_key == key).first() is not None


def record_refund_line(db: Session, key: str, order_id: int, line_item_id: int, quantity: int) -> bool:
    exists = (
        db.query(models.RefundLedger.id)
        .filter(models.RefundLedger.refund_key == key, models.RefundLedger.shopify_line_item_id == line_item_id)
        .first()
    )
    if exists:
        return False
    db.add(models.RefundLedger(refund_key=key, order_id=order_id, shopify_line_item_id=line_item_id,
                               quantity=int(quantity)))
    db.flush()
    return True


def record_snapshot_refunds(db: Session, snapshot: schemas.OrderSnapshot) -> int:
    recorded = 0
    for refund in snapshot.refunds:
        key = refund_key(snapshot.id, refund)
        for line_item_id, qty in refund_quantities(refund).items():
            if qty > 0 and record_refund_line(db, key, snapshot.id, line_item_id, qty):
                recorded += 1
    return recorded


def refunded_total(db: Session, order_id: int, line_item_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(models.RefundLedger.quantity), 0))
        .filter(models.RefundLedger.order_id == order_id,
                models.RefundLedger.shopify_line_item_id == line_item_id)
        .scalar()
    )
    return int(total or 0)
