# models.py

from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, DateTime, ForeignKey, BIGINT,
                        NUMERIC, BOOLEAN, Index, UniqueConstraint, CheckConstraint)
from sqlalchemy.orm import relationship
from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Picker axis
PICKING = "picking"
MISSING = "missing"
PICKED = "picked"

# Packer axis
PACKING = "packing"
READY = "ready"

# Order workflow status
ORDER_PACKING = "packing"
ORDER_WAITING = "waiting"
ORDER_HOLDING = "holding"
ORDER_READY = "ready"

# Transfer lifecycle
TRANSFERRING = "transferring"
WAITING = "waiting"
RECEIVED = "received"
FOUND = "found"

CANONICAL_WEIGHT_UNIT = "g"


class Order(Base):
    __tablename__ = "orders"
    # Shopify order id, the local copy never gets its own key.
    id = Column(BIGINT, primary_key=True, autoincrement=False)
    order_number = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    fulfillment_status = Column(String(50), default="unfulfilled", nullable=False)
    cancelled_at = Column(DateTime(timezone=True))
    total_quantity = Column(Integer, default=0, nullable=False)
    subtotal_price = Column(NUMERIC(12, 2))
    created_at = Column(DateTime(timezone=True))

    shipping_code = Column(String(255))
    shipping_title = Column(String(255))
    shipping_name = Column(String(255))
    shipping_address1 = Column(String(255))
    shipping_address2 = Column(String(255))
    shipping_city = Column(String(255))
    shipping_province = Column(String(255))
    shipping_zip = Column(String(64))
    shipping_country = Column(String(255))

    # --- warehouse-only fields, never mirrored from Shopify ---
    status = Column(String(50), default=ORDER_PACKING, nullable=False)
    box_type = Column(String(50))
    weight = Column(NUMERIC(10, 2))
    note = Column(String(50))
    is_edited = Column(BOOLEAN, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    line_items = relationship(
        "LineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LineItem.id",
    )


class LineItem(Base):
    __tablename__ = "line_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(BIGINT, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    # Base remote id, shared by every split fragment of one Shopify line item.
    shopify_line_item_id = Column(BIGINT, nullable=False)
    quantity = Column(Integer, nullable=False)
    remote_quantity = Column(Integer)

    title = Column(String(255))
    name = Column(String(512))
    brand = Column(String(255))
    size = Column(String(100))
    image_url = Column(String(2048))
    sku = Column(String(255), index=True)
    variant_title = Column(String(255))
    custom_name = Column(String(255))
    url_handle = Column(String(255))
    product_type = Column(String(255))
    variant_id = Column(BIGINT)
    product_id = Column(BIGINT)

    weight = Column(NUMERIC(10, 2), default=0, nullable=False)
    weight_unit = Column(String(10), default=CANONICAL_WEIGHT_UNIT, nullable=False)
    has_weight_warning = Column(BOOLEAN, default=False, nullable=False)

    picker_status = Column(String(20), default=PICKING, nullable=False)
    packer_status = Column(String(20), default=PACKING, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="line_items")

    __table_args__ = (
        Index("ix_line_items_order_base", "order_id", "shopify_line_item_id"),
        CheckConstraint("quantity > 0", name="ck_line_items_quantity_positive"),
    )


class TransferItem(Base):
    __tablename__ = "transfer_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # Weak references: the line item (and even the order) may be gone.
    line_item_id = Column(Integer, index=True, nullable=True)
    order_id = Column(BIGINT, index=True, nullable=False)
    order_number = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)

    title = Column(String(255))
    name = Column(String(512))
    brand = Column(String(255))
    size = Column(String(100))
    image_url = Column(String(2048))
    sku = Column(String(255))
    variant_title = Column(String(255))
    custom_name = Column(String(255))
    url_handle = Column(String(255))
    product_type = Column(String(255))
    weight = Column(NUMERIC(10, 2), default=0)
    weight_unit = Column(String(10), default=CANONICAL_WEIGHT_UNIT)

    status = Column(String(20), default=TRANSFERRING, nullable=False)
    transfer_from = Column(String(50))
    estimate_month = Column(Integer)
    estimate_day = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_transfer_items_quantity_positive"),
    )


class RefundLedger(Base):
    __tablename__ = "refund_ledger"
    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_key = Column(String(128), nullable=False)
    order_id = Column(BIGINT, index=True, nullable=False)
    shopify_line_item_id = Column(BIGINT, nullable=False)
    quantity = Column(Integer, nullable=False)
    applied_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("refund_key", "shopify_line_item_id", name="uq_refund_ledger_key_line"),
    )


class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"
    id = Column(String(255), primary_key=True)
    topic = Column(String(100))
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
