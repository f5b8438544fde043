# schemas.py
from __future__ import annotations

from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, ConfigDict, ValidationError, model_validator, field_validator

from exceptions import InvalidNotification

# =========================
# Base model configurations
# =========================

class ORMBase(BaseModel):
    """Base for models mapped to SQLAlchemy objects."""
    model_config = ConfigDict(from_attributes=True)

class APIBase(BaseModel):
    """Base for models mapped to external API payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

# ======================================================
# Shopify webhook ingest models (REST JSON, snake_case)
# ======================================================

class LineItemProperty(APIBase):
    name: Optional[str] = None
    value: Optional[Any] = None

class RemoteLineItem(APIBase):
    id: int
    quantity: int = 0
    sku: Optional[str] = None
    title: Optional[str] = None
    name: Optional[str] = None
    vendor: Optional[str] = None
    variant_id: Optional[int] = None
    product_id: Optional[int] = None
    grams: Optional[float] = None
    variant_title: Optional[str] = None
    product_type: Optional[str] = None
    properties: List[LineItemProperty] = Field(default_factory=list)

    def property_value(self, name: str) -> str:
        for prop in self.properties:
            if prop.name == name and prop.value is not None:
                return str(prop.value)
        return ""

class RefundLineItem(APIBase):
    line_item_id: int
    quantity: int = 0

class Refund(APIBase):
    id: Optional[int] = None
    order_id: Optional[int] = None
    created_at: Optional[datetime] = None
    refund_line_items: List[RefundLineItem] = Field(default_factory=list)

class ShippingLine(APIBase):
    code: Optional[str] = None
    title: Optional[str] = None

class ShippingAddress(APIBase):
    name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None

class OrderSnapshot(APIBase):
    id: int
    order_number: Optional[str] = None
    name: Optional[str] = None
    fulfillment_status: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    subtotal_price: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    shipping_lines: List[ShippingLine] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = None
    line_items: List[RemoteLineItem] = Field(default_factory=list)
    refunds: List[Refund] = Field(default_factory=list)

    @field_validator("order_number", mode="before")
    @classmethod
    def _order_number_as_str(cls, v):
        return str(v) if v is not None else None

    @property
    def display_name(self) -> str:
        return self.name or (f"#{self.order_number}" if self.order_number else str(self.id))

    @property
    def normalized_fulfillment_status(self) -> str:
        return (self.fulfillment_status or "unfulfilled").lower()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def is_fulfilled(self) -> bool:
        return self.normalized_fulfillment_status == "fulfilled"

    def refunded_quantities(self) -> Dict[int, int]:
        """Sum of refunded quantity per remote line-item id across every refund."""
        totals: Dict[int, int] = {}
        for refund in self.refunds:
            for rli in refund.refund_line_items:
                totals[rli.line_item_id] = totals.get(rli.line_item_id, 0) + int(rli.quantity or 0)
        return totals

    def active_line_items(self) -> List["ActiveLineItem"]:
        """
        Remote line items with refunds folded out. Items whose active
        quantity drops to zero or below are left out entirely.
        """
        refunded = self.refunded_quantities()
        active: List[ActiveLineItem] = []
        for item in self.line_items:
            qty = int(item.quantity or 0) - refunded.get(item.id, 0)
            if qty > 0:
                active.append(ActiveLineItem(item=item, active_quantity=qty))
        return active

class ActiveLineItem(BaseModel):
    item: RemoteLineItem
    active_quantity: int

class RefundNotification(APIBase):
    id: Optional[int] = None
    order_id: int
    refund_line_items: List[RefundLineItem] = Field(default_factory=list)

class OrderEditRef(APIBase):
    id: Optional[int] = None
    order_id: Optional[int] = None
    committed_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_envelope(cls, data):
        # orders/edited webhooks wrap the edit in {"order_edit": {...}}
        if isinstance(data, dict) and isinstance(data.get("order_edit"), dict):
            return data["order_edit"]
        return data


def parse_notification(model: type[BaseModel], payload: Any) -> Any:
    """Validates a raw webhook payload, turning validation errors into InvalidNotification."""
    if not isinstance(payload, dict):
        raise InvalidNotification(f"{model.__name__} payload must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidNotification(f"Invalid {model.__name__}: {e.errors()}") from e

# ======================================================
# App-specific schemas (for API requests / responses)
# ======================================================

class LineItem(ORMBase):
    id: int
    order_id: int
    shopify_line_item_id: int
    quantity: int
    title: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None
    variant_title: Optional[str] = None
    custom_name: Optional[str] = None
    url_handle: Optional[str] = None
    product_type: Optional[str] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    has_weight_warning: bool = False
    picker_status: str
    packer_status: str
    created_at: Optional[datetime] = None

class PickerLineItem(LineItem):
    order_name: Optional[str] = None
    shipping_code: Optional[str] = None

class TransferItem(ORMBase):
    id: int
    line_item_id: Optional[int] = None
    order_id: int
    order_number: str
    quantity: int
    title: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None
    variant_title: Optional[str] = None
    custom_name: Optional[str] = None
    status: str
    transfer_from: Optional[str] = None
    estimate_month: Optional[int] = None
    estimate_day: Optional[int] = None
    created_at: Optional[datetime] = None

class TransferInfo(BaseModel):
    quantity: int
    transfer_froms: List[str] = Field(default_factory=list)
    estimate_month: Optional[int] = None
    estimate_day: Optional[int] = None

class PackerOrder(ORMBase):
    id: int
    order_number: str
    name: str
    fulfillment_status: str
    total_quantity: int
    status: str
    box_type: Optional[str] = None
    weight: Optional[float] = None
    note: Optional[str] = None
    is_edited: bool = False
    shipping_code: Optional[str] = None
    shipping_name: Optional[str] = None
    created_at: Optional[datetime] = None
    line_items: List[LineItem] = Field(default_factory=list)
    order_status: Optional[str] = None
    has_weight_warning: bool = False
    has_transferring: bool = False
    has_waiting: bool = False
    transfer_info: Optional[TransferInfo] = None

# --- request bodies ---

class PickerStatusUpdate(BaseModel):
    status: str

class PickerSplit(BaseModel):
    picked_quantity: int = Field(..., ge=1)

class PackerStatusUpdate(BaseModel):
    status: str

class OrderStatusUpdate(BaseModel):
    status: str

class OrderNoteUpdate(BaseModel):
    note: str = Field(..., max_length=50)

class OrderComplete(BaseModel):
    box_type: str = Field(..., min_length=1)
    weight: Optional[float] = None

class WeightUpdate(BaseModel):
    weight: float = Field(..., gt=0)

class TransferUpdate(BaseModel):
    status: Optional[str] = None
    transfer_from: Optional[str] = None
    estimate_month: Optional[int] = Field(None, ge=1, le=12)
    estimate_day: Optional[int] = Field(None, ge=1, le=31)

class TransferSplit(BaseModel):
    transfer_quantity: int = Field(..., ge=1)
    transfer_from: Optional[str] = None
    estimate_month: Optional[int] = Field(None, ge=1, le=12)
    estimate_day: Optional[int] = Field(None, ge=1, le=31)

class BulkDelete(BaseModel):
    ids: List[int] = Field(..., min_length=1)


ActiveLineItem.model_rebuild()
OrderSnapshot.model_rebuild()
