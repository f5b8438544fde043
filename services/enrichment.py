# services/enrichment.py
"""
Product/variant enrichment for incoming line items.

Every fetch returns an EnrichmentResult instead of raising, so callers
branch on ``result.ok`` and fall back to defaults explicitly. Nothing in
here is cached across reconciliation passes; a per-pass ``memo`` dict
can be passed in to avoid asking Shopify twice for the same product or
variant inside one pass.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from exceptions import EnrichmentFailure
from models import CANONICAL_WEIGHT_UNIT
from schemas import RemoteLineItem
from shopify_service import ShopifyService, ShopifyAPIError

logger = logging.getLogger("fulfiller.enrichment")

CUSTOM_NAMESPACE = "custom"
CUSTOM_NAME_KEY = "name"


@dataclass
class EnrichmentResult:
    value: Any = None
    error: Optional[EnrichmentFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "EnrichmentResult":
        return cls(value=value)

    @classmethod
    def failure(cls, message: str, status_code: Optional[int] = None) -> "EnrichmentResult":
        return cls(error=EnrichmentFailure(message, status_code=status_code))


@dataclass
class VariantDetail:
    weight: Decimal
    weight_unit: str
    image_id: Optional[int] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProductDetail:
    image_url: str
    handle: str
    product_type: str
    images: Dict[int, str] = field(default_factory=dict)
    custom_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LineItemDetail:
    image_url: str = ""
    url_handle: str = ""
    product_type: str = ""
    weight: Decimal = Decimal("0")
    weight_unit: str = CANONICAL_WEIGHT_UNIT
    custom_name: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    degraded: bool = False

    @classmethod
    def from_payload(cls, item: RemoteLineItem, degraded: bool = False) -> "LineItemDetail":
        """Defaults taken from the webhook payload itself; `grams` is always in grams."""
        return cls(product_type=item.product_type or "", weight=_to_decimal(item.grams), degraded=degraded)

    @property
    def has_weight_warning(self) -> bool:
        return self.weight == 0 or self.weight_unit != CANONICAL_WEIGHT_UNIT


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _custom_fields(metafields) -> Dict[str, Any]:
    return {
        m.get("key"): m.get("value")
        for m in metafields or []
        if m.get("namespace") == CUSTOM_NAMESPACE and m.get("key")
    }


class EnrichmentService:
    def __init__(self, shopify: Optional[ShopifyService]):
        self.shopify = shopify

    def _call(self, what: str, fn, *args) -> EnrichmentResult:
        if self.shopify is None:
            return EnrichmentResult.failure(f"{what}: Shopify client not configured")
        try:
            return EnrichmentResult.success(fn(*args))
        except ShopifyAPIError as e:
            return EnrichmentResult.failure(f"{what}: {e}", status_code=e.status_code)
        except (requests.exceptions.RequestException, ValueError) as e:
            return EnrichmentResult.failure(f"{what}: {e}")

    def _custom_fields_for(self, owner: str, owner_id: int) -> Dict[str, Any]:
        """Metafields are optional extras; a failed lookup leaves them empty."""
        result = self._call(f"{owner} {owner_id} metafields", self.shopify.get_metafields,
                            owner, owner_id, CUSTOM_NAMESPACE)
        if not result.ok:
            logger.warning("Custom fields unavailable: %s", result.error)
            return {}
        return _custom_fields(result.value)

    def fetch_variant_detail(self, variant_id: int) -> EnrichmentResult:
        def _fetch(vid):
            variant = self.shopify.get_variant(vid)
            if not variant:
                raise ShopifyAPIError(f"variant {vid} not found", status_code=404)
            return VariantDetail(
                weight=_to_decimal(variant.get("weight")),
                weight_unit=variant.get("weight_unit") or CANONICAL_WEIGHT_UNIT,
                image_id=variant.get("image_id"),
            )
        result = self._call(f"variant {variant_id}", _fetch, variant_id)
        if result.ok:
            result.value.custom_fields = self._custom_fields_for("variants", variant_id)
        return result

    def fetch_product_detail(self, product_id: int) -> EnrichmentResult:
        def _fetch(pid):
            product = self.shopify.get_product(pid)
            if not product:
                raise ShopifyAPIError(f"product {pid} not found", status_code=404)
            images = {img["id"]: img.get("src") or "" for img in product.get("images") or [] if img.get("id")}
            first = (product.get("images") or [{}])[0].get("src") or (product.get("image") or {}).get("src") or ""
            return ProductDetail(
                image_url=first,
                handle=product.get("handle") or "",
                product_type=product.get("product_type") or "",
                images=images,
            )
        result = self._call(f"product {product_id}", _fetch, product_id)
        if result.ok:
            result.value.custom_fields = self._custom_fields_for("products", product_id)
        return result

    def _memoized(self, memo: Optional[dict], key: tuple, fetch) -> EnrichmentResult:
        if memo is None:
            return fetch()
        if key not in memo:
            memo[key] = fetch()
        return memo[key]

    def enrich_line_item(self, item: RemoteLineItem, memo: Optional[dict] = None) -> LineItemDetail:
        """
        Resolves display and weight data for one remote line item. Failed
        lookups leave the payload defaults in place and mark the detail
        degraded; they never raise.
        """
        detail = LineItemDetail.from_payload(item)
        variant: Optional[VariantDetail] = None

        if item.variant_id:
            result = self._memoized(memo, ("variant", item.variant_id),
                                    lambda: self.fetch_variant_detail(item.variant_id))
            if result.ok:
                variant = result.value
                detail.weight = variant.weight
                detail.weight_unit = variant.weight_unit
                detail.custom_fields.update(variant.custom_fields)
            else:
                detail.degraded = True
                logger.warning("Enrichment failed for line item %s: %s", item.id, result.error)

        if item.product_id:
            result = self._memoized(memo, ("product", item.product_id),
                                    lambda: self.fetch_product_detail(item.product_id))
            if result.ok:
                product: ProductDetail = result.value
                detail.image_url = product.image_url
                if variant and variant.image_id and variant.image_id in product.images:
                    detail.image_url = product.images[variant.image_id]
                detail.url_handle = product.handle
                detail.product_type = product.product_type or detail.product_type
                # Variant-level fields win over product-level ones.
                detail.custom_fields = {**product.custom_fields, **detail.custom_fields}
            else:
                detail.degraded = True
                logger.warning("Enrichment failed for line item %s: %s", item.id, result.error)

        detail.custom_name = detail.custom_fields.get(CUSTOM_NAME_KEY)
        return detail
