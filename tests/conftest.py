import pytest

from database import create_db_engine, create_session_factory, init_db
from services.enrichment import EnrichmentService
from services.reconciliation import OrderReconciler
from shopify_service import ShopifyAPIError


class FakeShopify:
    """In-memory stand-in for ShopifyService; records every write."""

    def __init__(self):
        self.orders = {}
        self.variants = {}
        self.products = {}
        self.metafields = {}
        self.skus = {}
        self.webhooks = []
        self.weight_updates = []
        self.fail_products = False
        self.fail_orders = False
        self.fail_metafields = False
        self.calls = []

    def get_order(self, order_id):
        self.calls.append(("order", order_id))
        if self.fail_orders:
            raise ShopifyAPIError("GET /orders failed", status_code=503)
        if order_id not in self.orders:
            raise ShopifyAPIError("not found", status_code=404)
        return self.orders[order_id]

    def get_variant(self, variant_id):
        self.calls.append(("variant", variant_id))
        if variant_id not in self.variants:
            raise ShopifyAPIError("not found", status_code=404)
        return self.variants[variant_id]

    def get_product(self, product_id):
        self.calls.append(("product", product_id))
        if self.fail_products:
            raise ShopifyAPIError("GET /products failed", status_code=500)
        if product_id not in self.products:
            raise ShopifyAPIError("not found", status_code=404)
        return self.products[product_id]

    def get_metafields(self, owner, owner_id, namespace=None):
        if self.fail_metafields:
            raise ShopifyAPIError("GET metafields failed: 403 Forbidden", status_code=403)
        return self.metafields.get((owner, owner_id), [])

    def find_variant_id_by_sku(self, sku):
        return self.skus.get(sku)

    def update_variant_weight(self, variant_id, weight_grams):
        self.weight_updates.append((variant_id, weight_grams))
        return {"id": variant_id, "weight": weight_grams, "weight_unit": "g"}

    def update_variant_weight_by_sku(self, sku, weight_grams):
        variant_id = self.find_variant_id_by_sku(sku)
        if not variant_id:
            raise ShopifyAPIError(f'Variant with SKU "{sku}" not found in Shopify', status_code=404)
        return self.update_variant_weight(variant_id, weight_grams)

    def list_webhooks(self):
        return list(self.webhooks)

    def create_webhook(self, topic, address):
        hook = {"id": len(self.webhooks) + 1000, "topic": topic, "address": address}
        self.webhooks.append(hook)
        return hook

    def delete_webhook(self, webhook_id):
        self.webhooks = [w for w in self.webhooks if w["id"] != webhook_id]


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def shopify():
    fake = FakeShopify()
    fake.variants[7001] = {"id": 7001, "weight": 250, "weight_unit": "g", "image_id": 11}
    fake.products[8001] = {
        "id": 8001,
        "handle": "silk-wig",
        "product_type": "WIG",
        "images": [{"id": 10, "src": "https://cdn/first.jpg"}, {"id": 11, "src": "https://cdn/variant.jpg"}],
    }
    fake.metafields[("variants", 7001)] = [{"namespace": "custom", "key": "name", "value": "Silk Wig Long"}]
    return fake


@pytest.fixture
def reconciler(session_factory, shopify):
    return OrderReconciler(session_factory, EnrichmentService(shopify), shopify=shopify)
