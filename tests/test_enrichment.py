from decimal import Decimal

import schemas
from crud import order as crud_order
from factories import make_line_item, make_order
from services.enrichment import EnrichmentService


def _item(**kwargs):
    return schemas.RemoteLineItem.model_validate(make_line_item(100, 1, **kwargs))


def test_enrich_line_item_combines_variant_and_product(shopify):
    detail = EnrichmentService(shopify).enrich_line_item(_item(variant_id=7001, product_id=8001))

    assert detail.degraded is False
    assert detail.weight == Decimal("250")
    assert detail.weight_unit == "g"
    assert detail.image_url == "https://cdn/variant.jpg"
    assert detail.url_handle == "silk-wig"
    assert detail.product_type == "WIG"
    assert detail.custom_name == "Silk Wig Long"
    assert detail.has_weight_warning is False


def test_failed_product_fetch_falls_back_to_payload_defaults(shopify):
    shopify.fail_products = True

    detail = EnrichmentService(shopify).enrich_line_item(_item(variant_id=7001, product_id=8001, product_type="HAIR"))

    assert detail.degraded is True
    assert detail.image_url == ""
    assert detail.product_type == "HAIR"
    assert detail.weight == Decimal("250")


def test_fetch_results_carry_errors_instead_of_raising(shopify):
    service = EnrichmentService(shopify)

    missing = service.fetch_variant_detail(424242)

    assert missing.ok is False
    assert missing.error.status_code == 404
    assert service.fetch_product_detail(8001).ok is True


def test_no_client_means_degraded_detail_with_weight_warning():
    detail = EnrichmentService(None).enrich_line_item(_item(variant_id=7001, product_id=8001))

    assert detail.degraded is True
    assert detail.weight == 0
    assert detail.has_weight_warning is True


def test_non_gram_unit_raises_weight_warning(shopify):
    shopify.variants[7002] = {"id": 7002, "weight": 1.2, "weight_unit": "kg"}

    detail = EnrichmentService(shopify).enrich_line_item(_item(variant_id=7002))

    assert detail.has_weight_warning is True


def test_memo_avoids_duplicate_fetches_within_a_pass(shopify):
    service = EnrichmentService(shopify)
    memo = {}

    service.enrich_line_item(_item(variant_id=7001, product_id=8001), memo=memo)
    service.enrich_line_item(_item(variant_id=7001, product_id=8001), memo=memo)

    assert shopify.calls.count(("variant", 7001)) == 1
    assert shopify.calls.count(("product", 8001)) == 1


def test_every_pass_refetches(reconciler, shopify):
    snap = schemas.OrderSnapshot.model_validate(make_order(
        line_items=[make_line_item(100, 1, variant_id=7001, product_id=8001)],
    ))

    reconciler.on_order_updated(snap)
    reconciler.on_order_updated(snap)

    assert shopify.calls.count(("variant", 7001)) == 2


def test_enrichment_failure_does_not_abort_the_pass(reconciler, session_factory, shopify):
    shopify.fail_products = True

    result = reconciler.on_order_created(schemas.OrderSnapshot.model_validate(make_order(
        line_items=[make_line_item(100, 2, variant_id=7001, product_id=8001, product_type="WIG")],
    )))

    assert result.enrichment_failures == 1
    db = session_factory()
    row = crud_order.get_line_items(db, 5001)[0]
    assert (row.quantity, row.image_url, row.product_type) == (2, "", "WIG")
    assert row.custom_name == "Silk Wig Long"
    db.close()


def test_metafield_failure_keeps_variant_and_product_data(shopify):
    shopify.fail_metafields = True

    detail = EnrichmentService(shopify).enrich_line_item(_item(variant_id=7001, product_id=8001))

    assert detail.weight == Decimal("250")
    assert detail.has_weight_warning is False
    assert detail.image_url == "https://cdn/variant.jpg"
    assert detail.url_handle == "silk-wig"
    assert detail.custom_fields == {}
    assert detail.custom_name is None


def test_payload_grams_are_the_fallback_weight(shopify):
    detail = EnrichmentService(shopify).enrich_line_item(_item(variant_id=424242, grams=180))

    assert detail.degraded is True
    assert detail.weight == Decimal("180")
    assert detail.has_weight_warning is False


def test_stored_row_keeps_weight_when_metafields_fail(reconciler, session_factory, shopify):
    shopify.fail_metafields = True

    result = reconciler.on_order_created(schemas.OrderSnapshot.model_validate(make_order(
        line_items=[make_line_item(100, 1, variant_id=7001, product_id=8001)],
    )))

    assert result.enrichment_failures == 0
    db = session_factory()
    row = crud_order.get_line_items(db, 5001)[0]
    assert (float(row.weight), row.url_handle, row.has_weight_warning) == (250.0, "silk-wig", False)
    db.close()
