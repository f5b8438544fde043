# shopify_service.py
import logging
import time
import random
from typing import List, Optional, Dict, Any

import requests

logger = logging.getLogger("fulfiller.shopify")


def gid_to_id(gid: Optional[str]) -> Optional[int]:
    if not gid:
        return None
    try:
        return int(str(gid).split('/')[-1])
    except (IndexError, ValueError):
        return None


FIND_VARIANT_BY_SKU_QUERY = """
query FindVariantBySku($query: String!) {
  productVariants(first: 1, query: $query) {
    edges { node { id legacyResourceId sku } }
  }
}
"""

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ShopifyAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ShopifyService:
    """
    Thin Admin API client for the calls the fulfiller needs: order fetch,
    product/variant detail, variant weight writes and webhook registration.
    """
    def __init__(self, store_url: str, token: str, api_version: str = "2024-01",
                 timeout: float = 30, max_retries: int = 5):
        if not all([store_url, token]):
            raise ValueError("Store URL and Access Token are required.")
        self.base_url = f"https://{store_url}/admin/api/{api_version}"
        self.headers = {"Content-Type": "application/json", "X-Shopify-Access-Token": token}
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.session = requests.Session()

    def _backoff(self, attempt: int, base_delay: float = 1.0, retry_after: Optional[str] = None) -> float:
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return base_delay * (2 ** attempt) + random.uniform(0, 0.5)

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, url, headers=self.headers, json=json,
                                                params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                if attempt < self.max_retries - 1:
                    wait = self._backoff(attempt)
                    logger.warning("[network] %s %s: %s; retry in %.2fs", method, path, e, wait)
                    time.sleep(wait)
                    continue
                raise ShopifyAPIError(f"{method} {path} failed: {e}") from e

            if response.status_code in RETRYABLE_STATUS and attempt < self.max_retries - 1:
                wait = self._backoff(attempt, retry_after=response.headers.get("Retry-After"))
                logger.warning("[throttle] %s %s -> %s; retry in %.2fs", method, path, response.status_code, wait)
                time.sleep(wait)
                continue
            if response.status_code >= 400:
                raise ShopifyAPIError(
                    f"{method} {path} -> {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                )
            if not response.content:
                return {}
            return response.json()
        raise ShopifyAPIError(f"Max retries reached for {method} {path}")

    def _execute_query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = self._request("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        if data.get("errors"):
            raise ShopifyAPIError(f"GraphQL API Error: {data['errors']}")
        return data.get("data") or {}

    # -------------------- reads --------------------
    def get_order(self, order_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}.json").get("order") or {}

    def get_variant(self, variant_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/variants/{variant_id}.json").get("variant") or {}

    def get_product(self, product_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/products/{product_id}.json").get("product") or {}

    def get_metafields(self, owner: str, owner_id: int, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """owner is the REST resource name, e.g. 'products' or 'variants'."""
        params = {"namespace": namespace} if namespace else None
        return self._request("GET", f"/{owner}/{owner_id}/metafields.json", params=params).get("metafields") or []

    def find_variant_id_by_sku(self, sku: str) -> Optional[int]:
        data = self._execute_query(FIND_VARIANT_BY_SKU_QUERY, {"query": f"sku:{sku}"})
        edges = ((data.get("productVariants") or {}).get("edges")) or []
        if not edges:
            return None
        node = edges[0].get("node") or {}
        legacy = node.get("legacyResourceId")
        return int(legacy) if legacy else gid_to_id(node.get("id"))

    # -------------------- writes --------------------
    def update_variant_weight(self, variant_id: int, weight_grams: float) -> Dict[str, Any]:
        body = {"variant": {"id": int(variant_id), "weight": weight_grams, "weight_unit": "g"}}
        logger.info("[variant-weight] %s -> %sg", variant_id, weight_grams)
        return self._request("PUT", f"/variants/{variant_id}.json", json=body).get("variant") or {}

    def update_variant_weight_by_sku(self, sku: str, weight_grams: float) -> Dict[str, Any]:
        variant_id = self.find_variant_id_by_sku(sku)
        if not variant_id:
            raise ShopifyAPIError(f'Variant with SKU "{sku}" not found in Shopify', status_code=404)
        return self.update_variant_weight(variant_id, weight_grams)

    # -------------------- webhook registration --------------------
    def list_webhooks(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/webhooks.json").get("webhooks") or []

    def create_webhook(self, topic: str, address: str) -> Dict[str, Any]:
        body = {"webhook": {"topic": topic, "address": address, "format": "json"}}
        return self._request("POST", "/webhooks.json", json=body).get("webhook") or {}

    def delete_webhook(self, webhook_id: int) -> None:
        self._request("DELETE", f"/webhooks/{webhook_id}.json")
