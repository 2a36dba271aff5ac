"""Shopify Admin REST adapter."""

import hmac
from typing import Any, Dict, List, Mapping

from connector_hub.connectors.base import (
    HTTPProviderAdapter, WebhookEvent, base64_hmac, lower_headers,
)
from connector_hub.services.field_mapping import MappingRule

DEFAULT_API_VERSION = "2023-07"

# entity type -> (collection path, response key, singular key)
RESOURCES = {
    "product": ("/products.json", "products", "product"),
    "customer": ("/customers.json", "customers", "customer"),
    "invoice": ("/orders.json", "orders", "order"),
}

TOPIC_ENTITIES = {
    "products": "product",
    "customers": "customer",
    "orders": "invoice",
}


class ShopifyAdapter(HTTPProviderAdapter):
    name = "shopify"
    signature_header = "X-Shopify-Hmac-Sha256"
    pull_entities = ("product", "customer", "invoice")
    push_entities = ("product", "customer")

    def base_url(self, config: Dict[str, Any]) -> str:
        domain = str(config["shop_domain"]).strip().rstrip("/")
        if not domain.startswith("http"):
            domain = f"https://{domain}"
        return f"{domain}/admin/api/{config.get('api_version') or DEFAULT_API_VERSION}"

    def auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": config["access_token"],
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def probe_path(self, config: Dict[str, Any]) -> str:
        return "/shop.json"

    def iter_pages(self, client, config, entity_type):
        path, key, _ = RESOURCES[entity_type]
        params = {"limit": min(self.page_size(), 250)}
        if entity_type == "invoice":
            params["status"] = "any"
        url = path
        while url:
            resp = self.request(client, "GET", url, params=params)
            yield self.json_body(resp).get(key) or []
            # cursor pagination: the next link carries page_info and limit
            url = resp.links.get("next", {}).get("url")
            params = None

    def push_one(self, client, config, record, payload):
        path, _, singular = RESOURCES[record.entity_type]
        if record.external_id:
            url = path.replace(".json", f"/{record.external_id}.json")
            resp = self.request(client, "PUT", url, json={singular: payload})
        else:
            resp = self.request(client, "POST", path, json={singular: payload})
        return self.json_body(resp).get(singular) or {}

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        supplied = lower_headers(headers).get(self.signature_header.lower())
        if not supplied:
            return False
        expected = base64_hmac(secret, raw_body)
        return hmac.compare_digest(supplied.strip().encode("utf-8"), expected.encode("utf-8"))

    def decode_webhook(self, headers, raw_body, mapping) -> WebhookEvent:
        topic = lower_headers(headers).get("x-shopify-topic", "")
        payload = self.parse_json(raw_body)
        resource, _, action = topic.partition("/")
        entity_type = TOPIC_ENTITIES.get(resource)
        if entity_type is None or action == "delete":
            return WebhookEvent(event_type=topic or "unknown")
        record = self.to_canonical(entity_type, payload.get("id"), payload, mapping)
        return WebhookEvent(event_type=topic, record=record)

    def default_mappings(self) -> List[MappingRule]:
        return [
            MappingRule("product", "name", "title", is_required=True),
            MappingRule("product", "description", "body_html"),
            MappingRule("product", "price", "variants.0.price", "transform", {"name": "to_decimal"}),
            MappingRule("product", "stock", "variants.0.inventory_quantity", "transform", {"name": "to_int"}),
            MappingRule("product", "sku", "variants.0.sku"),
            MappingRule(
                "customer", "name", "first_name", "calculated",
                {"op": "concat", "fields": ["first_name", "last_name"],
                 "outbound": {"op": "first", "fields": ["name"]}},
                is_required=True,
            ),
            MappingRule("customer", "email", "email"),
            MappingRule("customer", "phone", "phone"),
            MappingRule(
                "customer", "address", "default_address", "calculated",
                {"op": "concat", "separator": ", ",
                 "fields": ["default_address.address1", "default_address.city", "default_address.country"]},
            ),
            MappingRule("invoice", "invoice_number", "name", is_required=True),
            MappingRule("invoice", "customer_email", "email"),
            MappingRule(
                "invoice", "customer_name", "customer", "calculated",
                {"op": "concat", "fields": ["customer.first_name", "customer.last_name"]},
            ),
            MappingRule("invoice", "total", "total_price", "transform", {"name": "to_decimal"}),
            MappingRule("invoice", "currency", "currency"),
            MappingRule("invoice", "status", "financial_status"),
            MappingRule("invoice", "issued_at", "created_at", "transform", {"name": "iso_to_datetime"}),
        ]
