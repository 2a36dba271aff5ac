"""WooCommerce REST (wc/v3) adapter."""

import hmac
from typing import Any, Dict, List, Mapping, Optional

import httpx

from connector_hub.connectors.base import (
    HTTPProviderAdapter, WebhookEvent, base64_hmac, lower_headers,
)
from connector_hub.services.field_mapping import MappingRule

RESOURCES = {
    "product": "/products",
    "customer": "/customers",
    "invoice": "/orders",
}

TOPIC_ENTITIES = {
    "product": "product",
    "customer": "customer",
    "order": "invoice",
}


class WooCommerceAdapter(HTTPProviderAdapter):
    name = "woocommerce"
    signature_header = "X-WC-Webhook-Signature"
    pull_entities = ("product", "customer", "invoice")
    push_entities = ("product", "customer")

    def base_url(self, config: Dict[str, Any]) -> str:
        return f"{str(config['site_url']).rstrip('/')}/wp-json/wc/v3"

    def auth(self, config: Dict[str, Any]) -> Optional[httpx.Auth]:
        return httpx.BasicAuth(config["consumer_key"], config["consumer_secret"])

    def probe_path(self, config: Dict[str, Any]) -> str:
        return "/system_status"

    def iter_pages(self, client, config, entity_type):
        page = 1
        per_page = min(self.page_size(), 100)
        while True:
            resp = self.request(client, "GET", RESOURCES[entity_type], params={"page": page, "per_page": per_page})
            items = self.json_body(resp) or []
            yield items
            total_pages = resp.headers.get("X-WP-TotalPages")
            if not items or (total_pages is not None and page >= int(total_pages)):
                break
            if total_pages is None and len(items) < per_page:
                break
            page += 1

    def push_one(self, client, config, record, payload):
        path = RESOURCES[record.entity_type]
        if record.external_id:
            resp = self.request(client, "PUT", f"{path}/{record.external_id}", json=payload)
        else:
            resp = self.request(client, "POST", path, json=payload)
        return self.json_body(resp)

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        supplied = lower_headers(headers).get(self.signature_header.lower())
        if not supplied:
            return False
        expected = base64_hmac(secret, raw_body)
        return hmac.compare_digest(supplied.strip().encode("utf-8"), expected.encode("utf-8"))

    def decode_webhook(self, headers, raw_body, mapping) -> WebhookEvent:
        topic = lower_headers(headers).get("x-wc-webhook-topic", "")
        payload = self.parse_json(raw_body)
        resource, _, action = topic.partition(".")
        entity_type = TOPIC_ENTITIES.get(resource)
        if entity_type is None or action in ("deleted", "restored") or "id" not in payload:
            return WebhookEvent(event_type=topic or "unknown")
        return WebhookEvent(event_type=topic, record=self.to_canonical(entity_type, payload["id"], payload, mapping))

    def default_mappings(self) -> List[MappingRule]:
        return [
            MappingRule("product", "name", "name", is_required=True),
            MappingRule("product", "description", "description"),
            MappingRule("product", "sku", "sku"),
            MappingRule("product", "price", "regular_price", "transform", {"name": "to_decimal"}),
            MappingRule("product", "stock", "stock_quantity", "transform", {"name": "to_int"}),
            MappingRule(
                "customer", "name", "first_name", "calculated",
                {"op": "concat", "fields": ["first_name", "last_name"],
                 "outbound": {"op": "first", "fields": ["name"]}},
                is_required=True,
            ),
            MappingRule("customer", "email", "email"),
            MappingRule("customer", "phone", "billing.phone"),
            MappingRule(
                "customer", "address", "billing", "calculated",
                {"op": "concat", "separator": ", ",
                 "fields": ["billing.address_1", "billing.city", "billing.country"]},
            ),
            MappingRule("invoice", "invoice_number", "number", is_required=True),
            MappingRule(
                "invoice", "customer_name", "billing", "calculated",
                {"op": "concat", "fields": ["billing.first_name", "billing.last_name"]},
            ),
            MappingRule("invoice", "customer_email", "billing.email"),
            MappingRule("invoice", "total", "total", "transform", {"name": "to_decimal"}),
            MappingRule("invoice", "currency", "currency"),
            MappingRule("invoice", "status", "status"),
            MappingRule("invoice", "issued_at", "date_created_gmt", "transform", {"name": "iso_to_datetime"}),
        ]
