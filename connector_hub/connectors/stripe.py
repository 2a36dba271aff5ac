"""Stripe adapter.

Stripe lists are cursor-paginated (`has_more` + `starting_after`), writes are
form-encoded, and webhooks are signed with `Stripe-Signature: t=...,v1=...`
over `"{t}.{body}"`.
"""

import hashlib
import hmac
import time
from typing import Any, Dict, List, Mapping

from connector_hub.connectors.base import HTTPProviderAdapter, WebhookEvent, lower_headers
from connector_hub.core.config import settings
from connector_hub.services.field_mapping import MappingRule

API_BASE = "https://api.stripe.com/v1"

RESOURCES = {
    "customer": "/customers",
    "product": "/products",
    "invoice": "/invoices",
}

# Stripe's `object` attribute -> local entity type
OBJECT_ENTITIES = {
    "customer": "customer",
    "product": "product",
    "invoice": "invoice",
}


def form_encode(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts into Stripe's bracket notation (metadata[sku])."""
    flat: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            flat.update(form_encode(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        elif value is not None:
            flat[name] = str(value)
    return flat


class StripeAdapter(HTTPProviderAdapter):
    name = "stripe"
    signature_header = "Stripe-Signature"
    pull_entities = ("customer", "product", "invoice")
    push_entities = ("customer", "product")

    def base_url(self, config: Dict[str, Any]) -> str:
        return API_BASE

    def auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {config['secret_key']}",
            "Accept": "application/json",
        }

    def probe_path(self, config: Dict[str, Any]) -> str:
        return "/account"

    def iter_pages(self, client, config, entity_type):
        params: Dict[str, Any] = {"limit": min(self.page_size(), 100)}
        while True:
            resp = self.request(client, "GET", RESOURCES[entity_type], params=params)
            body = self.json_body(resp)
            items = body.get("data") or []
            yield items
            if not body.get("has_more") or not items:
                break
            params["starting_after"] = items[-1]["id"]

    def push_one(self, client, config, record, payload):
        path = RESOURCES[record.entity_type]
        if record.external_id:
            path = f"{path}/{record.external_id}"
        resp = self.request(client, "POST", path, data=form_encode(payload))
        return self.json_body(resp)

    # ---- Webhooks ----

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        header = lower_headers(headers).get(self.signature_header.lower())
        if not header:
            return False

        timestamp = None
        signatures = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if timestamp is None or not timestamp.isdigit() or not signatures:
            return False
        if abs(time.time() - int(timestamp)) > settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS:
            return False

        signed = timestamp.encode("utf-8") + b"." + raw_body
        expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(sig.encode("utf-8"), expected.encode("utf-8")) for sig in signatures)

    def decode_webhook(self, headers, raw_body, mapping) -> WebhookEvent:
        payload = self.parse_json(raw_body)
        event_type = payload.get("type") or "unknown"
        obj = (payload.get("data") or {}).get("object") or {}
        entity_type = OBJECT_ENTITIES.get(obj.get("object"))
        if entity_type is None or event_type.endswith(".deleted") or obj.get("deleted"):
            return WebhookEvent(event_type=event_type)
        return WebhookEvent(event_type=event_type, record=self.to_canonical(entity_type, obj.get("id"), obj, mapping))

    def default_mappings(self) -> List[MappingRule]:
        return [
            MappingRule(
                "customer", "name", "name", "calculated",
                {"op": "coalesce", "fields": ["name", "email"],
                 "outbound": {"op": "first", "fields": ["name"]}},
                is_required=True,
            ),
            MappingRule("customer", "email", "email"),
            MappingRule("customer", "phone", "phone"),
            MappingRule(
                "customer", "address", "address", "calculated",
                {"op": "concat", "separator": ", ", "fields": ["address.line1", "address.city", "address.country"]},
            ),
            MappingRule("product", "name", "name", is_required=True),
            MappingRule("product", "description", "description"),
            MappingRule("product", "sku", "metadata.sku"),
            MappingRule(
                "invoice", "invoice_number", "number", "calculated",
                {"op": "coalesce", "fields": ["number", "id"]},
                is_required=True,
            ),
            MappingRule("invoice", "customer_name", "customer_name"),
            MappingRule("invoice", "customer_email", "customer_email"),
            MappingRule("invoice", "total", "total", "transform", {"name": "cents_to_amount"}),
            MappingRule("invoice", "currency", "currency", "transform", {"name": "uppercase"}),
            MappingRule("invoice", "status", "status"),
            MappingRule("invoice", "issued_at", "created", "transform", {"name": "unix_to_datetime"}),
        ]
