"""Generic REST API / webhook adapter.

Talks to any JSON API described entirely by connector configuration:

    base_url        root of the API (required)
    api_key         sent as "<auth_prefix> <api_key>" in <auth_header>
    entity_paths    {"customer": "/customers", ...}
    results_key     key holding the list in list responses (default: body is the list)
    id_field        remote id attribute (default "id")
    page_param      query parameter for page numbers; omit for single-page APIs

Webhook payloads are `{"event": ..., "entity_type": ..., "data": {...}}`,
signed with a hex HMAC-SHA256 in X-Webhook-Signature (optionally "sha256=" prefixed).
"""

import hmac
from typing import Any, Dict, List, Mapping

from sqlalchemy import DateTime, Integer, Numeric

from connector_hub.connectors.base import HTTPProviderAdapter, WebhookEvent, lower_headers
from connector_hub.models.entities import ENTITY_MODELS
from connector_hub.services.field_mapping import MappingRule

REQUIRED_FIELDS = {"customer": "name", "product": "name", "invoice": "invoice_number"}

SKIP_COLUMNS = {"id", "tenant_id", "external_id", "external_source", "external_data_json",
                "last_sync", "created_at", "updated_at"}


def _column_rule(entity_type: str, column) -> MappingRule:
    required = REQUIRED_FIELDS.get(entity_type) == column.name
    if isinstance(column.type, DateTime):
        return MappingRule(entity_type, column.name, column.name, "transform", {"name": "iso_to_datetime"}, required)
    if isinstance(column.type, Numeric):
        return MappingRule(entity_type, column.name, column.name, "transform", {"name": "to_decimal"}, required)
    if isinstance(column.type, Integer):
        return MappingRule(entity_type, column.name, column.name, "transform", {"name": "to_int"}, required)
    return MappingRule(entity_type, column.name, column.name, is_required=required)


class GenericAPIAdapter(HTTPProviderAdapter):
    name = "api_webhook"
    signature_header = "X-Webhook-Signature"
    pull_entities = tuple(ENTITY_MODELS)
    push_entities = tuple(ENTITY_MODELS)

    def base_url(self, config: Dict[str, Any]) -> str:
        return str(config["base_url"]).rstrip("/")

    def auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if config.get("api_key"):
            header = config.get("auth_header") or "Authorization"
            prefix = config.get("auth_prefix", "Bearer")
            headers[header] = f"{prefix} {config['api_key']}".strip()
        return headers

    def probe_path(self, config: Dict[str, Any]) -> str:
        return ""

    def _path(self, config: Dict[str, Any], entity_type: str) -> str:
        paths = config.get("entity_paths") or {}
        return paths.get(entity_type) or f"/{entity_type}s"

    def _items(self, config: Dict[str, Any], body: Any) -> List[Dict[str, Any]]:
        key = config.get("results_key")
        if key and isinstance(body, dict):
            body = body.get(key)
        return body if isinstance(body, list) else []

    def iter_pages(self, client, config, entity_type):
        path = self._path(config, entity_type)
        page_param = config.get("page_param")
        if not page_param:
            yield self._items(config, self.json_body(self.request(client, "GET", path)))
            return
        page = 1
        while True:
            items = self._items(config, self.json_body(self.request(client, "GET", path, params={page_param: page})))
            yield items
            if not items:
                break
            page += 1

    def external_id_of(self, entity_type: str, remote: Dict[str, Any], config: Dict[str, Any]) -> Any:
        return remote.get(config.get("id_field") or "id")

    def push_one(self, client, config, record, payload):
        path = self._path(config, record.entity_type)
        if record.external_id:
            resp = self.request(client, "PUT", f"{path}/{record.external_id}", json=payload)
        else:
            resp = self.request(client, "POST", path, json=payload)
        body = self.json_body(resp) if resp.content else {}
        return body if isinstance(body, dict) else {}

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        supplied = lower_headers(headers).get(self.signature_header.lower())
        if not supplied:
            return False
        supplied = supplied.strip()
        if supplied.startswith("sha256="):
            supplied = supplied[len("sha256="):]
        expected = self.expected_signature(secret, raw_body)
        return hmac.compare_digest(supplied.lower().encode("utf-8"), expected.encode("utf-8"))

    def decode_webhook(self, headers, raw_body, mapping) -> WebhookEvent:
        payload = self.parse_json(raw_body)
        event_type = payload.get("event") or lower_headers(headers).get("x-webhook-event") or "unknown"
        entity_type = payload.get("entity_type")
        if not entity_type and "." in event_type:
            entity_type = event_type.split(".", 1)[0]
        data = payload.get("data")
        if entity_type not in ENTITY_MODELS or not isinstance(data, dict):
            return WebhookEvent(event_type=event_type)
        id_field = payload.get("id_field") or "id"
        return WebhookEvent(
            event_type=event_type,
            record=self.to_canonical(entity_type, data.get(id_field), data, mapping),
        )

    def default_mappings(self) -> List[MappingRule]:
        return [
            _column_rule(entity_type, column)
            for entity_type, model in ENTITY_MODELS.items()
            for column in model.__table__.columns
            if column.name not in SKIP_COLUMNS
        ]
