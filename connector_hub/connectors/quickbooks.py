"""QuickBooks Online (Intuit v3 accounting API) adapter.

Requests authenticate with an OAuth2 bearer token obtained out of band and
stored on the connector (`oauth_tokens`: access_token, realm_id). Intuit
webhooks only carry entity references, so they are decoded into
`refresh_entities` rather than records.
"""

import hmac
from typing import Any, Dict, List, Mapping

from connector_hub.connectors.base import (
    HTTPProviderAdapter, ProbeResult, WebhookEvent, base64_hmac, lower_headers,
)
from connector_hub.core.exceptions import ConnectorConnectionError
from connector_hub.services.field_mapping import MappingRule

PRODUCTION_BASE = "https://quickbooks.api.intuit.com/v3/company"
SANDBOX_BASE = "https://sandbox-quickbooks.api.intuit.com/v3/company"
MINOR_VERSION = "65"

# local entity type -> Intuit entity name
ENTITY_NAMES = {
    "customer": "Customer",
    "product": "Item",
    "invoice": "Invoice",
}
INTUIT_ENTITIES = {v: k for k, v in ENTITY_NAMES.items()}


def _tokens(config: Dict[str, Any]) -> Dict[str, Any]:
    tokens = config.get("oauth_tokens") or {}
    if not tokens.get("access_token"):
        raise ConnectorConnectionError("quickbooks: OAuth tokens are not configured for this connector")
    return tokens


def _realm_id(config: Dict[str, Any]) -> str:
    realm = _tokens(config).get("realm_id") or config.get("realm_id")
    if not realm:
        raise ConnectorConnectionError("quickbooks: no realm_id (company id) configured")
    return str(realm)


class QuickBooksAdapter(HTTPProviderAdapter):
    name = "quickbooks"
    signature_header = "intuit-signature"
    pull_entities = ("customer", "product", "invoice")
    push_entities = ("customer",)

    def base_url(self, config: Dict[str, Any]) -> str:
        base = SANDBOX_BASE if config.get("sandbox") else PRODUCTION_BASE
        return f"{base}/{_realm_id(config)}"

    def auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {_tokens(config)['access_token']}",
            "Accept": "application/json",
        }

    def probe(self, config: Dict[str, Any]) -> ProbeResult:
        try:
            realm = _realm_id(config)
        except ConnectorConnectionError as e:
            return ProbeResult(ok=False, message=f"Connection failed: {e.message}")
        result = super().probe(config)
        if result.ok:
            result.message = f"quickbooks connection successful (company {realm})"
        return result

    def probe_path(self, config: Dict[str, Any]) -> str:
        return f"/companyinfo/{_realm_id(config)}"

    def iter_pages(self, client, config, entity_type):
        entity = ENTITY_NAMES[entity_type]
        page_size = min(self.page_size(), 1000)
        start = 1
        while True:
            query = f"SELECT * FROM {entity} STARTPOSITION {start} MAXRESULTS {page_size}"
            resp = self.request(client, "GET", "/query", params={"query": query, "minorversion": MINOR_VERSION})
            items = (self.json_body(resp).get("QueryResponse") or {}).get(entity) or []
            yield items
            if len(items) < page_size:
                break
            start += page_size

    def external_id_of(self, entity_type: str, remote: Dict[str, Any], config: Dict[str, Any]) -> Any:
        return remote.get("Id")

    def push_one(self, client, config, record, payload):
        entity = ENTITY_NAMES[record.entity_type]
        if record.external_id:
            # updates must echo the last SyncToken QuickBooks handed out
            payload = dict(payload, Id=record.external_id, SyncToken=record.extra.get("SyncToken", "0"), sparse=True)
        resp = self.request(
            client, "POST", f"/{entity.lower()}", params={"minorversion": MINOR_VERSION}, json=payload,
        )
        # carries the new SyncToken the next update must echo
        return self.json_body(resp).get(entity) or {}

    # ---- Webhooks ----

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        supplied = lower_headers(headers).get(self.signature_header.lower())
        if not supplied:
            return False
        expected = base64_hmac(secret, raw_body)
        return hmac.compare_digest(supplied.strip().encode("utf-8"), expected.encode("utf-8"))

    def decode_webhook(self, headers, raw_body, mapping) -> WebhookEvent:
        payload = self.parse_json(raw_body)
        refresh: List[str] = []
        operations = set()
        for notification in payload.get("eventNotifications") or []:
            for entity in (notification.get("dataChangeEvent") or {}).get("entities") or []:
                entity_type = INTUIT_ENTITIES.get(entity.get("name"))
                if entity_type and entity_type not in refresh:
                    refresh.append(entity_type)
                if entity.get("operation"):
                    operations.add(entity["operation"])
        event_type = "dataChangeEvent"
        if len(operations) == 1:
            event_type = f"dataChangeEvent.{operations.pop()}"
        return WebhookEvent(event_type=event_type, refresh_entities=refresh)

    def default_mappings(self) -> List[MappingRule]:
        return [
            MappingRule("customer", "name", "DisplayName", is_required=True),
            MappingRule("customer", "email", "PrimaryEmailAddr.Address"),
            MappingRule("customer", "phone", "PrimaryPhone.FreeFormNumber"),
            MappingRule(
                "customer", "address", "BillAddr", "calculated",
                {"op": "concat", "separator": ", ", "fields": ["BillAddr.Line1", "BillAddr.City", "BillAddr.Country"]},
            ),
            MappingRule("product", "name", "Name", is_required=True),
            MappingRule("product", "description", "Description"),
            MappingRule("product", "sku", "Sku"),
            MappingRule("product", "price", "UnitPrice", "transform", {"name": "to_decimal"}),
            MappingRule("product", "stock", "QtyOnHand", "transform", {"name": "to_int"}),
            MappingRule(
                "invoice", "invoice_number", "DocNumber", "calculated",
                {"op": "coalesce", "fields": ["DocNumber", "Id"]},
                is_required=True,
            ),
            MappingRule("invoice", "customer_name", "CustomerRef.name"),
            MappingRule("invoice", "customer_email", "BillEmail.Address"),
            MappingRule("invoice", "total", "TotalAmt", "transform", {"name": "to_decimal"}),
            MappingRule("invoice", "currency", "CurrencyRef.value"),
            MappingRule("invoice", "issued_at", "TxnDate", "transform", {"name": "iso_to_datetime"}),
        ]
