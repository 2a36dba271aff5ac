import json

import pytest

from connector_hub.api.connectors import get_sync_dispatch
from connector_hub.executor.engine import SyncExecutor
from connector_hub.main import app
from connector_hub.models.audit_log import AuditLog
from connector_hub.models.connector import ConnectorStatus, TenantConnector
from connector_hub.models.entities import Product
from connector_hub.models.field_mapping import FieldMapping
from connector_hub.models.sync_log import SyncLog
from connector_hub.models.webhook import WebhookEndpoint
from connector_hub.services.audit_service import MASK
from connector_hub.services.connector_service import ConnectorService
from conftest import OTHER_TENANT_ID, SAMPLE_CONFIGS, auth_headers

SHOP_PROBE = "/admin/api/2023-07/shop.json"
SHOP_PRODUCTS = "/admin/api/2023-07/products.json"


@pytest.fixture
def inline_sync(client, db, registry):
    """Run accepted syncs in the request instead of handing them to Celery."""
    def run_now(sync_log_id):
        SyncExecutor(db, registry=registry).execute(sync_log_id)

    app.dependency_overrides[get_sync_dispatch] = lambda: run_now


def create_connector(client, headers, catalog, type_name="shopify", **body):
    payload = {
        "connector_type_id": catalog[type_name].id,
        "name": f"{type_name} main",
        "config": dict(SAMPLE_CONFIGS[type_name]),
    }
    payload.update(body)
    return client.post("/api/connectors", json=payload, headers=headers)


# ---- basics ----

def test_health_reports_redis_state(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "redis": False}


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/connectors").status_code == 401
    assert client.get("/api/connectors", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_catalog_lists_seeded_types(client, catalog, viewer_headers):
    resp = client.get("/api/connectors/types", headers=viewer_headers)

    assert resp.status_code == 200
    types = {t["name"]: t for t in resp.json()}
    assert set(types) == {"quickbooks", "shopify", "stripe", "woocommerce", "api_webhook"}
    assert all(t["is_implemented"] for t in types.values())
    assert types["shopify"]["config_schema"]["required"] == ["shop_domain", "access_token"]


def test_transform_catalog_is_public_to_viewers(client, viewer_headers):
    resp = client.get("/api/connectors/transforms", headers=viewer_headers)
    assert resp.status_code == 200
    assert "to_decimal" in resp.json()["transforms"]
    assert "concat" in resp.json()["calculations"]


# ---- connector lifecycle ----

def test_missing_credentials_are_reported_then_config_is_stored_encrypted(client, db, catalog, admin_headers):
    config = {"publishable_key": "pk_test_123"}
    resp = create_connector(client, admin_headers, catalog, "stripe", config=config)

    assert resp.status_code == 422
    assert {"field": "secret_key", "message": "is required"} in resp.json()["errors"]
    assert db.query(TenantConnector).count() == 0

    config["secret_key"] = "sk_test_123"
    resp = create_connector(client, admin_headers, catalog, "stripe", config=config)

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["config"] == {"secret_key": MASK, "publishable_key": "pk_test_123"}
    stored = db.get(TenantConnector, body["id"])
    assert "sk_test_123" not in stored.config_encrypted
    assert stored.config_encrypted != json.dumps(config)


def test_creation_is_audited_without_secrets(client, db, catalog, admin_headers):
    connector_id = create_connector(client, admin_headers, catalog).json()["id"]

    entry = db.query(AuditLog).filter(AuditLog.action == "connector.created").one()
    assert entry.resource_id == str(connector_id)
    assert "shpat_test" not in entry.new_value_json


def test_duplicate_name_for_same_type_is_rejected(client, catalog, admin_headers):
    assert create_connector(client, admin_headers, catalog).status_code == 201

    resp = create_connector(client, admin_headers, catalog)

    assert resp.status_code == 422
    assert resp.json()["errors"][0]["field"] == "name"


def test_viewers_can_read_but_not_change(client, catalog, admin_headers, viewer_headers):
    connector_id = create_connector(client, admin_headers, catalog).json()["id"]

    assert create_connector(client, viewer_headers, catalog, name="other").status_code == 403
    assert client.post(f"/api/connectors/{connector_id}/sync", headers=viewer_headers).status_code == 403
    assert client.delete(f"/api/connectors/{connector_id}", headers=viewer_headers).status_code == 403
    assert client.get(f"/api/connectors/{connector_id}", headers=viewer_headers).status_code == 200


def test_connectors_are_invisible_to_other_tenants(client, catalog, admin_headers):
    connector_id = create_connector(client, admin_headers, catalog).json()["id"]
    stranger = auth_headers("admin", tenant_id=OTHER_TENANT_ID)

    assert client.get(f"/api/connectors/{connector_id}", headers=stranger).status_code == 404
    assert client.post(f"/api/connectors/{connector_id}/test", headers=stranger).status_code == 404
    assert client.get("/api/connectors", headers=stranger).json()["total"] == 0


def test_list_filters_by_status(client, make_connector, admin_headers):
    make_connector("shopify")
    make_connector("stripe", status=ConnectorStatus.pending)

    resp = client.get("/api/connectors", params={"status": "pending"}, headers=admin_headers)

    assert resp.json()["total"] == 1
    assert resp.json()["connectors"][0]["connector_type"] == "stripe"


def test_update_with_masked_secret_keeps_stored_credential(client, db, make_connector, admin_headers):
    connector = make_connector("shopify")

    resp = client.put(
        f"/api/connectors/{connector.id}",
        json={"config": {"shop_domain": "renamed.myshopify.com", "access_token": MASK}},
        headers=admin_headers,
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    db.refresh(connector)
    stored = ConnectorService(db).decrypt_config(connector)
    assert stored["access_token"] == "shpat_test"
    assert stored["shop_domain"] == "renamed.myshopify.com"


def test_status_can_only_be_parked_directly(client, make_connector, admin_headers):
    connector = make_connector("shopify")

    resp = client.put(f"/api/connectors/{connector.id}", json={"status": "inactive"}, headers=admin_headers)
    assert resp.json()["status"] == "inactive"

    resp = client.put(f"/api/connectors/{connector.id}", json={"status": "active"}, headers=admin_headers)
    assert resp.status_code == 422


def test_oauth_tokens_are_stored_but_never_returned(client, db, make_connector, admin_headers):
    connector = make_connector("quickbooks")

    resp = client.put(
        f"/api/connectors/{connector.id}/oauth-tokens",
        json={"access_token": "qb-access", "refresh_token": "qb-refresh", "realm_id": "123"},
        headers=admin_headers,
    )

    assert resp.status_code == 200
    assert resp.json()["has_oauth_tokens"] is True
    assert "qb-access" not in resp.text
    db.refresh(connector)
    assert ConnectorService(db).runtime_config(connector)["oauth_tokens"]["realm_id"] == "123"


def test_probe_moves_connector_between_active_and_error(client, db, fake_api, make_connector, admin_headers):
    connector = make_connector("shopify", status=ConnectorStatus.pending)
    fake_api.add("GET", SHOP_PROBE, json={"shop": {"id": 1}})

    resp = client.post(f"/api/connectors/{connector.id}/test", headers=admin_headers)

    assert resp.json()["ok"] is True
    assert resp.json()["status"] == "active"

    fake_api.routes.clear()
    fake_api.add("GET", SHOP_PROBE, json={"errors": "Invalid API key"}, status_code=401)

    resp = client.post(f"/api/connectors/{connector.id}/test", headers=admin_headers)

    assert resp.json()["ok"] is False
    assert resp.json()["status"] == "error"
    db.refresh(connector)
    assert connector.status == ConnectorStatus.error
    assert connector.last_error


def test_delete_removes_mappings_logs_and_webhook(client, db, make_connector, admin_headers):
    connector = make_connector("shopify")
    service = ConnectorService(db)
    service.save_mappings(connector.tenant_id, connector.id, [
        {"entity_type": "product", "local_field": "sku", "remote_field": "handle"},
    ])
    service.configure_webhook(connector.tenant_id, connector.id)
    client.post(f"/api/connectors/{connector.id}/sync", headers=admin_headers)

    resp = client.delete(f"/api/connectors/{connector.id}", headers=admin_headers)

    assert resp.status_code == 200
    assert db.query(TenantConnector).count() == 0
    assert db.query(FieldMapping).count() == 0
    assert db.query(SyncLog).count() == 0
    assert db.query(WebhookEndpoint).count() == 0
    assert db.query(AuditLog).filter(AuditLog.action == "connector.deleted").count() == 1


# ---- sync ----

def test_sync_is_accepted_then_conflicts_while_running(client, make_connector, dispatched, admin_headers):
    connector = make_connector("shopify")

    first = client.post(f"/api/connectors/{connector.id}/sync", json={"entity_types": ["product"]},
                        headers=admin_headers)
    second = client.post(f"/api/connectors/{connector.id}/sync", headers=admin_headers)

    assert first.status_code == 202
    assert first.json()["status"] == "pending"
    assert dispatched == [first.json()["sync_log_id"]]
    assert second.status_code == 409


def test_sync_of_untested_connector_is_rejected(client, make_connector, admin_headers):
    connector = make_connector("shopify", status=ConnectorStatus.pending)

    resp = client.post(f"/api/connectors/{connector.id}/sync", headers=admin_headers)

    assert resp.status_code == 422
    assert resp.json()["errors"][0]["field"] == "status"


def test_inbound_sync_counts_records_failing_mapping(client, db, fake_api, make_connector, admin_headers, inline_sync):
    products = [{"id": i, "title": f"Item {i}", "variants": []} for i in range(1, 11)]
    products[3]["title"] = ""
    products[7]["title"] = None
    fake_api.add("GET", SHOP_PRODUCTS, json={"products": products})
    connector = make_connector("shopify")

    resp = client.post(f"/api/connectors/{connector.id}/sync", json={"entity_types": ["product"]},
                       headers=admin_headers)

    assert resp.status_code == 202
    log = client.get(f"/api/connectors/{connector.id}/logs/{resp.json()['sync_log_id']}", headers=admin_headers).json()
    assert log["status"] == "completed"
    assert (log["records_processed"], log["records_successful"], log["records_failed"]) == (10, 8, 2)
    assert db.query(Product).count() == 8


def test_sync_history_is_paginated(client, fake_api, make_connector, admin_headers, inline_sync):
    fake_api.add("GET", SHOP_PRODUCTS, json={"products": []})
    connector = make_connector("shopify")
    for _ in range(3):
        client.post(f"/api/connectors/{connector.id}/sync", json={"entity_types": ["product"]}, headers=admin_headers)

    resp = client.get(f"/api/connectors/{connector.id}/logs", params={"limit": 2}, headers=admin_headers)

    assert resp.json()["total"] == 3
    assert len(resp.json()["logs"]) == 2
    assert client.get(f"/api/connectors/{connector.id}/logs/9999", headers=admin_headers).status_code == 404


# ---- mappings ----

def test_mapping_override_changes_what_a_sync_writes(client, db, fake_api, make_connector, admin_headers, inline_sync):
    fake_api.add("GET", SHOP_PRODUCTS, json={"products": [
        {"id": 1, "title": "Mug", "handle": "blue-mug", "variants": [{"sku": "MUG-1"}]},
    ]})
    connector = make_connector("shopify")

    resp = client.put(
        f"/api/connectors/{connector.id}/mappings",
        json=[{"entity_type": "product", "local_field": "sku", "remote_field": "handle"}],
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert [(m["local_field"], m["remote_field"]) for m in resp.json()["mappings"]] == [("sku", "handle")]
    assert any(d["local_field"] == "sku" for d in resp.json()["defaults"])

    client.post(f"/api/connectors/{connector.id}/sync", json={"entity_types": ["product"]}, headers=admin_headers)

    assert db.query(Product).one().sku == "blue-mug"


def test_invalid_mappings_reject_the_whole_batch(client, db, make_connector, admin_headers):
    connector = make_connector("shopify")

    resp = client.put(
        f"/api/connectors/{connector.id}/mappings",
        json=[
            {"entity_type": "product", "local_field": "sku", "remote_field": "handle"},
            {"entity_type": "product", "local_field": "price", "remote_field": "cost",
             "mapping_type": "transform", "transform": {"name": "eval"}},
            {"entity_type": "product", "local_field": "tenant_id", "remote_field": "shop"},
        ],
        headers=admin_headers,
    )

    assert resp.status_code == 422
    fields = [e["field"] for e in resp.json()["errors"]]
    assert "mappings[1]" in fields
    assert "mappings[2].local_field" in fields
    assert db.query(FieldMapping).count() == 0


def test_mapping_can_be_deleted(client, db, make_connector, admin_headers):
    connector = make_connector("shopify")
    saved = client.put(
        f"/api/connectors/{connector.id}/mappings",
        json=[{"entity_type": "customer", "local_field": "phone", "remote_field": "mobile"}],
        headers=admin_headers,
    ).json()["mappings"][0]

    resp = client.delete(f"/api/connectors/{connector.id}/mappings/{saved['id']}", headers=admin_headers)

    assert resp.status_code == 200
    assert db.query(FieldMapping).count() == 0
    assert client.delete(f"/api/connectors/{connector.id}/mappings/{saved['id']}",
                         headers=admin_headers).status_code == 404


# ---- webhook endpoint ----

def test_webhook_secret_is_shown_only_when_issued(client, make_connector, admin_headers, viewer_headers):
    connector = make_connector("shopify")
    url = f"/api/connectors/{connector.id}/webhook"

    assert client.get(url, headers=admin_headers).status_code == 404

    created = client.put(url, json={"events": ["products/update"]}, headers=admin_headers).json()
    assert created["secret"]
    assert created["endpoint_url"].endswith(f"/api/webhooks/connector/{connector.id}")

    fetched = client.get(url, headers=admin_headers).json()
    assert fetched["secret"] is None
    assert fetched["has_secret"] is True
    assert fetched["events"] == ["products/update"]

    updated = client.put(url, json={"is_active": False}, headers=admin_headers).json()
    assert updated["secret"] is None
    assert updated["is_active"] is False

    rotated = client.put(url, json={"regenerate_secret": True}, headers=admin_headers).json()
    assert rotated["secret"] and rotated["secret"] != created["secret"]

    assert client.get(url, headers=viewer_headers).status_code == 403
