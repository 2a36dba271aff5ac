import json

import pytest

from connector_hub.connectors.base import base64_hmac
from connector_hub.models.connector import ConnectorStatus
from connector_hub.models.entities import Product
from connector_hub.models.sync_log import SyncLog, SyncStatus, SyncType
from connector_hub.models.webhook import WebhookEndpoint
from connector_hub.services.connector_service import ConnectorService
from connector_hub.services.webhook_service import WebhookService
from conftest import TENANT_ID

SECRET = "shared-webhook-secret"
PRODUCT = {"id": 777, "title": "Mug", "variants": [{"price": "9.99", "sku": "MUG-9"}]}


def configure(db, registry, connector, **kwargs):
    kwargs.setdefault("secret", SECRET)
    endpoint, _ = ConnectorService(db, registry=registry).configure_webhook(TENANT_ID, connector.id, **kwargs)
    return endpoint


def shopify_delivery(body: bytes, topic: str = "products/update", secret: str = SECRET):
    return {
        "X-Shopify-Topic": topic,
        "X-Shopify-Hmac-Sha256": base64_hmac(secret, body),
        "Content-Type": "application/json",
    }


@pytest.fixture
def shop(db, registry, make_connector):
    connector = make_connector("shopify")
    configure(db, registry, connector, events=["products/create", "products/update"])
    return connector


def post(client, connector_id, body, headers):
    return client.post(f"/api/webhooks/connector/{connector_id}", content=body, headers=headers)


def test_signed_delivery_is_applied_and_logged(client, db, shop):
    body = json.dumps(PRODUCT).encode()

    resp = post(client, shop.id, body, shopify_delivery(body))

    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"
    product = db.query(Product).one()
    assert (product.external_source, product.external_id, product.sku) == ("shopify", "777", "MUG-9")
    log = db.query(SyncLog).one()
    assert log.sync_type == SyncType.webhook
    assert log.status == SyncStatus.completed
    assert resp.json()["sync_log_id"] == log.id
    endpoint = db.query(WebhookEndpoint).one()
    assert endpoint.total_received == 1
    assert endpoint.last_received is not None


def test_bad_signature_is_rejected_without_side_effects(client, db, shop):
    body = json.dumps(PRODUCT).encode()
    headers = shopify_delivery(body, secret="not-the-secret")

    resp = post(client, shop.id, body, headers)

    assert resp.status_code == 401
    assert db.query(SyncLog).count() == 0
    assert db.query(Product).count() == 0
    assert db.query(WebhookEndpoint).one().total_received == 0


def test_body_changed_after_signing_is_rejected(client, db, shop):
    body = json.dumps(PRODUCT).encode()
    headers = shopify_delivery(body)

    resp = post(client, shop.id, body.replace(b"Mug", b"Mud"), headers)

    assert resp.status_code == 401


def test_connector_without_endpoint_is_not_found(client, make_connector):
    connector = make_connector("shopify")
    body = json.dumps(PRODUCT).encode()

    assert post(client, connector.id, body, shopify_delivery(body)).status_code == 404
    assert post(client, 9999, body, shopify_delivery(body)).status_code == 404


def test_disabled_endpoint_or_connector_is_not_found(client, db, registry, shop):
    body = json.dumps(PRODUCT).encode()
    configure(db, registry, shop, secret=None, is_active=False)
    assert post(client, shop.id, body, shopify_delivery(body)).status_code == 404

    configure(db, registry, shop, secret=None, is_active=True)
    shop.status = ConnectorStatus.inactive
    db.commit()
    assert post(client, shop.id, body, shopify_delivery(body)).status_code == 404


def test_unsubscribed_event_is_acknowledged_and_ignored(db, registry, shop):
    body = json.dumps({"id": 5, "first_name": "Ada"}).encode()

    receipt = WebhookService(db, registry=registry).receive(
        shop.id, shopify_delivery(body, topic="customers/create"), body,
    )

    assert receipt.status == "ignored"
    assert db.query(SyncLog).count() == 0
    assert db.query(WebhookEndpoint).one().total_received == 1


def test_undecodable_body_is_logged_as_failed_but_acknowledged(client, db, shop):
    body = b"this is not json"

    resp = post(client, shop.id, body, shopify_delivery(body))

    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"
    log = db.query(SyncLog).one()
    assert log.status == SyncStatus.failed
    assert "not valid JSON" in log.error_message
    db.refresh(shop)
    assert shop.status == ConnectorStatus.active


def test_record_failing_mapping_does_not_flag_the_connector(db, registry, shop):
    body = json.dumps({"id": 778, "title": "", "variants": []}).encode()

    receipt = WebhookService(db, registry=registry).receive(shop.id, shopify_delivery(body), body)

    assert receipt.status == "failed"
    assert "required field is missing" in receipt.message
    assert db.query(Product).count() == 0
    db.refresh(shop)
    assert shop.status == ConnectorStatus.active
    assert shop.active_sync_log_id is None


def test_repeated_delivery_updates_the_same_row(db, registry, shop):
    service = WebhookService(db, registry=registry)
    first = json.dumps(PRODUCT).encode()
    second = json.dumps(dict(PRODUCT, title="Mug XL")).encode()

    service.receive(shop.id, shopify_delivery(first), first)
    service.receive(shop.id, shopify_delivery(second), second)

    assert [p.name for p in db.query(Product).all()] == ["Mug XL"]
    assert db.query(WebhookEndpoint).one().total_received == 2


# ---- change notifications that trigger a pull ----

QUICKBOOKS_CHANGE = json.dumps({
    "eventNotifications": [{
        "realmId": "123",
        "dataChangeEvent": {"entities": [
            {"name": "Customer", "id": "58", "operation": "Update"},
            {"name": "Item", "id": "9", "operation": "Update"},
        ]},
    }],
}).encode()


@pytest.fixture
def books(db, registry, make_connector):
    connector = make_connector("quickbooks")
    configure(db, registry, connector, events=["dataChangeEvent.Create", "dataChangeEvent.Update"])
    return connector


def quickbooks_delivery(body: bytes):
    return {"intuit-signature": base64_hmac(SECRET, body)}


def test_change_notification_queues_a_pull(db, registry, books):
    sent = []

    receipt = WebhookService(db, registry=registry, dispatch=sent.append).receive(
        books.id, quickbooks_delivery(QUICKBOOKS_CHANGE), QUICKBOOKS_CHANGE,
    )

    assert receipt.status == "refresh_queued"
    assert receipt.event_type == "dataChangeEvent.Update"
    log = db.get(SyncLog, receipt.sync_log_id)
    assert log.sync_type == SyncType.webhook
    assert log.entity_types == ["customer", "product"]
    assert sent == [log.id]


def test_change_notification_is_dropped_while_a_sync_runs(db, registry, books):
    sent = []
    service = WebhookService(db, registry=registry, dispatch=sent.append)
    service.receive(books.id, quickbooks_delivery(QUICKBOOKS_CHANGE), QUICKBOOKS_CHANGE)

    receipt = service.receive(books.id, quickbooks_delivery(QUICKBOOKS_CHANGE), QUICKBOOKS_CHANGE)

    assert receipt.status == "refresh_skipped"
    assert len(sent) == 1
    assert db.query(SyncLog).count() == 1
