import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from connector_hub.connectors.base import CanonicalRecord
from connector_hub.core.exceptions import ConfigurationError
from connector_hub.models.entities import Customer, Product
from connector_hub.services import entity_store

NOW = datetime(2024, 5, 1, 12, 0, 0)


def product(external_id="1001", **data):
    return CanonicalRecord("product", external_id, data=data or {"name": "Mug", "price": Decimal("12.50")},
                           extra={"id": int(external_id), "title": "Mug"})


def test_upsert_is_idempotent_per_source_and_external_id(db):
    entity_store.upsert(db, 1, "shopify", product(), now=NOW)
    entity_store.upsert(db, 1, "shopify", product(name="Mug v2", price=Decimal("13.00")), now=NOW + timedelta(hours=1))
    db.commit()

    rows = db.query(Product).all()
    assert len(rows) == 1
    assert rows[0].name == "Mug v2"
    assert rows[0].price == Decimal("13.00")
    assert rows[0].last_sync == NOW + timedelta(hours=1)
    assert rows[0].created_at == NOW


def test_same_external_id_from_another_source_or_tenant_is_a_new_row(db):
    entity_store.upsert(db, 1, "shopify", product(), now=NOW)
    entity_store.upsert(db, 1, "woocommerce", product(), now=NOW)
    entity_store.upsert(db, 2, "shopify", product(), now=NOW)
    db.commit()

    assert db.query(Product).count() == 3


def test_unmapped_fields_and_raw_payload_go_to_external_data(db):
    record = product(name="Mug", colour="blue")
    entity_store.upsert(db, 1, "shopify", record, now=NOW)
    db.commit()

    row = entity_store.find_by_external(db, 1, "shopify", "product", "1001")
    external = json.loads(row.external_data_json)
    assert external["title"] == "Mug"
    assert external["_unmapped"] == {"colour": "blue"}


def test_mapped_data_cannot_overwrite_protected_columns(db):
    record = product(name="Mug", tenant_id=99, external_source="evil", id=5000)
    entity_store.upsert(db, 1, "shopify", record, now=NOW)
    db.commit()

    row = db.query(Product).one()
    assert (row.tenant_id, row.external_source) == (1, "shopify")
    assert row.id != 5000


def test_unknown_entity_type_is_a_configuration_error(db):
    with pytest.raises(ConfigurationError):
        entity_store.upsert(db, 1, "shopify", CanonicalRecord("widget", "1", data={"name": "x"}), now=NOW)


def test_pending_outbound_selects_changed_and_unsynced_rows(db):
    synced = Customer(tenant_id=1, name="Synced", external_source="stripe", external_id="cus_1",
                      last_sync=NOW, updated_at=NOW, created_at=NOW)
    changed = Customer(tenant_id=1, name="Changed", external_source="stripe", external_id="cus_2",
                       last_sync=NOW, updated_at=NOW + timedelta(minutes=5), created_at=NOW)
    local_only = Customer(tenant_id=1, name="Local", created_at=NOW, updated_at=NOW)
    foreign = Customer(tenant_id=1, name="Shopify owned", external_source="shopify", external_id="9",
                       created_at=NOW, updated_at=NOW)
    other_tenant = Customer(tenant_id=2, name="Other", created_at=NOW, updated_at=NOW)
    db.add_all([synced, changed, local_only, foreign, other_tenant])
    db.commit()

    rows = entity_store.pending_outbound(db, 1, "stripe", "customer")

    assert [r.name for r in rows] == ["Changed", "Local"]


def test_mark_pushed_stops_row_from_being_selected_again(db):
    row = Customer(tenant_id=1, name="Local", created_at=NOW, updated_at=NOW)
    db.add(row)
    db.commit()

    entity_store.mark_pushed(row, "stripe", "cus_9", now=NOW + timedelta(minutes=1))
    db.commit()

    assert (row.external_source, row.external_id) == ("stripe", "cus_9")
    assert row.updated_at == row.last_sync
    assert entity_store.pending_outbound(db, 1, "stripe", "customer") == []


def test_to_local_record_carries_external_data(db):
    entity_store.upsert(db, 1, "quickbooks", CanonicalRecord(
        "customer", "58", data={"name": "Acme"}, extra={"Id": "58", "SyncToken": "4"},
    ), now=NOW)
    db.commit()
    row = db.query(Customer).one()

    local = entity_store.to_local_record("customer", row)

    assert local.external_id == "58"
    assert local.extra["SyncToken"] == "4"
    assert local.data["name"] == "Acme"
    assert "tenant_id" not in local.data


def test_mark_pushed_keeps_the_echoed_sync_token(db):
    entity_store.upsert(db, 1, "quickbooks", CanonicalRecord(
        "customer", "58", data={"name": "Acme"}, extra={"Id": "58", "SyncToken": "4", "Active": True},
    ), now=NOW)
    db.commit()
    row = db.query(Customer).one()

    entity_store.mark_pushed(row, "quickbooks", "58", now=NOW + timedelta(minutes=1),
                             remote={"Id": "58", "SyncToken": "5"})
    db.commit()

    stored = json.loads(row.external_data_json)
    assert stored["SyncToken"] == "5"
    assert stored["Active"] is True
    assert entity_store.to_local_record("customer", row).extra["SyncToken"] == "5"
