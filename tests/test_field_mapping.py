from datetime import datetime
from decimal import Decimal

import pytest

from connector_hub.services import field_mapping
from connector_hub.services.field_mapping import INBOUND, OUTBOUND, MappingRule


def test_dotted_paths_read_and_write_nested_lists():
    remote = {"variants": [{"price": "9.50", "sku": "A-1"}]}
    assert field_mapping.get_path(remote, "variants.0.price") == "9.50"
    assert field_mapping.get_path(remote, "variants.1.price") is field_mapping._MISSING

    out = {}
    field_mapping.set_path(out, "variants.0.price", "9.50")
    field_mapping.set_path(out, "metadata.sku", "A-1")
    assert out == {"variants": [{"price": "9.50"}], "metadata": {"sku": "A-1"}}


def test_direct_and_transform_rules_inbound():
    rules = [
        MappingRule("product", "name", "title", is_required=True),
        MappingRule("product", "price", "variants.0.price", "transform", {"name": "to_decimal"}),
        MappingRule("product", "stock", "variants.0.inventory_quantity", "transform", {"name": "to_int"}),
    ]
    outcome = field_mapping.apply(rules, INBOUND, {
        "title": "Mug", "variants": [{"price": "12.50", "inventory_quantity": 7}],
    })

    assert outcome.ok
    assert outcome.data == {"name": "Mug", "price": Decimal("12.50"), "stock": 7}


def test_transform_inverse_used_outbound():
    rule = MappingRule("invoice", "total", "total", "transform", {"name": "cents_to_amount"})

    inbound = field_mapping.apply([rule], INBOUND, {"total": 1999})
    outbound = field_mapping.apply([rule], OUTBOUND, {"total": Decimal("19.99")})

    assert inbound.data == {"total": Decimal("19.99")}
    assert outbound.data == {"total": 1999}


def test_unix_timestamps_become_naive_utc():
    rule = MappingRule("invoice", "issued_at", "created", "transform", {"name": "unix_to_datetime"})
    outcome = field_mapping.apply([rule], INBOUND, {"created": 1700000000})
    assert outcome.data["issued_at"] == datetime(2023, 11, 14, 22, 13, 20)


def test_iso_offsets_are_normalized_to_utc():
    rule = MappingRule("invoice", "issued_at", "created_at", "transform", {"name": "iso_to_datetime"})
    outcome = field_mapping.apply([rule], INBOUND, {"created_at": "2024-03-01T10:00:00+02:00"})
    assert outcome.data["issued_at"] == datetime(2024, 3, 1, 8, 0, 0)


def test_value_map_and_its_inverse():
    rule = MappingRule(
        "invoice", "status", "state", "transform",
        {"name": "value_map", "params": {"map": {"paid": "settled", "open": "draft"}}},
    )
    assert field_mapping.apply([rule], INBOUND, {"state": "paid"}).data == {"status": "settled"}
    assert field_mapping.apply([rule], OUTBOUND, {"status": "draft"}).data == {"state": "open"}


def test_calculated_concat_skips_empty_parts():
    rule = MappingRule("customer", "name", "first_name", "calculated",
                       {"op": "concat", "fields": ["first_name", "last_name"]})
    assert field_mapping.apply([rule], INBOUND, {"first_name": "Ada", "last_name": ""}).data == {"name": "Ada"}


def test_calculated_without_outbound_spec_is_inbound_only():
    rule = MappingRule("customer", "name", "first_name", "calculated",
                       {"op": "concat", "fields": ["first_name", "last_name"]}, is_required=True)
    outcome = field_mapping.apply([rule], OUTBOUND, {"name": "Ada Lovelace"})
    assert outcome.ok
    assert outcome.data == {}


def test_calculated_outbound_spec_writes_remote_field():
    rule = MappingRule("customer", "name", "first_name", "calculated",
                       {"op": "concat", "fields": ["first_name", "last_name"],
                        "outbound": {"op": "first", "fields": ["name"]}})
    assert field_mapping.apply([rule], OUTBOUND, {"name": "Ada Lovelace"}).data == {"first_name": "Ada Lovelace"}


def test_sum_and_multiply_by():
    rules = [
        MappingRule("invoice", "total", "lines", "calculated", {"op": "sum", "fields": ["net", "tax"]}),
        MappingRule("product", "price", "price_cents", "calculated",
                    {"op": "multiply_by", "fields": ["price_cents"], "factor": "0.01"}),
    ]
    outcome = field_mapping.apply(rules, INBOUND, {"net": "10.00", "tax": "2.50", "price_cents": 1250})
    assert outcome.data == {"total": Decimal("12.50"), "price": Decimal("12.50")}


def test_missing_required_field_fails_record():
    rule = MappingRule("product", "name", "title", is_required=True)
    outcome = field_mapping.apply([rule], INBOUND, {"title": "   "})
    assert not outcome.ok
    assert outcome.errors[0].field == "name"


def test_missing_required_field_with_default_warns():
    rule = MappingRule("product", "name", "title", is_required=True, default_value="Untitled", has_default=True)
    outcome = field_mapping.apply([rule], INBOUND, {})
    assert outcome.ok
    assert outcome.data == {"name": "Untitled"}
    assert outcome.warnings == ["name: missing, default value used"]


def test_optional_missing_field_is_omitted():
    rule = MappingRule("customer", "phone", "phone")
    assert field_mapping.apply([rule], INBOUND, {"email": "a@example.com"}).data == {}


def test_bad_value_is_a_field_error_not_an_exception():
    rule = MappingRule("product", "price", "price", "transform", {"name": "to_decimal"})
    outcome = field_mapping.apply([rule], INBOUND, {"price": "twelve"})
    assert not outcome.ok
    assert "transform mapping failed" in outcome.errors[0].message


def test_tenant_rules_override_defaults_by_local_field():
    defaults = [MappingRule("product", "name", "title"), MappingRule("product", "sku", "variants.0.sku")]
    overrides = [MappingRule("product", "name", "handle")]

    merged = field_mapping.merge_rules(defaults, overrides)

    assert {(r.local_field, r.remote_field) for r in merged} == {("name", "handle"), ("sku", "variants.0.sku")}


@pytest.mark.parametrize("rule, message", [
    (MappingRule("product", "name", "title", "transform", {"name": "eval"}), "unknown transform 'eval'"),
    (MappingRule("product", "name", "title", "calculated", {"op": "exec", "fields": ["a"]}), "unknown calculation 'exec'"),
    (MappingRule("product", "name", "title", "calculated", {"op": "sum"}), "non-empty 'fields' list"),
    (MappingRule("product", "name", "title", "script"), "unknown mapping type 'script'"),
])
def test_validate_rule_rejects_anything_outside_the_catalog(rule, message):
    errors = field_mapping.validate_rule(rule)
    assert any(message in e.message for e in errors)


def test_catalog_lists_transforms_and_calculations():
    catalog = field_mapping.catalog()
    assert catalog["transforms"]["cents_to_amount"]["inverse"] == "amount_to_cents"
    assert "concat" in catalog["calculations"]
