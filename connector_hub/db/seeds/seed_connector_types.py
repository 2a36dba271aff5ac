"""Seed the connector catalog into the database."""

import json
import logging

from sqlalchemy.orm import Session

from connector_hub.models.connector import ConnectorCategory, ConnectorType

logger = logging.getLogger("connector_hub.seeds")


def _schema(properties: dict, required: list) -> str:
    return json.dumps({"type": "object", "properties": properties, "required": required})


CONNECTOR_TYPES = [
    {
        "name": "quickbooks",
        "display_name": "QuickBooks Online",
        "description": "Sync customers, products, and invoices with QuickBooks Online",
        "category": ConnectorCategory.accounting,
        "config_schema_json": _schema(
            {
                "client_id": {"type": "string", "title": "Client ID"},
                "client_secret": {"type": "string", "title": "Client Secret"},
                "sandbox": {"type": "boolean", "title": "Sandbox Mode", "default": False},
            },
            ["client_id", "client_secret"],
        ),
        "supports_oauth": True,
        "supports_api_key": False,
        "supports_webhook": True,
        "webhook_events_json": json.dumps(["dataChangeEvent.Create", "dataChangeEvent.Update"]),
    },
    {
        "name": "shopify",
        "display_name": "Shopify",
        "description": "Sync products, customers and orders with a Shopify store",
        "category": ConnectorCategory.ecommerce,
        "config_schema_json": _schema(
            {
                "shop_domain": {"type": "string", "title": "Shop Domain"},
                "access_token": {"type": "string", "title": "Access Token"},
                "api_version": {"type": "string", "title": "API Version", "default": "2023-07"},
            },
            ["shop_domain", "access_token"],
        ),
        "supports_webhook": True,
        "webhook_events_json": json.dumps([
            "orders/create", "orders/updated", "products/create", "products/update",
            "customers/create", "customers/update",
        ]),
    },
    {
        "name": "stripe",
        "display_name": "Stripe",
        "description": "Sync customers, products and invoices with Stripe",
        "category": ConnectorCategory.payment,
        "config_schema_json": _schema(
            {
                "secret_key": {"type": "string", "title": "Secret Key"},
                "publishable_key": {"type": "string", "title": "Publishable Key"},
            },
            ["secret_key", "publishable_key"],
        ),
        "supports_webhook": True,
        "webhook_events_json": json.dumps([
            "customer.created", "customer.updated", "product.created", "product.updated",
            "invoice.created", "invoice.payment_succeeded",
        ]),
    },
    {
        "name": "woocommerce",
        "display_name": "WooCommerce",
        "description": "Sync products, customers and orders with a WooCommerce store",
        "category": ConnectorCategory.ecommerce,
        "config_schema_json": _schema(
            {
                "site_url": {"type": "string", "title": "Site URL"},
                "consumer_key": {"type": "string", "title": "Consumer Key"},
                "consumer_secret": {"type": "string", "title": "Consumer Secret"},
            },
            ["site_url", "consumer_key", "consumer_secret"],
        ),
        "supports_webhook": True,
        "webhook_events_json": json.dumps([
            "order.created", "order.updated", "product.created", "product.updated",
            "customer.created", "customer.updated",
        ]),
    },
    {
        "name": "api_webhook",
        "display_name": "Generic API/Webhook",
        "description": "Connect to any REST API or receive webhook data",
        "category": ConnectorCategory.api,
        "config_schema_json": _schema(
            {
                "base_url": {"type": "string", "title": "Base URL"},
                "api_key": {"type": "string", "title": "API Key"},
                "auth_header": {"type": "string", "title": "Auth Header Name", "default": "Authorization"},
                "auth_prefix": {"type": "string", "title": "Auth Prefix", "default": "Bearer"},
                "entity_paths": {"type": "object", "title": "Entity Paths"},
                "results_key": {"type": "string", "title": "Results Key"},
                "id_field": {"type": "string", "title": "ID Field", "default": "id"},
                "page_param": {"type": "string", "title": "Page Parameter"},
            },
            ["base_url"],
        ),
        "supports_webhook": True,
        "webhook_events_json": json.dumps(["*"]),
    },
]


def seed_connector_types(db: Session) -> int:
    """Insert catalog entries that don't already exist; returns how many were added."""
    added = 0
    for type_data in CONNECTOR_TYPES:
        existing = db.query(ConnectorType).filter(ConnectorType.name == type_data["name"]).first()
        if not existing:
            db.add(ConnectorType(**type_data))
            added += 1

    db.commit()
    logger.info("Seeded %s connector types (%s new)", len(CONNECTOR_TYPES), added)
    return added
