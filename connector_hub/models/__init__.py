"""Models package: import all models so metadata.create_all can discover them."""

from connector_hub.models.connector import ConnectorType, TenantConnector
from connector_hub.models.field_mapping import FieldMapping
from connector_hub.models.sync_log import SyncLog
from connector_hub.models.webhook import WebhookEndpoint
from connector_hub.models.entities import Customer, Product, Invoice
from connector_hub.models.audit_log import AuditLog

__all__ = [
    "ConnectorType", "TenantConnector", "FieldMapping", "SyncLog",
    "WebhookEndpoint", "Customer", "Product", "Invoice", "AuditLog",
]
