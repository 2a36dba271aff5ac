"""Connector catalog and tenant connector models."""

import enum
import json

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum,
    UniqueConstraint, func
)
from sqlalchemy.orm import relationship

from connector_hub.db.base import Base


class ConnectorCategory(str, enum.Enum):
    accounting = "accounting"
    ecommerce = "ecommerce"
    payment = "payment"
    erp = "erp"
    crm = "crm"
    api = "api"


class ConnectorStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    error = "error"
    inactive = "inactive"


class ConnectorType(Base):
    """Catalog entry describing one supported third-party integration.

    Seeded by `connector-hub db seed`; tenants only ever read these rows.
    """
    __tablename__ = "connector_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True, index=True)  # adapter slug
    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(Enum(ConnectorCategory), nullable=False, index=True)
    icon_url = Column(String(500), nullable=True)
    config_schema_json = Column(Text, nullable=False)  # {"properties": {...}, "required": [...]}
    webhook_events_json = Column(Text, nullable=True)
    supports_oauth = Column(Boolean, default=False, nullable=False)
    supports_api_key = Column(Boolean, default=True, nullable=False)
    supports_webhook = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    version = Column(String(20), default="1.0.0", nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def config_schema(self) -> dict:
        return json.loads(self.config_schema_json) if self.config_schema_json else {}

    @property
    def webhook_events(self) -> list:
        return json.loads(self.webhook_events_json) if self.webhook_events_json else []


class TenantConnector(Base):
    """One tenant's configured instance of a catalog entry.

    `status`, `last_sync`, `last_error`, `consecutive_failures` and
    `active_sync_log_id` are written only by the sync orchestrator, the
    connection probe and the webhook ingestor.
    """
    __tablename__ = "tenant_connectors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "connector_type_id", "name", name="uq_tenant_connector_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    connector_type_id = Column(Integer, ForeignKey("connector_types.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    config_encrypted = Column(Text, nullable=False)  # vault ciphertext of the JSON config
    oauth_tokens_encrypted = Column(Text, nullable=True)
    status = Column(Enum(ConnectorStatus), default=ConnectorStatus.pending, nullable=False, index=True)
    last_sync = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    sync_settings_json = Column(Text, nullable=True)  # opaque to the engine
    active_sync_log_id = Column(Integer, nullable=True)  # per-connector run lock
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    connector_type = relationship("ConnectorType", lazy="joined")
    field_mappings = relationship("FieldMapping", back_populates="connector", cascade="all, delete-orphan")
    sync_logs = relationship("SyncLog", back_populates="connector", cascade="all, delete-orphan")
    webhook_endpoint = relationship(
        "WebhookEndpoint", back_populates="connector", cascade="all, delete-orphan", uselist=False,
    )

    @property
    def type_name(self) -> str:
        return self.connector_type.name if self.connector_type else ""

    @property
    def sync_settings(self) -> dict:
        return json.loads(self.sync_settings_json) if self.sync_settings_json else {}
