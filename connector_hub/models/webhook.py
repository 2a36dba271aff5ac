"""Inbound webhook endpoint model."""

import json

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint, func
)
from sqlalchemy.orm import relationship

from connector_hub.db.base import Base


class WebhookEndpoint(Base):
    """Webhook receiving endpoint for a tenant connector.

    The shared secret is stored as vault ciphertext; it has to be recoverable
    to recompute HMACs, so it cannot be hashed like an API token.
    """
    __tablename__ = "connector_webhooks"
    __table_args__ = (
        UniqueConstraint("tenant_connector_id", "endpoint_url", name="uq_webhook_endpoint_url"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_connector_id = Column(
        Integer, ForeignKey("tenant_connectors.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    endpoint_url = Column(String(500), nullable=False)  # informational, what the provider dials
    secret_key_encrypted = Column(Text, nullable=True)
    events_json = Column(Text, nullable=False, default="[]")
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_received = Column(DateTime, nullable=True)
    total_received = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    connector = relationship("TenantConnector", back_populates="webhook_endpoint")

    @property
    def events(self) -> list:
        return json.loads(self.events_json) if self.events_json else []

    def accepts(self, event_type: str) -> bool:
        events = self.events
        return not events or "*" in events or event_type in events
