"""Per-connector field mapping rules."""

import enum
import json

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum,
    UniqueConstraint, func
)
from sqlalchemy.orm import relationship

from connector_hub.db.base import Base


class MappingType(str, enum.Enum):
    direct = "direct"
    transform = "transform"
    calculated = "calculated"


class FieldMapping(Base):
    """Maps one local field of an entity type to a remote field.

    `transform_json` holds either a named transform ({"name": ..., "params": ...})
    or a calculation rule ({"op": ..., "fields": [...]}). It is data, never code.
    """
    __tablename__ = "connector_field_mappings"
    __table_args__ = (
        UniqueConstraint("tenant_connector_id", "entity_type", "local_field", name="uq_mapping_local_field"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_connector_id = Column(
        Integer, ForeignKey("tenant_connectors.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    entity_type = Column(String(50), nullable=False, index=True)  # customer, product, invoice
    local_field = Column(String(100), nullable=False)
    remote_field = Column(String(100), nullable=False)
    mapping_type = Column(Enum(MappingType), default=MappingType.direct, nullable=False)
    transform_json = Column(Text, nullable=True)
    is_required = Column(Boolean, default=False, nullable=False)
    default_value_json = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    connector = relationship("TenantConnector", back_populates="field_mappings")

    @property
    def transform(self) -> dict:
        return json.loads(self.transform_json) if self.transform_json else {}

    @property
    def has_default(self) -> bool:
        return self.default_value_json is not None

    @property
    def default_value(self):
        return json.loads(self.default_value_json) if self.default_value_json is not None else None
