"""Tenant connector service: CRUD, connectivity probe, mappings, webhook endpoint."""

import json
import logging
import secrets
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from connector_hub.connectors.base import ProbeResult
from connector_hub.connectors.registry import AdapterRegistry, registry as default_registry
from connector_hub.core.config import settings
from connector_hub.core.exceptions import (
    CorruptCredential, FieldError, ResourceNotFoundError, ValidationError,
)
from connector_hub.core.vault import CredentialVault, get_vault
from connector_hub.models.connector import ConnectorStatus, ConnectorType, TenantConnector
from connector_hub.models.entities import ENTITY_MODELS
from connector_hub.models.field_mapping import FieldMapping, MappingType
from connector_hub.models.webhook import WebhookEndpoint
from connector_hub.services import field_mapping
from connector_hub.services.audit_service import MASK, is_secret_key, mask_secrets
from connector_hub.services.entity_store import PROTECTED_COLUMNS

logger = logging.getLogger("connector_hub.connectors")


def webhook_url(connector_id: int) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/webhooks/connector/{connector_id}"


def _is_masked_secret(key: str, value: Any) -> bool:
    return value == MASK and is_secret_key(key)


class ConnectorService:
    """Manages tenant connectors. Every lookup is scoped to the caller's tenant."""

    def __init__(
        self,
        db: Session,
        registry: Optional[AdapterRegistry] = None,
        vault: Optional[CredentialVault] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self._vault = vault

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_vault()
        return self._vault

    # ---- Catalog ----

    def list_types(self, category: Optional[str] = None) -> List[ConnectorType]:
        query = self.db.query(ConnectorType).filter(ConnectorType.is_active == True)  # noqa: E712
        if category:
            query = query.filter(ConnectorType.category == category)
        return query.order_by(ConnectorType.display_name).all()

    def get_type(self, connector_type_id: int) -> ConnectorType:
        connector_type = self.db.query(ConnectorType).filter(ConnectorType.id == connector_type_id).first()
        if not connector_type:
            raise ResourceNotFoundError(f"Connector type {connector_type_id} not found")
        return connector_type

    # ---- Connectors ----

    def get(self, tenant_id: int, connector_id: int) -> TenantConnector:
        connector = self.db.query(TenantConnector).filter(
            TenantConnector.id == connector_id,
            TenantConnector.tenant_id == tenant_id,
        ).first()
        if not connector:
            raise ResourceNotFoundError(f"Connector {connector_id} not found")
        return connector

    def list_connectors(
        self,
        tenant_id: int,
        category: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        query = self.db.query(TenantConnector).filter(TenantConnector.tenant_id == tenant_id)
        if category:
            query = query.join(ConnectorType).filter(ConnectorType.category == category)
        if status:
            query = query.filter(TenantConnector.status == status)

        total = query.count()
        connectors = (
            query.order_by(TenantConnector.created_at.desc(), TenantConnector.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {"connectors": connectors, "total": total, "page": page}

    def _checked_config(self, connector_type: ConnectorType, config: Dict[str, Any]) -> Dict[str, Any]:
        config = AdapterRegistry.with_defaults(connector_type, config or {})
        errors = AdapterRegistry.validate_config(connector_type, config)
        if errors:
            raise ValidationError("Invalid connector configuration", errors)
        return config

    def _name_taken(self, tenant_id: int, connector_type_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(TenantConnector.id).filter(
            TenantConnector.tenant_id == tenant_id,
            TenantConnector.connector_type_id == connector_type_id,
            TenantConnector.name == name,
        )
        if exclude_id is not None:
            query = query.filter(TenantConnector.id != exclude_id)
        return query.first() is not None

    def create(
        self,
        tenant_id: int,
        user_id: Optional[int],
        connector_type_id: int,
        name: str,
        config: Dict[str, Any],
        description: Optional[str] = None,
        sync_settings: Optional[Dict[str, Any]] = None,
    ) -> TenantConnector:
        """Validate, encrypt and persist a connector in `pending` status.

        Catalog rows without a registered adapter can still be configured;
        probe and sync reject them with UnsupportedProvider.
        """
        connector_type = self.get_type(connector_type_id)
        if not connector_type.is_active:
            raise ValidationError(
                "Connector type is not available", [FieldError("connector_type_id", "is inactive")],
            )
        config = self._checked_config(connector_type, config)
        if self._name_taken(tenant_id, connector_type_id, name):
            raise ValidationError(
                "Connector name already in use", [FieldError("name", f"'{name}' already exists for this type")],
            )

        connector = TenantConnector(
            tenant_id=tenant_id,
            connector_type_id=connector_type.id,
            name=name,
            description=description,
            config_encrypted=self.vault.encrypt_json(config),
            status=ConnectorStatus.pending,
            sync_settings_json=json.dumps(sync_settings) if sync_settings is not None else None,
            created_by=user_id,
            updated_by=user_id,
        )
        self.db.add(connector)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(
                "Connector name already in use", [FieldError("name", f"'{name}' already exists for this type")],
            )
        self.db.refresh(connector)
        logger.info("Connector %s (%s) created for tenant %s", connector.id, connector_type.name, tenant_id)
        return connector

    def update(
        self,
        tenant_id: int,
        connector_id: int,
        user_id: Optional[int],
        **changes,
    ) -> TenantConnector:
        """Apply partial changes.

        A new config is re-validated and re-encrypted and puts the connector
        back to `pending` until the next probe. Masked secret values sent back
        by clients keep the stored value.
        """
        connector = self.get(tenant_id, connector_id)

        if changes.get("name") is not None and changes["name"] != connector.name:
            if self._name_taken(tenant_id, connector.connector_type_id, changes["name"], exclude_id=connector.id):
                raise ValidationError(
                    "Connector name already in use",
                    [FieldError("name", f"'{changes['name']}' already exists for this type")],
                )
            connector.name = changes["name"]

        if "description" in changes and changes["description"] is not None:
            connector.description = changes["description"]

        if changes.get("sync_settings") is not None:
            connector.sync_settings_json = json.dumps(changes["sync_settings"])

        if changes.get("config") is not None:
            try:
                current = self.decrypt_config(connector)
            except CorruptCredential:
                # operator is re-entering credentials the vault can no longer read
                current = {}
            incoming = {
                k: (current.get(k) if _is_masked_secret(k, v) else v)
                for k, v in changes["config"].items()
            }
            config = self._checked_config(connector.connector_type, incoming)
            connector.config_encrypted = self.vault.encrypt_json(config)
            connector.status = ConnectorStatus.pending
            connector.last_error = None

        if changes.get("status") is not None:
            status = ConnectorStatus(changes["status"])
            if status not in (ConnectorStatus.inactive, ConnectorStatus.pending):
                raise ValidationError(
                    "Invalid status change",
                    [FieldError("status", "only 'inactive' or 'pending' can be set directly; run a test to activate")],
                )
            connector.status = status

        connector.updated_by = user_id
        self.db.commit()
        self.db.refresh(connector)
        return connector

    def delete(self, tenant_id: int, connector_id: int) -> None:
        """Hard delete; mappings, sync logs and the webhook endpoint go with it."""
        connector = self.get(tenant_id, connector_id)
        self.db.delete(connector)
        self.db.commit()
        logger.info("Connector %s deleted for tenant %s", connector_id, tenant_id)

    # ---- Credentials ----

    def decrypt_config(self, connector: TenantConnector) -> Dict[str, Any]:
        return self.vault.decrypt_json(connector.config_encrypted)

    def runtime_config(self, connector: TenantConnector) -> Dict[str, Any]:
        """Decrypted config with OAuth tokens attached under `oauth_tokens`."""
        config = self.decrypt_config(connector)
        if connector.oauth_tokens_encrypted:
            config["oauth_tokens"] = self.vault.decrypt_json(connector.oauth_tokens_encrypted)
        return config

    def masked_config(self, connector: TenantConnector) -> Dict[str, Any]:
        try:
            return mask_secrets(self.decrypt_config(connector))
        except CorruptCredential:
            return {}

    def set_oauth_tokens(self, tenant_id: int, connector_id: int, user_id: Optional[int], tokens: Dict[str, Any]) -> TenantConnector:
        connector = self.get(tenant_id, connector_id)
        connector.oauth_tokens_encrypted = self.vault.encrypt_json(tokens)
        connector.updated_by = user_id
        self.db.commit()
        self.db.refresh(connector)
        return connector

    # ---- Connectivity ----

    def test_connection(self, tenant_id: int, connector_id: int) -> ProbeResult:
        """Probe the provider and move the connector to `active` or `error`."""
        connector = self.get(tenant_id, connector_id)
        adapter = self.registry.lookup(connector.type_name)

        try:
            config = self.runtime_config(connector)
        except CorruptCredential as e:
            result = ProbeResult(ok=False, message=f"Stored credentials are unreadable: {e.message}")
        else:
            result = adapter.probe(config)

        if result.ok:
            connector.status = ConnectorStatus.active
            connector.last_error = None
            connector.consecutive_failures = 0
        else:
            connector.status = ConnectorStatus.error
            connector.last_error = result.message
        self.db.commit()
        logger.info("Probe of connector %s: ok=%s", connector.id, result.ok)
        return result

    # ---- Field mappings ----

    def list_mappings(self, tenant_id: int, connector_id: int) -> List[FieldMapping]:
        connector = self.get(tenant_id, connector_id)
        return (
            self.db.query(FieldMapping)
            .filter(FieldMapping.tenant_connector_id == connector.id)
            .order_by(FieldMapping.entity_type, FieldMapping.local_field)
            .all()
        )

    def default_mappings(self, connector: TenantConnector) -> List[field_mapping.MappingRule]:
        if not self.registry.is_registered(connector.type_name):
            return []
        return self.registry.lookup(connector.type_name).default_mappings()

    @staticmethod
    def _validate_mapping(item: Dict[str, Any], index: int) -> List[FieldError]:
        errors: List[FieldError] = []
        entity_type = item.get("entity_type")
        if entity_type not in ENTITY_MODELS:
            return [FieldError(f"mappings[{index}].entity_type", f"unknown entity type '{entity_type}'")]
        columns = {c.name for c in ENTITY_MODELS[entity_type].__table__.columns} - PROTECTED_COLUMNS
        if item.get("local_field") not in columns:
            errors.append(FieldError(
                f"mappings[{index}].local_field", f"'{item.get('local_field')}' is not a writable {entity_type} field",
            ))
        rule = field_mapping.MappingRule(
            entity_type=entity_type,
            local_field=item.get("local_field") or "",
            remote_field=item.get("remote_field") or "",
            mapping_type=item.get("mapping_type") or "direct",
            transform=item.get("transform") or {},
        )
        for error in field_mapping.validate_rule(rule):
            errors.append(FieldError(f"mappings[{index}]", f"{error.field}: {error.message}"))
        return errors

    def save_mappings(self, tenant_id: int, connector_id: int, items: List[Dict[str, Any]]) -> List[FieldMapping]:
        """Create or replace mappings keyed by (entity_type, local_field).

        The whole batch is rejected if any rule names an unknown transform,
        calculation or field.
        """
        connector = self.get(tenant_id, connector_id)
        errors: List[FieldError] = []
        for index, item in enumerate(items):
            errors.extend(self._validate_mapping(item, index))
        if errors:
            raise ValidationError("Invalid field mappings", errors)

        existing = {
            (m.entity_type, m.local_field): m
            for m in self.db.query(FieldMapping).filter(FieldMapping.tenant_connector_id == connector.id)
        }
        for item in items:
            key = (item["entity_type"], item["local_field"])
            mapping = existing.get(key)
            if mapping is None:
                mapping = FieldMapping(
                    tenant_connector_id=connector.id,
                    entity_type=item["entity_type"],
                    local_field=item["local_field"],
                )
                self.db.add(mapping)
                existing[key] = mapping
            mapping.remote_field = item["remote_field"]
            mapping.mapping_type = MappingType(item.get("mapping_type") or "direct")
            mapping.transform_json = json.dumps(item["transform"]) if item.get("transform") else None
            mapping.is_required = bool(item.get("is_required", False))
            mapping.default_value_json = (
                json.dumps(item["default_value"]) if item.get("default_value") is not None else None
            )
        self.db.commit()
        return self.list_mappings(tenant_id, connector_id)

    def delete_mapping(self, tenant_id: int, connector_id: int, mapping_id: int) -> None:
        connector = self.get(tenant_id, connector_id)
        mapping = self.db.query(FieldMapping).filter(
            FieldMapping.id == mapping_id,
            FieldMapping.tenant_connector_id == connector.id,
        ).first()
        if not mapping:
            raise ResourceNotFoundError(f"Mapping {mapping_id} not found")
        self.db.delete(mapping)
        self.db.commit()

    # ---- Webhook endpoint ----

    def get_webhook(self, tenant_id: int, connector_id: int) -> Optional[WebhookEndpoint]:
        connector = self.get(tenant_id, connector_id)
        return connector.webhook_endpoint

    def configure_webhook(
        self,
        tenant_id: int,
        connector_id: int,
        events: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
        secret: Optional[str] = None,
        regenerate_secret: bool = False,
    ) -> tuple:
        """Create or update the connector's inbound endpoint.

        Returns (endpoint, plaintext_secret). The secret is only returned when
        it was set or generated by this call.
        """
        connector = self.get(tenant_id, connector_id)
        endpoint = connector.webhook_endpoint
        issued_secret = None

        if endpoint is None:
            endpoint = WebhookEndpoint(tenant_connector_id=connector.id, endpoint_url=webhook_url(connector.id))
            self.db.add(endpoint)
            issued_secret = secret or secrets.token_hex(32)
        elif secret or regenerate_secret:
            issued_secret = secret or secrets.token_hex(32)

        if issued_secret:
            endpoint.secret_key_encrypted = self.vault.encrypt(issued_secret)
        if events is not None:
            endpoint.events_json = json.dumps(events)
        if is_active is not None:
            endpoint.is_active = is_active

        self.db.commit()
        self.db.refresh(endpoint)
        return endpoint, issued_secret
