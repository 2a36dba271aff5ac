"""Webhook ingestor: authenticates, records and applies provider callbacks."""

import json
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from connector_hub.connectors.base import WebhookEvent
from connector_hub.connectors.registry import AdapterRegistry, registry as default_registry
from connector_hub.core.exceptions import (
    ConnectorHubError, CorruptCredential, ResourceNotFoundError, SyncInProgressError,
    Unauthorized, ValidationError,
)
from connector_hub.core.vault import CredentialVault, get_vault
from connector_hub.db.base import utcnow
from connector_hub.executor.engine import SyncCounters, fail_sync, ingest_records
from connector_hub.models.connector import ConnectorStatus, TenantConnector
from connector_hub.models.sync_log import SyncDirection, SyncLog, SyncStatus, SyncType
from connector_hub.models.webhook import WebhookEndpoint
from connector_hub.services import field_mapping
from connector_hub.services.cache_service import cache_service
from connector_hub.services.sync_service import Dispatcher, SyncService

logger = logging.getLogger("connector_hub.webhooks")


@dataclass
class WebhookReceipt:
    """What happened to one delivery; returned to the provider as JSON."""
    status: str  # processed | failed | ignored | refresh_queued | refresh_skipped
    event_type: str
    sync_log_id: Optional[int] = None
    message: Optional[str] = None


class WebhookService:
    def __init__(
        self,
        db: Session,
        registry: Optional[AdapterRegistry] = None,
        vault: Optional[CredentialVault] = None,
        dispatch: Optional[Dispatcher] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self._vault = vault
        self.dispatch = dispatch

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_vault()
        return self._vault

    def _resolve(self, connector_id: int):
        connector = self.db.query(TenantConnector).filter(TenantConnector.id == connector_id).first()
        if not connector or connector.status == ConnectorStatus.inactive:
            raise ResourceNotFoundError(f"Connector {connector_id} not found")
        endpoint = connector.webhook_endpoint
        if not endpoint or not endpoint.is_active:
            raise ResourceNotFoundError(f"Connector {connector_id} has no active webhook endpoint")
        return connector, endpoint

    def _verify(self, adapter, connector: TenantConnector, endpoint: WebhookEndpoint,
                headers: Mapping[str, str], raw_body: bytes) -> None:
        if not endpoint.secret_key_encrypted:
            return
        try:
            secret = self.vault.decrypt(endpoint.secret_key_encrypted)
        except CorruptCredential:
            logger.error("Webhook secret for connector %s cannot be decrypted", connector.id)
            raise Unauthorized("Webhook signature could not be verified")
        if not adapter.verify_signature(secret, raw_body, headers):
            logger.warning("Rejected webhook for connector %s: invalid signature", connector.id)
            raise Unauthorized("Invalid webhook signature")

    def receive(self, connector_id: int, headers: Mapping[str, str], raw_body: bytes) -> WebhookReceipt:
        """Handle one inbound delivery.

        Signature failures raise Unauthorized with no side effects. Once a
        delivery is authenticated, processing problems are recorded on a
        SyncLog and the provider still gets a 2xx so it does not retry a
        payload that will never succeed.
        """
        connector, endpoint = self._resolve(connector_id)
        adapter = self.registry.lookup(connector.type_name)
        self._verify(adapter, connector, endpoint, headers, raw_body)

        self.db.query(WebhookEndpoint).filter(WebhookEndpoint.id == endpoint.id).update(
            {"total_received": WebhookEndpoint.total_received + 1, "last_received": utcnow()},
            synchronize_session=False,
        )
        self.db.commit()

        rules = field_mapping.merge_rules(
            adapter.default_mappings(),
            [field_mapping.MappingRule.from_model(m) for m in connector.field_mappings],
        )
        try:
            event = adapter.decode_webhook(headers, raw_body, rules)
        except (ValueError, ConnectorHubError) as e:
            message = getattr(e, "message", None) or str(e)
            log = self._open_log(connector, [])
            fail_sync(self.db, log, f"Could not decode webhook: {message}", mark_connector=False)
            logger.warning("Undecodable webhook for connector %s: %s", connector.id, message)
            return WebhookReceipt("failed", "unknown", sync_log_id=log.id, message=message)

        if not endpoint.accepts(event.event_type):
            logger.debug("Ignoring unsubscribed event %s for connector %s", event.event_type, connector.id)
            return WebhookReceipt("ignored", event.event_type, message="event not subscribed")

        if event.record is not None:
            return self._apply_record(connector, event)
        if event.refresh_entities:
            return self._refresh(connector, event)
        return WebhookReceipt("ignored", event.event_type, message="event carries no data to apply")

    def _open_log(self, connector: TenantConnector, entity_types) -> SyncLog:
        log = SyncLog(
            tenant_connector_id=connector.id,
            sync_type=SyncType.webhook,
            direction=SyncDirection.inbound,
            status=SyncStatus.pending,
            entity_types_json=json.dumps(entity_types) if entity_types else None,
            started_at=utcnow(),
        )
        self.db.add(log)
        self.db.flush()
        log.transition(SyncStatus.running)
        self.db.commit()
        return log

    def _apply_record(self, connector: TenantConnector, event: WebhookEvent) -> WebhookReceipt:
        record = event.record
        log = self._open_log(connector, [record.entity_type])
        counters = SyncCounters()
        try:
            ingest_records(self.db, connector, [record], counters)
        except ConnectorHubError as e:
            self.db.rollback()
            counters.failure("inbound", record.entity_type, record.external_id, e.message)

        counters.apply_to(log)
        log.sync_summary_json = json.dumps(counters.summary(event_type=event.event_type), default=str)
        if counters.failed:
            message = counters.errors[0]["error"] if counters.errors else "record rejected"
            fail_sync(self.db, log, message, mark_connector=False)
            return WebhookReceipt("failed", event.event_type, sync_log_id=log.id, message=message)

        log.transition(SyncStatus.completed)
        self.db.commit()
        cache_service.sync_event(log.id, log.status.value, event_type=event.event_type)
        logger.info(
            "Webhook %s applied %s %s for connector %s",
            event.event_type, record.entity_type, record.external_id, connector.id,
        )
        return WebhookReceipt("processed", event.event_type, sync_log_id=log.id)

    def _refresh(self, connector: TenantConnector, event: WebhookEvent) -> WebhookReceipt:
        sync = SyncService(self.db, registry=self.registry, dispatch=self.dispatch)
        try:
            log = sync.start_sync(
                connector.tenant_id,
                connector.id,
                direction=SyncDirection.inbound.value,
                entity_types=event.refresh_entities,
                sync_type=SyncType.webhook.value,
            )
        except SyncInProgressError:
            logger.info("Webhook refresh for connector %s dropped: sync already running", connector.id)
            return WebhookReceipt("refresh_skipped", event.event_type, message="sync already in progress")
        except ValidationError as e:
            logger.warning("Webhook refresh for connector %s not started: %s", connector.id, e.message)
            return WebhookReceipt("refresh_skipped", event.event_type, message=e.message)
        return WebhookReceipt("refresh_queued", event.event_type, sync_log_id=log.id)
